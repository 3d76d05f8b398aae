"""
Privilege model.

A user holds a set of (module, operation) grants. ``allow`` is the single
evaluation point and performs no I/O: grants must already be loaded on the user
(``User.privileges`` is eagerly loaded).
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from models import PrivilegeGrant, User, UserType

MODULES = (
    "users",
    "patients",
    "doctors",
    "appointments",
    "scans",
    "scanCategories",
    "stock",
    "radiologists",
    "patientHistory",
    "expenses",
    "branches",
    "audit",
    "representatives",
    "dashboard",
    "meta",
)

BASE_OPERATIONS = ("view", "create", "update", "delete")

SPECIAL_OPERATIONS = {
    "appointments": ("makeHugeSale",),
    "expenses": ("approve",),
}

OPERATIONS = BASE_OPERATIONS + tuple(
    op for ops in SPECIAL_OPERATIONS.values() for op in ops
)

# Grants seeded (grantedBy=None) when an account is registered
DEFAULT_ROLE_PRIVILEGES: Dict[UserType, Dict[str, tuple]] = {
    UserType.RECEPTIONIST: {
        "patients": ("view", "create", "update"),
        "appointments": ("view", "create", "update"),
        "doctors": ("view",),
        "radiologists": ("view",),
        "scans": ("view",),
        "branches": ("view",),
        "stock": ("view",),
    },
    UserType.DOCTOR: {
        "patients": ("view",),
        "appointments": ("view",),
        "scans": ("view",),
    },
    UserType.RADIOLOGIST: {
        "patients": ("view",),
        "appointments": ("view", "update"),
        "scans": ("view",),
        "stock": ("view",),
    },
}


def operations_for(module: str) -> tuple:
    """Operations that can be granted on ``module``."""
    return BASE_OPERATIONS + SPECIAL_OPERATIONS.get(module, ())


def allow(user: User, module: str, operation: str) -> bool:
    if user.is_super_admin:
        return True
    return any(
        grant.module == module and grant.operation == operation
        for grant in user.privileges
    )


def validate_grant(module: str, operations: Iterable[str]) -> None:
    """Raise ValueError for a module or operation outside the closed sets."""
    if module not in MODULES:
        raise ValueError(f"Unknown module: {module}")
    allowed = operations_for(module)
    invalid = [op for op in operations if op not in allowed]
    if invalid:
        raise ValueError(f"Invalid operations for {module}: {', '.join(invalid)}")


def grant(user: User, module: str, operations: Iterable[str], granted_by: Optional[str]) -> List[PrivilegeGrant]:
    """Add the missing (module, op) pairs to ``user``. Existing grants keep their provenance."""
    operations = list(dict.fromkeys(operations))
    validate_grant(module, operations)

    held = {g.operation for g in user.privileges if g.module == module}
    now = datetime.utcnow()
    added = []
    for op in operations:
        if op in held:
            continue
        record = PrivilegeGrant(module=module, operation=op, granted_by=granted_by, granted_at=now)
        user.privileges.append(record)
        added.append(record)
    return added


def revoke(user: User, module: str, operations: Optional[Iterable[str]] = None) -> List[PrivilegeGrant]:
    """Remove operations of ``module`` (all of them when ``operations`` is None)."""
    if module not in MODULES:
        raise ValueError(f"Unknown module: {module}")
    targets = None if operations is None else set(operations)

    removed = [
        g for g in user.privileges
        if g.module == module and (targets is None or g.operation in targets)
    ]
    for record in removed:
        user.privileges.remove(record)
    return removed


def seed_default_privileges(user: User) -> None:
    for module, operations in DEFAULT_ROLE_PRIVILEGES.get(user.user_type, {}).items():
        grant(user, module, operations, granted_by=None)


def privileges_by_module(user: User) -> List[dict]:
    """Grants grouped per module, operations in canonical order."""
    grouped: Dict[str, dict] = {}
    for g in user.privileges:
        entry = grouped.setdefault(g.module, {
            "module": g.module,
            "operations": [],
            "grantedBy": g.granted_by,
            "grantedAt": g.granted_at,
        })
        entry["operations"].append(g.operation)
        if g.granted_at and entry["grantedAt"] and g.granted_at > entry["grantedAt"]:
            entry["grantedAt"] = g.granted_at
            entry["grantedBy"] = g.granted_by

    order = {op: i for i, op in enumerate(OPERATIONS)}
    result = []
    for module in MODULES:
        if module in grouped:
            entry = grouped[module]
            entry["operations"].sort(key=lambda op: order.get(op, len(order)))
            result.append(entry)
    return result
