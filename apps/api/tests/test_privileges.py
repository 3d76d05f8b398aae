import pytest

from models import User, UserType
from privileges import (
    MODULES,
    allow,
    grant,
    operations_for,
    privileges_by_module,
    revoke,
    seed_default_privileges,
)


def _user(user_type=UserType.RECEPTIONIST, is_super_admin=False):
    return User(
        username="u",
        name="User",
        email="u@example.com",
        password_hash="x",
        user_type=user_type,
        is_super_admin=is_super_admin,
    )


def test_super_admin_is_allowed_everything():
    user = _user(UserType.SUPER_ADMIN, is_super_admin=True)
    assert all(allow(user, module, op) for module in MODULES for op in operations_for(module))


def test_allow_requires_matching_grant():
    user = _user()
    grant(user, "stock", ["view"], granted_by=None)
    assert allow(user, "stock", "view")
    assert not allow(user, "stock", "update")
    assert not allow(user, "expenses", "view")


def test_grant_is_idempotent_and_keeps_provenance():
    user = _user()
    first = grant(user, "patients", ["view", "create"], granted_by="a" * 24)
    again = grant(user, "patients", ["view", "update"], granted_by="b" * 24)

    assert [g.operation for g in first] == ["view", "create"]
    assert [g.operation for g in again] == ["update"]
    view = next(g for g in user.privileges if g.operation == "view")
    assert view.granted_by == "a" * 24


def test_grant_rejects_unknown_module_and_operation():
    user = _user()
    with pytest.raises(ValueError):
        grant(user, "billing", ["view"], granted_by=None)
    with pytest.raises(ValueError):
        grant(user, "stock", ["approve"], granted_by=None)
    assert user.privileges == []


def test_special_operations_are_module_specific():
    assert "makeHugeSale" in operations_for("appointments")
    assert "approve" in operations_for("expenses")
    assert "makeHugeSale" not in operations_for("expenses")


def test_revoke_selected_and_all_operations():
    user = _user()
    grant(user, "expenses", ["view", "create", "approve"], granted_by=None)

    removed = revoke(user, "expenses", ["approve"])
    assert [g.operation for g in removed] == ["approve"]
    assert not allow(user, "expenses", "approve")
    assert allow(user, "expenses", "view")

    revoke(user, "expenses")
    assert not any(g.module == "expenses" for g in user.privileges)


def test_default_privileges_by_role():
    receptionist = _user(UserType.RECEPTIONIST)
    seed_default_privileges(receptionist)
    assert allow(receptionist, "appointments", "create")
    assert not allow(receptionist, "appointments", "makeHugeSale")

    admin = _user(UserType.SUPER_ADMIN, is_super_admin=True)
    seed_default_privileges(admin)
    assert admin.privileges == []


def test_privileges_grouped_in_canonical_order():
    user = _user()
    grant(user, "appointments", ["makeHugeSale", "view"], granted_by=None)
    grant(user, "patients", ["update", "view"], granted_by=None)

    grouped = privileges_by_module(user)
    assert [entry["module"] for entry in grouped] == ["patients", "appointments"]
    assert grouped[1]["operations"] == ["view", "makeHugeSale"]
