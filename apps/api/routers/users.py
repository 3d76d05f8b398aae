"""Staff account management and privilege grants"""
from datetime import datetime
from typing import Optional
import logging

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session, or_, select

from database import get_session
from dependencies import require_privilege, require_super_admin
from errors import BadRequest, Conflict, Forbidden, NotFound
from models import AuditAction, User, UserType, snapshot
from privileges import grant, revoke
from schemas import PrivilegeGrantRequest, PrivilegeRevokeRequest, UserResponse, UserUpdate
from services.accounts import ensure_unique_license
from services.audit import log_audit
from utils.pagination import PaginationParams, paginate
from utils.responses import success

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])

SORTABLE = {
    "createdAt": User.created_at,
    "name": User.name,
    "username": User.username,
    "email": User.email,
    "lastLogin": User.last_login,
}


def _get_user(session: Session, user_id: str) -> User:
    user = session.get(User, user_id)
    if not user:
        raise NotFound("User not found")
    return user


@router.get("")
def list_users(
    user_type: Optional[UserType] = Query(None, alias="userType"),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    params: PaginationParams = Depends(),
    current_user: User = Depends(require_privilege("users", "view")),
    session: Session = Depends(get_session)
):
    statement = select(User)
    if user_type:
        statement = statement.where(User.user_type == user_type)
    if is_active is not None:
        statement = statement.where(User.is_active == is_active)
    if params.search:
        pattern = f"%{params.search}%"
        statement = statement.where(or_(
            User.name.ilike(pattern),
            User.username.ilike(pattern),
            User.email.ilike(pattern),
        ))

    users, pagination = paginate(session, statement, params, SORTABLE, "createdAt")
    return success([UserResponse.from_user(u) for u in users], pagination=pagination)


@router.get("/{user_id}")
def get_user(
    user_id: str,
    current_user: User = Depends(require_privilege("users", "view")),
    session: Session = Depends(get_session)
):
    return success(UserResponse.from_user(_get_user(session, user_id)))


@router.patch("/{user_id}")
def update_user(
    user_id: str,
    payload: UserUpdate,
    current_user: User = Depends(require_privilege("users", "update")),
    session: Session = Depends(get_session)
):
    user = _get_user(session, user_id)
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise BadRequest("No fields to update")

    if user.is_super_admin and not current_user.is_super_admin:
        raise Forbidden("Cannot update super admin user")
    if not current_user.is_super_admin and (
        "is_super_admin" in changes or changes.get("user_type") == UserType.SUPER_ADMIN
    ):
        raise Forbidden("Only super admins can change super admin status")

    if changes.get("email"):
        changes["email"] = changes["email"].lower()
        taken = session.exec(
            select(User).where(User.email == changes["email"], User.id != user.id)
        ).first()
        if taken:
            raise Conflict("User with this email or username already exists", field="email")

    before = snapshot(user)
    for key, value in changes.items():
        if value is not None or key == "license_id":
            setattr(user, key, value)

    if user.user_type == UserType.SUPER_ADMIN:
        user.is_super_admin = True
    if user.user_type == UserType.RADIOLOGIST:
        if not user.license_id:
            raise BadRequest("License ID is required for radiologists", field="licenseId")
        ensure_unique_license(session, user.license_id, exclude_id=user.id)

    user.updated_at = datetime.utcnow()
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info(f"User {user.id} updated by {current_user.id}")

    log_audit(session, current_user.id, AuditAction.UPDATE, "User", user.id,
              {"before": before, "after": snapshot(user)})
    return success(UserResponse.from_user(user), "User updated successfully")


@router.delete("/{user_id}")
def delete_user(
    user_id: str,
    current_user: User = Depends(require_privilege("users", "delete")),
    session: Session = Depends(get_session)
):
    user = _get_user(session, user_id)
    if user.id == current_user.id:
        raise Forbidden("Cannot delete your own account")
    if user.is_super_admin and not current_user.is_super_admin:
        raise Forbidden("Cannot delete super admin user")

    deleted = snapshot(user)
    session.delete(user)
    session.commit()
    logger.info(f"User {user_id} deleted by {current_user.id}")

    log_audit(session, current_user.id, AuditAction.DELETE, "User", user_id, {"deleted": deleted})
    return success(message="User deleted successfully")


@router.post("/{user_id}/privileges")
def grant_privileges(
    user_id: str,
    payload: PrivilegeGrantRequest,
    current_user: User = Depends(require_super_admin),
    session: Session = Depends(get_session)
):
    user = _get_user(session, user_id)
    try:
        added = grant(user, payload.module, payload.operations, granted_by=current_user.id)
    except ValueError as e:
        raise BadRequest(str(e), field="module")
    granted_ops = [g.operation for g in added]

    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info(f"{current_user.id} granted {payload.module}:{granted_ops} to user {user.id}")

    log_audit(session, current_user.id, AuditAction.UPDATE, "User", user.id, {
        "privileges": {"granted": {"module": payload.module, "operations": granted_ops}}
    })
    return success(UserResponse.from_user(user), "Privileges granted successfully")


@router.delete("/{user_id}/privileges")
def revoke_privileges(
    user_id: str,
    payload: PrivilegeRevokeRequest,
    current_user: User = Depends(require_super_admin),
    session: Session = Depends(get_session)
):
    user = _get_user(session, user_id)
    try:
        removed = revoke(user, payload.module, payload.operations)
    except ValueError as e:
        raise BadRequest(str(e), field="module")
    revoked_ops = [g.operation for g in removed]

    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info(f"{current_user.id} revoked {payload.module}:{revoked_ops} from user {user.id}")

    log_audit(session, current_user.id, AuditAction.UPDATE, "User", user.id, {
        "privileges": {"revoked": {"module": payload.module, "operations": revoked_ops}}
    })
    return success(UserResponse.from_user(user), "Privileges revoked successfully")
