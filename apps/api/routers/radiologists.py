"""Radiologists are users with userType=radiologist and a unique license id"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlmodel import Session, or_, select

from database import get_session
from dependencies import require_privilege
from errors import BadRequest, Conflict, NotFound
from models import AuditAction, User, UserType, snapshot
from schemas import RadiologistCreate, UserResponse, UserUpdate
from services.accounts import create_account, ensure_unique_license
from services.audit import log_audit
from utils.pagination import PaginationParams, paginate
from utils.responses import success

router = APIRouter(prefix="/api/radiologists", tags=["Radiologists"])

ENTITY_KIND = "Radiologist"

SORTABLE = {
    "name": User.name,
    "username": User.username,
    "licenseId": User.license_id,
    "createdAt": User.created_at,
}


def _get_radiologist(session: Session, radiologist_id: str) -> User:
    user = session.get(User, radiologist_id)
    if not user or user.user_type != UserType.RADIOLOGIST:
        raise NotFound("Radiologist not found")
    return user


@router.post("", status_code=status.HTTP_201_CREATED)
def create_radiologist(
    payload: RadiologistCreate,
    current_user: User = Depends(require_privilege("radiologists", "create")),
    session: Session = Depends(get_session)
):
    user = create_account(
        session,
        username=payload.username,
        name=payload.name,
        email=payload.email,
        password=payload.password,
        user_type=UserType.RADIOLOGIST,
        license_id=payload.license_id,
    )
    log_audit(session, current_user.id, AuditAction.CREATE, ENTITY_KIND, user.id, snapshot(user))
    return success(UserResponse.from_user(user), "Radiologist created successfully")


@router.get("")
def list_radiologists(
    is_active: Optional[bool] = Query(None, alias="isActive"),
    params: PaginationParams = Depends(),
    current_user: User = Depends(require_privilege("radiologists", "view")),
    session: Session = Depends(get_session)
):
    statement = select(User).where(User.user_type == UserType.RADIOLOGIST)
    if is_active is not None:
        statement = statement.where(User.is_active == is_active)
    if params.search:
        pattern = f"%{params.search}%"
        statement = statement.where(or_(
            User.name.ilike(pattern),
            User.username.ilike(pattern),
            User.license_id.ilike(pattern),
        ))
    users, pagination = paginate(session, statement, params, SORTABLE, "createdAt")
    return success([UserResponse.from_user(u) for u in users], pagination=pagination)


@router.get("/{radiologist_id}")
def get_radiologist(
    radiologist_id: str,
    current_user: User = Depends(require_privilege("radiologists", "view")),
    session: Session = Depends(get_session)
):
    return success(UserResponse.from_user(_get_radiologist(session, radiologist_id)))


@router.patch("/{radiologist_id}")
def update_radiologist(
    radiologist_id: str,
    payload: UserUpdate,
    current_user: User = Depends(require_privilege("radiologists", "update")),
    session: Session = Depends(get_session)
):
    user = _get_radiologist(session, radiologist_id)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    changes.pop("user_type", None)
    changes.pop("is_super_admin", None)
    if not changes:
        raise BadRequest("No fields to update")

    if "license_id" in changes:
        ensure_unique_license(session, changes["license_id"], exclude_id=user.id)
    if "email" in changes:
        changes["email"] = changes["email"].lower()
        if session.exec(select(User).where(User.email == changes["email"], User.id != user.id)).first():
            raise Conflict("User with this email or username already exists", field="email")

    before = snapshot(user)
    for key, value in changes.items():
        setattr(user, key, value)
    user.updated_at = datetime.utcnow()
    session.add(user)
    session.commit()
    session.refresh(user)

    log_audit(session, current_user.id, AuditAction.UPDATE, ENTITY_KIND, user.id,
              {"before": before, "after": snapshot(user)})
    return success(UserResponse.from_user(user), "Radiologist updated successfully")


@router.delete("/{radiologist_id}")
def deactivate_radiologist(
    radiologist_id: str,
    current_user: User = Depends(require_privilege("radiologists", "delete")),
    session: Session = Depends(get_session)
):
    """Deactivate; appointments keep their radiologist reference"""
    user = _get_radiologist(session, radiologist_id)
    before = snapshot(user)
    user.is_active = False
    user.updated_at = datetime.utcnow()
    session.add(user)
    session.commit()

    log_audit(session, current_user.id, AuditAction.DELETE, ENTITY_KIND, user.id, {"deleted": before})
    return success(message="Radiologist deactivated successfully")
