from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlmodel import Session, or_, select

from database import get_session
from dependencies import require_privilege
from errors import BadRequest, Conflict, NotFound
from models import AuditAction, Branch, User, snapshot
from schemas import BranchCreate, BranchResponse, BranchUpdate
from services.audit import log_audit
from utils.pagination import PaginationParams, paginate
from utils.responses import success

router = APIRouter(prefix="/api/branches", tags=["Branches"])

ENTITY_KIND = "Branch"

SORTABLE = {
    "name": Branch.name,
    "location": Branch.location,
    "createdAt": Branch.created_at,
}


def _get_branch(session: Session, branch_id: str) -> Branch:
    branch = session.get(Branch, branch_id)
    if not branch or not branch.is_active:
        raise NotFound("Branch not found")
    return branch


def _check_unique(session: Session, name: Optional[str], email: Optional[str], exclude_id: Optional[str] = None) -> None:
    for column, value, label, field in (
        (Branch.name, name, "name", "name"),
        (Branch.email, email, "email", "email"),
    ):
        if not value:
            continue
        statement = select(Branch).where(column == value)
        if exclude_id:
            statement = statement.where(Branch.id != exclude_id)
        if session.exec(statement).first():
            raise Conflict(f"Branch with this {label} already exists", field=field)


@router.post("", status_code=status.HTTP_201_CREATED)
def create_branch(
    payload: BranchCreate,
    current_user: User = Depends(require_privilege("branches", "create")),
    session: Session = Depends(get_session)
):
    email = payload.email.lower()
    _check_unique(session, payload.name, email)
    branch = Branch(**payload.model_dump(exclude={"email"}), email=email)
    session.add(branch)
    session.commit()
    session.refresh(branch)

    log_audit(session, current_user.id, AuditAction.CREATE, ENTITY_KIND, branch.id, snapshot(branch))
    return success(BranchResponse.model_validate(branch), "Branch created successfully")


@router.get("")
def list_branches(
    params: PaginationParams = Depends(),
    current_user: User = Depends(require_privilege("branches", "view")),
    session: Session = Depends(get_session)
):
    statement = select(Branch).where(Branch.is_active == True)
    if params.search:
        pattern = f"%{params.search}%"
        statement = statement.where(or_(
            Branch.name.ilike(pattern),
            Branch.location.ilike(pattern),
            Branch.manager.ilike(pattern),
        ))
    branches, pagination = paginate(session, statement, params, SORTABLE, "createdAt")
    return success([BranchResponse.model_validate(b) for b in branches], pagination=pagination)


@router.get("/{branch_id}")
def get_branch(
    branch_id: str,
    current_user: User = Depends(require_privilege("branches", "view")),
    session: Session = Depends(get_session)
):
    return success(BranchResponse.model_validate(_get_branch(session, branch_id)))


@router.patch("/{branch_id}")
def update_branch(
    branch_id: str,
    payload: BranchUpdate,
    current_user: User = Depends(require_privilege("branches", "update")),
    session: Session = Depends(get_session)
):
    branch = _get_branch(session, branch_id)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise BadRequest("No fields to update")
    if "email" in changes:
        changes["email"] = changes["email"].lower()
    _check_unique(session, changes.get("name"), changes.get("email"), exclude_id=branch.id)

    before = snapshot(branch)
    for key, value in changes.items():
        setattr(branch, key, value)
    branch.updated_at = datetime.utcnow()
    session.add(branch)
    session.commit()
    session.refresh(branch)

    log_audit(session, current_user.id, AuditAction.UPDATE, ENTITY_KIND, branch.id,
              {"before": before, "after": snapshot(branch)})
    return success(BranchResponse.model_validate(branch), "Branch updated successfully")


@router.delete("/{branch_id}")
def delete_branch(
    branch_id: str,
    current_user: User = Depends(require_privilege("branches", "delete")),
    session: Session = Depends(get_session)
):
    branch = _get_branch(session, branch_id)
    before = snapshot(branch)
    branch.is_active = False
    branch.updated_at = datetime.utcnow()
    session.add(branch)
    session.commit()

    log_audit(session, current_user.id, AuditAction.DELETE, ENTITY_KIND, branch.id, {"deleted": before})
    return success(message="Branch deleted successfully")
