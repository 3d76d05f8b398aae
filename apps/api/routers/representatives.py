"""Sales representatives and their referral counters"""
from datetime import datetime
from typing import Optional
import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy import func
from sqlmodel import Session, or_, select

from database import get_session
from dependencies import require_privilege
from errors import BadRequest, Conflict, NotFound
from models import AuditAction, Doctor, Patient, Representative, User, snapshot
from schemas import RepresentativeCreate, RepresentativeResponse, RepresentativeUpdate
from services.audit import log_audit
from services.referral_counters import recount_representative_counters
from utils.pagination import PaginationParams, paginate
from utils.responses import success

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/representatives", tags=["Representatives"])

ENTITY_KIND = "Representative"

SORTABLE = {
    "name": Representative.name,
    "age": Representative.age,
    "patientsCount": Representative.patients_count,
    "doctorsCount": Representative.doctors_count,
    "createdAt": Representative.created_at,
}


def _get_representative(session: Session, representative_id: str) -> Representative:
    representative = session.get(Representative, representative_id)
    if not representative or not representative.is_active:
        raise NotFound("Representative not found")
    return representative


def _check_business_id(session: Session, business_id: str, exclude_id: Optional[str] = None) -> None:
    statement = select(Representative).where(Representative.business_id == business_id)
    if exclude_id:
        statement = statement.where(Representative.id != exclude_id)
    if session.exec(statement).first():
        raise Conflict("Representative with this business ID already exists", field="businessId")


@router.post("", status_code=status.HTTP_201_CREATED)
def create_representative(
    payload: RepresentativeCreate,
    current_user: User = Depends(require_privilege("representatives", "create")),
    session: Session = Depends(get_session)
):
    _check_business_id(session, payload.business_id)
    representative = Representative(**payload.model_dump(), created_by=current_user.id)
    session.add(representative)
    session.commit()
    session.refresh(representative)

    log_audit(session, current_user.id, AuditAction.CREATE, ENTITY_KIND, representative.id, snapshot(representative))
    return success(RepresentativeResponse.model_validate(representative), "Representative created successfully")


@router.get("")
def list_representatives(
    params: PaginationParams = Depends(),
    current_user: User = Depends(require_privilege("representatives", "view")),
    session: Session = Depends(get_session)
):
    statement = select(Representative).where(Representative.is_active == True)
    if params.search:
        pattern = f"%{params.search}%"
        statement = statement.where(or_(
            Representative.name.ilike(pattern),
            Representative.business_id.ilike(pattern),
            Representative.phone_number.ilike(pattern),
        ))

    representatives, pagination = paginate(session, statement, params, SORTABLE, "createdAt")
    return success([RepresentativeResponse.model_validate(r) for r in representatives], pagination=pagination)


@router.post("/recount")
def recount(
    current_user: User = Depends(require_privilege("representatives", "update")),
    session: Session = Depends(get_session)
):
    """Recompute patientsCount and doctorsCount from the referring rows"""
    updated = recount_representative_counters(session)
    return success({"updated": updated}, "Representative counters recomputed")


@router.get("/{representative_id}")
def get_representative(
    representative_id: str,
    current_user: User = Depends(require_privilege("representatives", "view")),
    session: Session = Depends(get_session)
):
    return success(RepresentativeResponse.model_validate(_get_representative(session, representative_id)))


@router.patch("/{representative_id}")
def update_representative(
    representative_id: str,
    payload: RepresentativeUpdate,
    current_user: User = Depends(require_privilege("representatives", "update")),
    session: Session = Depends(get_session)
):
    representative = _get_representative(session, representative_id)
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise BadRequest("No fields to update")
    if changes.get("business_id"):
        _check_business_id(session, changes["business_id"], exclude_id=representative.id)

    before = snapshot(representative)
    for key, value in changes.items():
        if value is not None or key == "notes":
            setattr(representative, key, value)
    representative.updated_at = datetime.utcnow()
    session.add(representative)
    session.commit()
    session.refresh(representative)

    log_audit(session, current_user.id, AuditAction.UPDATE, ENTITY_KIND, representative.id,
              {"before": before, "after": snapshot(representative)})
    return success(RepresentativeResponse.model_validate(representative), "Representative updated successfully")


@router.delete("/{representative_id}")
def delete_representative(
    representative_id: str,
    current_user: User = Depends(require_privilege("representatives", "delete")),
    session: Session = Depends(get_session)
):
    representative = _get_representative(session, representative_id)

    patients = session.exec(
        select(func.count()).select_from(Patient).where(Patient.representative_id == representative.id)
    ).one()
    doctors = session.exec(
        select(func.count()).select_from(Doctor).where(Doctor.representative_id == representative.id)
    ).one()
    if patients or doctors:
        raise BadRequest("Cannot delete representative with associated patients or doctors")

    before = snapshot(representative)
    representative.is_active = False
    representative.updated_at = datetime.utcnow()
    session.add(representative)
    session.commit()

    log_audit(session, current_user.id, AuditAction.DELETE, ENTITY_KIND, representative.id, {"deleted": before})
    return success(message="Representative deleted successfully")
