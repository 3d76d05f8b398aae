"""Referring doctors"""
from datetime import datetime
from typing import Optional
import logging

from fastapi import APIRouter, Depends, Query, status
from sqlmodel import Session, or_, select

from database import get_session
from dependencies import require_privilege
from errors import BadRequest, Conflict, NotFound
from models import AuditAction, Doctor, Representative, User, snapshot
from schemas import DoctorCreate, DoctorResponse, DoctorUpdate
from services.audit import log_audit
from services.referral_counters import increment_representative_counter, recount_doctor_referrals
from utils.pagination import PaginationParams, paginate
from utils.responses import success

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/doctors", tags=["Doctors"])

ENTITY_KIND = "Doctor"

SORTABLE = {
    "name": Doctor.name,
    "specialization": Doctor.specialization,
    "totalPatientsReferred": Doctor.total_patients_referred,
    "totalScansReferred": Doctor.total_scans_referred,
    "createdAt": Doctor.created_at,
}


def _get_doctor(session: Session, doctor_id: str, active_only: bool = True) -> Doctor:
    doctor = session.get(Doctor, doctor_id)
    if not doctor or (active_only and not doctor.is_active):
        raise NotFound("Doctor not found")
    return doctor


def _check_representative(session: Session, representative_id: Optional[str]) -> None:
    if not representative_id:
        return
    representative = session.get(Representative, representative_id)
    if not representative or not representative.is_active:
        raise NotFound("Representative not found", field="representative")


@router.post("", status_code=status.HTTP_201_CREATED)
def create_doctor(
    payload: DoctorCreate,
    current_user: User = Depends(require_privilege("doctors", "create")),
    session: Session = Depends(get_session)
):
    _check_representative(session, payload.representative)
    doctor = Doctor(
        name=payload.name,
        specialization=payload.specialization,
        license_number=payload.license_number,
        contact_number=payload.contact_number,
        representative_id=payload.representative,
        created_by=current_user.id,
    )
    session.add(doctor)
    session.commit()
    session.refresh(doctor)

    log_audit(session, current_user.id, AuditAction.CREATE, ENTITY_KIND, doctor.id, snapshot(doctor))
    increment_representative_counter(session, doctor.representative_id, "doctors_count")
    return success(DoctorResponse.model_validate(doctor), "Doctor created successfully")


@router.get("")
def list_doctors(
    specialization: Optional[str] = None,
    representative: Optional[str] = None,
    is_active: bool = Query(True, alias="isActive"),
    params: PaginationParams = Depends(),
    current_user: User = Depends(require_privilege("doctors", "view")),
    session: Session = Depends(get_session)
):
    statement = select(Doctor).where(Doctor.is_active == is_active)
    if specialization:
        statement = statement.where(Doctor.specialization.ilike(f"%{specialization}%"))
    if representative:
        statement = statement.where(Doctor.representative_id == representative)
    if params.search:
        pattern = f"%{params.search}%"
        statement = statement.where(or_(
            Doctor.name.ilike(pattern),
            Doctor.specialization.ilike(pattern),
            Doctor.license_number.ilike(pattern),
        ))

    doctors, pagination = paginate(session, statement, params, SORTABLE, "createdAt")
    return success([DoctorResponse.model_validate(d) for d in doctors], pagination=pagination)


@router.post("/recount-referrals")
def recount_referrals(
    current_user: User = Depends(require_privilege("doctors", "update")),
    session: Session = Depends(get_session)
):
    """Rebuild both referral counters from patients and appointments"""
    updated = recount_doctor_referrals(session)
    return success({"updated": updated}, "Referral counters recomputed")


@router.get("/{doctor_id}")
def get_doctor(
    doctor_id: str,
    current_user: User = Depends(require_privilege("doctors", "view")),
    session: Session = Depends(get_session)
):
    return success(DoctorResponse.model_validate(_get_doctor(session, doctor_id, active_only=False)))


@router.patch("/{doctor_id}")
def update_doctor(
    doctor_id: str,
    payload: DoctorUpdate,
    current_user: User = Depends(require_privilege("doctors", "update")),
    session: Session = Depends(get_session)
):
    doctor = _get_doctor(session, doctor_id, active_only=False)
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise BadRequest("No fields to update")

    before = snapshot(doctor)
    previous_representative = doctor.representative_id
    if "representative" in changes:
        _check_representative(session, changes["representative"])
        doctor.representative_id = changes.pop("representative")

    for key, value in changes.items():
        if value is not None or key in ("license_number", "contact_number"):
            setattr(doctor, key, value)
    doctor.updated_at = datetime.utcnow()
    session.add(doctor)
    session.commit()
    session.refresh(doctor)

    log_audit(session, current_user.id, AuditAction.UPDATE, ENTITY_KIND, doctor.id,
              {"before": before, "after": snapshot(doctor)})

    if doctor.representative_id != previous_representative:
        increment_representative_counter(session, previous_representative, "doctors_count", -1)
        increment_representative_counter(session, doctor.representative_id, "doctors_count")

    return success(DoctorResponse.model_validate(doctor), "Doctor updated successfully")


@router.delete("/{doctor_id}")
def delete_doctor(
    doctor_id: str,
    current_user: User = Depends(require_privilege("doctors", "delete")),
    session: Session = Depends(get_session)
):
    doctor = _get_doctor(session, doctor_id)
    if (doctor.total_patients_referred or 0) + (doctor.total_scans_referred or 0) > 0:
        raise Conflict("Cannot delete doctor with existing referrals")

    before = snapshot(doctor)
    doctor.is_active = False
    doctor.updated_at = datetime.utcnow()
    session.add(doctor)
    session.commit()
    logger.info(f"Doctor {doctor.id} deactivated by {current_user.id}")

    log_audit(session, current_user.id, AuditAction.DELETE, ENTITY_KIND, doctor.id, {"deleted": before})
    return success(message="Doctor deleted successfully")
