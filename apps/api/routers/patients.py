from datetime import datetime
from typing import Optional
import logging

from fastapi import APIRouter, Depends, Query, status
from sqlmodel import Session, or_, select

from database import get_session
from dependencies import require_privilege
from errors import BadRequest, Conflict, NotFound
from models import Appointment, AuditAction, Doctor, Gender, Patient, Representative, User, snapshot
from schemas import PatientCreate, PatientResponse, PatientUpdate
from services.audit import log_audit
from services.referral_counters import increment_doctor_counter, increment_representative_counter
from utils.pagination import PaginationParams, paginate
from utils.responses import success
from validators.appointment_validator import OPEN_STATUSES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/patients", tags=["Patients"])

ENTITY_KIND = "Patient"

SORTABLE = {
    "name": Patient.name,
    "dateOfBirth": Patient.date_of_birth,
    "createdAt": Patient.created_at,
}


def _get_patient(session: Session, patient_id: str) -> Patient:
    patient = session.get(Patient, patient_id)
    if not patient or not patient.is_active:
        raise NotFound("Patient not found")
    return patient


def _check_doctor(session: Session, doctor_id: str) -> Doctor:
    doctor = session.get(Doctor, doctor_id)
    if not doctor or not doctor.is_active:
        raise NotFound("Referring doctor not found", field="doctorReferred")
    return doctor


def _check_representative(session: Session, representative_id: Optional[str]) -> None:
    if not representative_id:
        return
    representative = session.get(Representative, representative_id)
    if not representative or not representative.is_active:
        raise NotFound("Representative not found", field="representative")


def _check_social_number(session: Session, social_number: Optional[str], exclude_id: Optional[str] = None) -> None:
    """Unique across active and inactive patients"""
    if not social_number:
        return
    statement = select(Patient).where(Patient.social_number == social_number)
    if exclude_id:
        statement = statement.where(Patient.id != exclude_id)
    if session.exec(statement).first():
        raise Conflict("Patient with this social number already exists", field="socialNumber")


@router.post("", status_code=status.HTTP_201_CREATED)
def create_patient(
    payload: PatientCreate,
    current_user: User = Depends(require_privilege("patients", "create")),
    session: Session = Depends(get_session)
):
    doctor = _check_doctor(session, payload.doctor_referred)
    _check_representative(session, payload.representative)
    _check_social_number(session, payload.social_number)

    patient = Patient(
        name=payload.name,
        date_of_birth=payload.date_of_birth,
        gender=payload.gender,
        phone_number=payload.phone_number,
        social_number=payload.social_number,
        doctor_referred_id=doctor.id,
        representative_id=payload.representative,
        medical_history=payload.medical_history,
        address=payload.address.model_dump(by_alias=True, exclude_none=True) if payload.address else None,
        created_by=current_user.id,
    )
    session.add(patient)
    session.commit()
    session.refresh(patient)
    logger.info(f"Patient {patient.id} created by {current_user.id}")

    log_audit(session, current_user.id, AuditAction.CREATE, ENTITY_KIND, patient.id, snapshot(patient))
    increment_doctor_counter(session, doctor.id, "total_patients_referred")
    increment_representative_counter(session, patient.representative_id, "patients_count")

    return success(PatientResponse.model_validate(patient), "Patient created successfully")


@router.get("")
def list_patients(
    doctor_referred: Optional[str] = Query(None, alias="doctorReferred"),
    representative: Optional[str] = None,
    gender: Optional[Gender] = None,
    params: PaginationParams = Depends(),
    current_user: User = Depends(require_privilege("patients", "view")),
    session: Session = Depends(get_session)
):
    statement = select(Patient).where(Patient.is_active == True)
    if doctor_referred:
        statement = statement.where(Patient.doctor_referred_id == doctor_referred)
    if representative:
        statement = statement.where(Patient.representative_id == representative)
    if gender:
        statement = statement.where(Patient.gender == gender)
    if params.search:
        pattern = f"%{params.search}%"
        statement = statement.where(or_(
            Patient.name.ilike(pattern),
            Patient.phone_number.ilike(pattern),
            Patient.social_number.ilike(pattern),
        ))

    patients, pagination = paginate(session, statement, params, SORTABLE, "createdAt")
    return success([PatientResponse.model_validate(p) for p in patients], pagination=pagination)


@router.get("/{patient_id}")
def get_patient(
    patient_id: str,
    current_user: User = Depends(require_privilege("patients", "view")),
    session: Session = Depends(get_session)
):
    return success(PatientResponse.model_validate(_get_patient(session, patient_id)))


@router.patch("/{patient_id}")
def update_patient(
    patient_id: str,
    payload: PatientUpdate,
    current_user: User = Depends(require_privilege("patients", "update")),
    session: Session = Depends(get_session)
):
    patient = _get_patient(session, patient_id)
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise BadRequest("No fields to update")

    before = snapshot(patient)
    previous_representative = patient.representative_id

    if changes.get("doctor_referred"):
        patient.doctor_referred_id = _check_doctor(session, changes["doctor_referred"]).id
    if "representative" in changes:
        _check_representative(session, changes["representative"])
        patient.representative_id = changes["representative"]
    if changes.get("social_number"):
        _check_social_number(session, changes["social_number"], exclude_id=patient.id)
    if "address" in changes:
        patient.address = payload.address.model_dump(by_alias=True, exclude_none=True) if payload.address else None

    for key in ("name", "date_of_birth", "gender", "phone_number", "social_number", "medical_history"):
        if key in changes and (changes[key] is not None or key in ("phone_number", "social_number")):
            setattr(patient, key, changes[key])

    patient.updated_at = datetime.utcnow()
    session.add(patient)
    session.commit()
    session.refresh(patient)

    log_audit(session, current_user.id, AuditAction.UPDATE, ENTITY_KIND, patient.id,
              {"before": before, "after": snapshot(patient)})

    if patient.representative_id != previous_representative:
        increment_representative_counter(session, previous_representative, "patients_count", -1)
        increment_representative_counter(session, patient.representative_id, "patients_count")

    return success(PatientResponse.model_validate(patient), "Patient updated successfully")


@router.delete("/{patient_id}")
def delete_patient(
    patient_id: str,
    current_user: User = Depends(require_privilege("patients", "delete")),
    session: Session = Depends(get_session)
):
    """Soft delete, refused while the patient has an appointment that is not yet closed"""
    patient = _get_patient(session, patient_id)
    active = session.exec(
        select(Appointment).where(
            Appointment.patient_id == patient.id,
            Appointment.status.in_(OPEN_STATUSES),
            Appointment.is_active == True,
        )
    ).first()
    if active:
        raise BadRequest("Cannot delete patient with active appointments")

    before = snapshot(patient)
    patient.is_active = False
    patient.updated_at = datetime.utcnow()
    session.add(patient)
    session.commit()

    log_audit(session, current_user.id, AuditAction.DELETE, ENTITY_KIND, patient.id, {"deleted": before})
    return success(message="Patient deleted successfully")
