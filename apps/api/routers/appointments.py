from datetime import datetime
from typing import Optional
import json

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse
from pydantic import ValidationError
from sqlmodel import Session, or_, select
from starlette.datastructures import UploadFile

from database import get_session
from dependencies import require_privilege
from errors import BadRequest, NotFound
from models import Appointment, AppointmentPriority, AppointmentStatus, AuditLog, Patient, User
from schemas import (
    AppointmentCreate,
    AppointmentResponse,
    AppointmentStatusUpdate,
    AppointmentUpdate,
    AuditLogResponse,
)
from services import appointment_engine
from services.report_storage import resolve_report
from utils.pagination import PaginationParams, paginate
from utils.responses import success
from validators.time_validator import to_naive_utc, validate_date_range

router = APIRouter(prefix="/api/appointments", tags=["Appointments"])

SORTABLE = {
    "scheduledAt": Appointment.scheduled_at,
    "createdAt": Appointment.created_at,
    "price": Appointment.price,
    "profit": Appointment.profit,
    "status": Appointment.status,
}


def _response(appointment: Appointment) -> AppointmentResponse:
    return AppointmentResponse.model_validate(appointment)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_appointment(
    payload: AppointmentCreate,
    current_user: User = Depends(require_privilege("appointments", "create")),
    session: Session = Depends(get_session)
):
    appointment = await appointment_engine.create_appointment(session, payload, current_user)
    return success(_response(appointment), "Appointment created successfully")


@router.get("")
def list_appointments(
    status_filter: Optional[AppointmentStatus] = Query(None, alias="status"),
    priority: Optional[AppointmentPriority] = None,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    patient_id: Optional[str] = Query(None, alias="patientId"),
    doctor_id: Optional[str] = Query(None, alias="doctorId"),
    representative_id: Optional[str] = Query(None, alias="representativeId"),
    radiologist_id: Optional[str] = Query(None, alias="radiologistId"),
    branch_id: Optional[str] = Query(None, alias="branchId"),
    params: PaginationParams = Depends(),
    current_user: User = Depends(require_privilege("appointments", "view")),
    session: Session = Depends(get_session)
):
    """Active appointments; ``search`` matches the patient's name or phone number"""
    try:
        validate_date_range(start_date, end_date)
    except ValueError as e:
        raise BadRequest(str(e), field="endDate")

    statement = select(Appointment).where(Appointment.is_active == True)
    if status_filter:
        statement = statement.where(Appointment.status == status_filter)
    if priority:
        statement = statement.where(Appointment.priority == priority)
    if start_date:
        statement = statement.where(Appointment.scheduled_at >= to_naive_utc(start_date))
    if end_date:
        statement = statement.where(Appointment.scheduled_at <= to_naive_utc(end_date))
    if patient_id:
        statement = statement.where(Appointment.patient_id == patient_id)
    if doctor_id:
        statement = statement.where(Appointment.referred_by_id == doctor_id)
    if representative_id:
        statement = statement.where(Appointment.representative_id == representative_id)
    if radiologist_id:
        statement = statement.where(Appointment.radiologist_id == radiologist_id)
    if branch_id:
        statement = statement.where(Appointment.branch_id == branch_id)
    if params.search:
        pattern = f"%{params.search}%"
        statement = statement.join(Patient, Patient.id == Appointment.patient_id).where(
            or_(Patient.name.ilike(pattern), Patient.phone_number.ilike(pattern))
        )

    appointments, pagination = paginate(session, statement, params, SORTABLE, "scheduledAt")
    return success([_response(a) for a in appointments], pagination=pagination)


@router.get("/{appointment_id}")
def get_appointment(
    appointment_id: str,
    current_user: User = Depends(require_privilege("appointments", "view")),
    session: Session = Depends(get_session)
):
    return success(_response(appointment_engine.get_appointment(session, appointment_id)))


@router.patch("/{appointment_id}")
async def update_appointment(
    appointment_id: str,
    payload: AppointmentUpdate,
    current_user: User = Depends(require_privilege("appointments", "update")),
    session: Session = Depends(get_session)
):
    appointment = await appointment_engine.update_appointment(session, appointment_id, payload, current_user)
    return success(_response(appointment), "Appointment updated successfully")


async def _read_status_body(request: Request):
    """
    JSON body, or multipart form carrying ``pdfFile`` for completion.

    Returns the parsed form as well; the caller closes it once the upload is stored.
    """
    content_type = request.headers.get("content-type", "")
    pdf_file = None
    form = None

    if content_type.startswith("multipart/form-data") or content_type.startswith("application/x-www-form-urlencoded"):
        form = await request.form()
        data = {key: value for key, value in form.items() if not isinstance(value, UploadFile)}
        upload = form.get("pdfFile")
        if isinstance(upload, UploadFile):
            pdf_file = upload
    else:
        try:
            data = await request.json()
        except json.JSONDecodeError:
            raise BadRequest("Request body must be valid JSON")
        if not isinstance(data, dict):
            raise BadRequest("Request body must be a JSON object")

    try:
        payload = AppointmentStatusUpdate.model_validate(data)
    except ValidationError as e:
        if form is not None:
            await form.close()
        raise RequestValidationError(e.errors())
    return payload, pdf_file, form


@router.patch("/{appointment_id}/status")
async def update_appointment_status(
    appointment_id: str,
    request: Request,
    current_user: User = Depends(require_privilege("appointments", "update")),
    session: Session = Depends(get_session)
):
    payload, pdf_file, form = await _read_status_body(request)
    try:
        appointment = await appointment_engine.change_status(
            session, appointment_id, payload, current_user, pdf_file=pdf_file
        )
    finally:
        if form is not None:
            await form.close()
    return success(_response(appointment), "Appointment status updated successfully")


@router.delete("/{appointment_id}")
def delete_appointment(
    appointment_id: str,
    current_user: User = Depends(require_privilege("appointments", "delete")),
    session: Session = Depends(get_session)
):
    appointment_engine.delete_appointment(session, appointment_id, current_user)
    return success(message="Appointment deleted successfully")


@router.get("/{appointment_id}/history")
def get_appointment_history(
    appointment_id: str,
    current_user: User = Depends(require_privilege("appointments", "view")),
    session: Session = Depends(get_session)
):
    """Audit records of the appointment, newest first"""
    records = session.exec(
        select(AuditLog)
        .where(AuditLog.entity_kind == appointment_engine.ENTITY_KIND, AuditLog.entity_id == appointment_id)
        .order_by(AuditLog.created_at.desc())
    ).all()
    return success([AuditLogResponse.model_validate(r) for r in records])


@router.get("/{appointment_id}/report")
def download_report(
    appointment_id: str,
    current_user: User = Depends(require_privilege("appointments", "view")),
    session: Session = Depends(get_session)
):
    appointment = appointment_engine.get_appointment(session, appointment_id)
    path = resolve_report(appointment.pdf_report)
    if path is None:
        raise NotFound("Report not found")
    return FileResponse(path, media_type="application/pdf", filename=path.name)
