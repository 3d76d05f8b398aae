"""
Appointment Engine
Creation, update, status transitions and deletion of appointments, with the
financial, stock, audit and notification effects each of them carries.

Handlers call these coroutines with the request session; every failure the
caller should see is raised as a domain error from ``errors``.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from fastapi import UploadFile
from sqlmodel import Session, select

from errors import BadRequest, Conflict, NotFound
from models import (
    Appointment,
    AppointmentStatus,
    AuditAction,
    Branch,
    Doctor,
    Patient,
    StockItem,
    User,
    UserType,
    snapshot,
)
from privileges import allow
from schemas import AppointmentCreate, AppointmentStatusUpdate, AppointmentUpdate
from services import stock_service
from services.audit import log_audit
from services.notification_bus import EventType, NotificationEvent, notification_bus
from services.referral_counters import increment_doctor_counter
from services.report_storage import delete_report, read_pdf_upload, save_report
from validators.appointment_validator import (
    compute_financials,
    find_slot_conflict,
    load_scan_catalog,
    validate_huge_sale,
    validate_not_terminal,
    validate_status_transition,
)
from validators.business_rules import get_business_rules
from validators.time_validator import format_utc

logger = logging.getLogger(__name__)

ENTITY_KIND = "Appointment"


def get_appointment(session: Session, appointment_id: str) -> Appointment:
    appointment = session.get(Appointment, appointment_id)
    if not appointment or not appointment.is_active:
        raise NotFound("Appointment not found")
    return appointment


def _get_radiologist(session: Session, radiologist_id: str) -> User:
    radiologist = session.get(User, radiologist_id)
    if not radiologist or radiologist.user_type != UserType.RADIOLOGIST:
        raise NotFound("Radiologist not found", field="radiologistId")
    if not radiologist.is_active:
        raise BadRequest("Radiologist is not available", field="radiologistId")
    return radiologist


def _get_patient_and_doctor(session: Session, patient_id: str):
    """The patient and its referring doctor, who becomes ``referredBy``"""
    patient = session.get(Patient, patient_id)
    if not patient or not patient.is_active:
        raise NotFound("Patient not found", field="patientId")

    doctor = session.get(Doctor, patient.doctor_referred_id) if patient.doctor_referred_id else None
    if not doctor:
        raise NotFound("Patient has no referring doctor", field="patientId")
    if not doctor.is_active:
        raise BadRequest("Referring doctor is not available", field="patientId")
    return patient, doctor


def _get_branch(session: Session, branch_id: str) -> Branch:
    branch = session.get(Branch, branch_id)
    if not branch or not branch.is_active:
        raise NotFound("Branch not found", field="branchId")
    return branch


def _scan_summary(scans: List[dict], catalog: dict) -> List[dict]:
    return [
        {
            "scan": entry["scan"],
            "name": catalog[entry["scan"]].name if entry["scan"] in catalog else None,
            "quantity": entry["quantity"],
        }
        for entry in scans
    ]


def stock_alert_recipients(session: Session) -> List[str]:
    """Active users allowed to update stock"""
    users = session.exec(select(User).where(User.is_active == True)).all()
    return [user.id for user in users if allow(user, "stock", "update")]


async def notify_low_stock(session: Session, items: Iterable[StockItem]) -> int:
    """Send a ``low_stock_alert`` listing ``items``; returns deliveries made"""
    items = list(items)
    if not items:
        return 0
    event = NotificationEvent(
        type=EventType.LOW_STOCK_ALERT,
        data=stock_service.low_stock_payload(items),
    )
    delivered = await notification_bus.send_to_users(stock_alert_recipients(session), event)
    logger.info(f"Low stock alert for {len(items)} item(s) delivered to {delivered} user(s)")
    return delivered


async def create_appointment(session: Session, payload: AppointmentCreate, actor: User) -> Appointment:
    """
    Schedule an appointment.

    Checks run in a fixed order and the first failure is raised: radiologist,
    patient and referring doctor, branch, time slot, stock, huge sale.
    """
    radiologist = _get_radiologist(session, payload.radiologist_id)
    patient, doctor = _get_patient_and_doctor(session, payload.patient_id)
    _get_branch(session, payload.branch_id)

    if find_slot_conflict(session, radiologist.id, payload.scheduled_at):
        raise Conflict("Time slot is already booked", field="scheduledAt")

    scans = [entry.model_dump() for entry in payload.scans]
    catalog = load_scan_catalog(session, scans)

    availability = stock_service.check_availability(session, scans, payload.branch_id)
    if not availability.available:
        raise BadRequest(
            f"Cannot create appointment: {availability.describe_shortages()}",
            field="scans",
        )

    validate_huge_sale(actor, payload.make_huge_sale, payload.custom_price)

    financials = compute_financials(scans, catalog, payload.make_huge_sale, payload.custom_price)

    appointment = Appointment(
        radiologist_id=radiologist.id,
        branch_id=payload.branch_id,
        patient_id=patient.id,
        scans=scans,
        cost=financials.cost,
        price=financials.price,
        profit=financials.profit,
        referred_by_id=doctor.id,
        representative_id=patient.representative_id,
        scheduled_at=payload.scheduled_at,
        status=AppointmentStatus.SCHEDULED,
        priority=payload.priority,
        notes=payload.notes,
        make_huge_sale=payload.make_huge_sale,
        custom_price=payload.custom_price if payload.make_huge_sale else None,
        created_by=actor.id,
        updated_by=actor.id,
    )
    session.add(appointment)
    session.commit()
    session.refresh(appointment)
    logger.info(f"Appointment {appointment.id} scheduled for radiologist {radiologist.id} by {actor.id}")

    log_audit(session, actor.id, AuditAction.CREATE, ENTITY_KIND, appointment.id, snapshot(appointment))
    increment_doctor_counter(session, doctor.id, "total_scans_referred")

    await notification_bus.send_notification(
        radiologist.id,
        NotificationEvent(
            type=EventType.NEW_APPOINTMENT,
            data={
                "appointmentId": appointment.id,
                "patientName": patient.name,
                "scheduledAt": format_utc(appointment.scheduled_at),
                "scans": _scan_summary(scans, catalog),
            },
        ),
    )
    return appointment


async def update_appointment(
    session: Session,
    appointment_id: str,
    payload: AppointmentUpdate,
    actor: User,
) -> Appointment:
    appointment = get_appointment(session, appointment_id)
    validate_not_terminal(appointment)

    before = snapshot(appointment)
    changes = payload.model_dump(exclude_unset=True)

    if changes.get("radiologist_id") and changes["radiologist_id"] != appointment.radiologist_id:
        _get_radiologist(session, changes["radiologist_id"])
        appointment.radiologist_id = changes["radiologist_id"]

    if changes.get("patient_id") and changes["patient_id"] != appointment.patient_id:
        patient, doctor = _get_patient_and_doctor(session, changes["patient_id"])
        appointment.patient_id = patient.id
        appointment.referred_by_id = doctor.id
        appointment.representative_id = patient.representative_id

    if changes.get("scheduled_at") is not None:
        appointment.scheduled_at = changes["scheduled_at"]

    if "scheduled_at" in changes or "radiologist_id" in changes:
        if find_slot_conflict(session, appointment.radiologist_id, appointment.scheduled_at, exclude_id=appointment.id):
            raise Conflict("Time slot conflicts with existing appointment", field="scheduledAt")

    make_huge_sale = changes.get("make_huge_sale")
    if make_huge_sale is None:
        make_huge_sale = appointment.make_huge_sale
    custom_price = changes["custom_price"] if "custom_price" in changes else appointment.custom_price
    if make_huge_sale and ("make_huge_sale" in changes or "custom_price" in changes):
        validate_huge_sale(actor, make_huge_sale, custom_price)

    if changes.get("scans") is not None:
        appointment.scans = [dict(entry) for entry in changes["scans"]]

    if {"scans", "make_huge_sale", "custom_price"} & changes.keys():
        catalog = load_scan_catalog(session, appointment.scans)
        financials = compute_financials(appointment.scans, catalog, make_huge_sale, custom_price)
        appointment.cost = financials.cost
        appointment.price = financials.price
        appointment.profit = financials.profit
        appointment.make_huge_sale = make_huge_sale
        appointment.custom_price = custom_price if make_huge_sale else None

    if "notes" in changes:
        appointment.notes = changes["notes"]
    if changes.get("priority") is not None:
        appointment.priority = changes["priority"]

    appointment.updated_by = actor.id
    appointment.updated_at = datetime.utcnow()
    session.add(appointment)
    session.commit()
    session.refresh(appointment)
    logger.info(f"Appointment {appointment.id} updated by {actor.id}")

    log_audit(
        session,
        actor.id,
        AuditAction.UPDATE,
        ENTITY_KIND,
        appointment.id,
        {"before": before, "after": snapshot(appointment)},
    )
    return appointment


async def change_status(
    session: Session,
    appointment_id: str,
    payload: AppointmentStatusUpdate,
    actor: User,
    pdf_file: Optional[UploadFile] = None,
) -> Appointment:
    """
    Move an appointment along the state machine.

    Completion stores the PDF report and then deducts stock. The appointment
    stays completed when the deduction is partial; the audit record carries
    the deduction summary.
    """
    appointment = get_appointment(session, appointment_id)
    original_status = appointment.status
    target = payload.status

    validate_status_transition(original_status, target)

    report_content = None
    if target == AppointmentStatus.COMPLETED:
        if pdf_file is None:
            raise BadRequest("PDF file is required when completing an appointment", field="pdfFile")
        report_content = await read_pdf_upload(pdf_file)

        availability = stock_service.check_availability(session, appointment.scans, appointment.branch_id)
        if not availability.available:
            raise BadRequest(
                f"Cannot complete appointment: {availability.describe_shortages()}",
                field="scans",
            )

    if target == AppointmentStatus.CANCELLED:
        reason = payload.cancellation_reason or payload.notes
        if original_status == AppointmentStatus.IN_PROGRESS and not reason:
            raise BadRequest(
                "Cancellation reason is required when cancelling an in-progress appointment",
                field="cancellationReason",
            )
        appointment.cancelled_at = datetime.utcnow()
        appointment.cancelled_by = actor.id
        appointment.cancellation_reason = reason

    report_path = None
    if report_content is not None:
        report_path = await save_report(appointment.id, report_content)
        appointment.pdf_report = report_path

    appointment.status = target
    if payload.notes:
        appointment.notes = payload.notes
    appointment.updated_by = actor.id
    appointment.updated_at = datetime.utcnow()

    try:
        session.add(appointment)
        session.commit()
    except Exception:
        session.rollback()
        delete_report(report_path)
        raise
    session.refresh(appointment)
    logger.info(f"Appointment {appointment.id} moved from {original_status.value} to {target.value} by {actor.id}")

    deduction = None
    if target == AppointmentStatus.COMPLETED:
        deduction = stock_service.deduct(session, appointment.scans, appointment.branch_id)
        if deduction.low_stock_items and get_business_rules().LOW_STOCK_ALERT_ON_DEDUCTION:
            await notify_low_stock(session, deduction.low_stock_items)

    log_audit(
        session,
        actor.id,
        AuditAction.STATUS_CHANGE,
        ENTITY_KIND,
        appointment.id,
        {
            "from": original_status.value,
            "to": target.value,
            "notes": payload.notes,
            "pdfUploaded": report_path is not None,
            "stockDeduction": deduction.audit_summary() if deduction else None,
        },
    )
    session.refresh(appointment)
    return appointment


def delete_appointment(session: Session, appointment_id: str, actor: User) -> None:
    """Hard delete; only scheduled appointments qualify"""
    appointment = get_appointment(session, appointment_id)
    if appointment.status != AppointmentStatus.SCHEDULED:
        raise BadRequest("Can only delete scheduled appointments")

    deleted = snapshot(appointment)
    session.delete(appointment)
    session.commit()
    logger.info(f"Appointment {appointment_id} deleted by {actor.id}")

    log_audit(session, actor.id, AuditAction.DELETE, ENTITY_KIND, appointment_id, {"deleted": deleted})
