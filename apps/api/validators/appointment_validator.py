"""Appointment validation logic"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlmodel import Session, select

from errors import BadRequest, Forbidden, NotFound
from models import Appointment, AppointmentStatus, Scan, User
from privileges import allow


ALLOWED_TRANSITIONS: Dict[AppointmentStatus, frozenset] = {
    AppointmentStatus.SCHEDULED: frozenset({
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.CONFIRMED: frozenset({
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.IN_PROGRESS: frozenset({
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
    }),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# Statuses that hold a radiologist's time slot
CONFLICT_STATUSES = (AppointmentStatus.SCHEDULED, AppointmentStatus.IN_PROGRESS)

# Statuses that keep the patient of an appointment in use
OPEN_STATUSES = tuple(status for status in ALLOWED_TRANSITIONS if status not in TERMINAL_STATUSES)


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def validate_status_transition(current: AppointmentStatus, target: AppointmentStatus) -> None:
    if not can_transition(current, target):
        raise BadRequest(
            f"Cannot transition from {current.value} to {target.value}",
            field="status",
        )


def validate_not_terminal(appointment: Appointment) -> None:
    """Completed, cancelled and no-show appointments are read-only"""
    if appointment.status in TERMINAL_STATUSES:
        raise BadRequest("Cannot update a completed, cancelled, or no-show appointment")


def find_slot_conflict(
    session: Session,
    radiologist_id: str,
    scheduled_at: datetime,
    exclude_id: Optional[str] = None,
) -> Optional[Appointment]:
    """Active appointment of the radiologist at exactly ``scheduled_at``"""
    statement = select(Appointment).where(
        Appointment.radiologist_id == radiologist_id,
        Appointment.scheduled_at == scheduled_at,
        Appointment.status.in_(CONFLICT_STATUSES),
        Appointment.is_active == True,
    )
    if exclude_id:
        statement = statement.where(Appointment.id != exclude_id)
    return session.exec(statement).first()


@dataclass
class Financials:
    cost: float
    price: float
    profit: float


def load_scan_catalog(session: Session, scans: Iterable[dict]) -> Dict[str, Scan]:
    """Active catalog entries for the requested scans; any unknown id is a 404"""
    catalog: Dict[str, Scan] = {}
    for entry in scans:
        scan_id = entry["scan"]
        if scan_id in catalog:
            continue
        scan = session.get(Scan, scan_id)
        if not scan or not scan.is_active:
            raise NotFound(f"Scan not found: {scan_id}", field="scans")
        catalog[scan_id] = scan
    return catalog


def compute_financials(
    scans: List[dict],
    catalog: Dict[str, Scan],
    make_huge_sale: bool = False,
    custom_price: Optional[float] = None,
) -> Financials:
    """
    cost is the catalog actual cost times quantity, price the catalog minimum
    price times quantity. A huge sale replaces price with ``custom_price``.
    profit is always price - cost.
    """
    cost = 0.0
    price = 0.0
    for entry in scans:
        scan = catalog[entry["scan"]]
        quantity = int(entry.get("quantity", 1))
        cost += scan.actual_cost * quantity
        price += scan.min_price * quantity

    if make_huge_sale:
        price = float(custom_price)

    return Financials(cost=cost, price=price, profit=price - cost)


def validate_huge_sale(user: User, make_huge_sale: bool, custom_price: Optional[float]) -> None:
    if not make_huge_sale:
        return
    if not allow(user, "appointments", "makeHugeSale"):
        raise Forbidden("You do not have permission to make huge sales")
    if custom_price is None or custom_price <= 0:
        raise BadRequest(
            "Custom price is required and must be greater than 0 for huge sales",
            field="customPrice",
        )
