"""Scan catalog: prices and the consumables each scan uses"""
from datetime import datetime

from fastapi import APIRouter, Depends, status
from sqlmodel import Session, or_, select

from database import get_session
from dependencies import require_privilege
from errors import BadRequest, NotFound
from models import AuditAction, Scan, User, snapshot
from schemas import ScanCreate, ScanResponse, ScanUpdate
from services.audit import log_audit
from utils.pagination import PaginationParams, paginate
from utils.responses import success

router = APIRouter(prefix="/api/scans", tags=["Scans"])

ENTITY_KIND = "Scan"

SORTABLE = {
    "name": Scan.name,
    "actualCost": Scan.actual_cost,
    "minPrice": Scan.min_price,
    "createdAt": Scan.created_at,
}


def _get_scan(session: Session, scan_id: str) -> Scan:
    scan = session.get(Scan, scan_id)
    if not scan or not scan.is_active:
        raise NotFound("Scan not found")
    return scan


@router.post("", status_code=status.HTTP_201_CREATED)
def create_scan(
    payload: ScanCreate,
    current_user: User = Depends(require_privilege("scans", "create")),
    session: Session = Depends(get_session)
):
    scan = Scan(
        name=payload.name,
        actual_cost=payload.actual_cost,
        min_price=payload.min_price,
        description=payload.description,
        items=[{"item": line.item.strip(), "quantity": line.quantity} for line in payload.items],
        images=payload.images,
        created_by=current_user.id,
    )
    session.add(scan)
    session.commit()
    session.refresh(scan)

    log_audit(session, current_user.id, AuditAction.CREATE, ENTITY_KIND, scan.id, snapshot(scan))
    return success(ScanResponse.model_validate(scan), "Scan created successfully")


@router.get("")
def list_scans(
    params: PaginationParams = Depends(),
    current_user: User = Depends(require_privilege("scans", "view")),
    session: Session = Depends(get_session)
):
    statement = select(Scan).where(Scan.is_active == True)
    if params.search:
        pattern = f"%{params.search}%"
        statement = statement.where(or_(Scan.name.ilike(pattern), Scan.description.ilike(pattern)))
    scans, pagination = paginate(session, statement, params, SORTABLE, "createdAt")
    return success([ScanResponse.model_validate(s) for s in scans], pagination=pagination)


@router.get("/{scan_id}")
def get_scan(
    scan_id: str,
    current_user: User = Depends(require_privilege("scans", "view")),
    session: Session = Depends(get_session)
):
    return success(ScanResponse.model_validate(_get_scan(session, scan_id)))


@router.patch("/{scan_id}")
def update_scan(
    scan_id: str,
    payload: ScanUpdate,
    current_user: User = Depends(require_privilege("scans", "update")),
    session: Session = Depends(get_session)
):
    scan = _get_scan(session, scan_id)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise BadRequest("No fields to update")
    if "items" in changes:
        changes["items"] = [{"item": line["item"].strip(), "quantity": line["quantity"]} for line in changes["items"]]

    before = snapshot(scan)
    for key, value in changes.items():
        setattr(scan, key, value)
    scan.updated_at = datetime.utcnow()
    session.add(scan)
    session.commit()
    session.refresh(scan)

    log_audit(session, current_user.id, AuditAction.UPDATE, ENTITY_KIND, scan.id,
              {"before": before, "after": snapshot(scan)})
    return success(ScanResponse.model_validate(scan), "Scan updated successfully")


@router.delete("/{scan_id}")
def delete_scan(
    scan_id: str,
    current_user: User = Depends(require_privilege("scans", "delete")),
    session: Session = Depends(get_session)
):
    """Soft delete; past appointments keep referring to the scan"""
    scan = _get_scan(session, scan_id)
    before = snapshot(scan)
    scan.is_active = False
    scan.updated_at = datetime.utcnow()
    session.add(scan)
    session.commit()

    log_audit(session, current_user.id, AuditAction.DELETE, ENTITY_KIND, scan.id, {"deleted": before})
    return success(message="Scan deleted successfully")
