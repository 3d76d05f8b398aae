"""Per-branch consumable stock"""
from datetime import datetime
from typing import Optional
import logging

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func
from sqlmodel import Session, select

from database import get_session
from dependencies import require_privilege
from errors import BadRequest, Conflict, NotFound
from models import AuditAction, Branch, StockItem, User, snapshot
from schemas import StockCreate, StockQuantityUpdate, StockResponse, StockUpdate
from services.appointment_engine import notify_low_stock
from services.audit import log_audit
from services.stock_service import find_low_stock
from utils.pagination import PaginationParams, paginate
from utils.responses import success

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stock", tags=["Stock"])

ENTITY_KIND = "Stock"

SORTABLE = {
    "name": StockItem.name,
    "quantity": StockItem.quantity,
    "price": StockItem.price,
    "validUntil": StockItem.valid_until,
    "createdAt": StockItem.created_at,
}


def _get_item(session: Session, item_id: str) -> StockItem:
    item = session.get(StockItem, item_id)
    if not item or not item.is_active:
        raise NotFound("Stock item not found")
    return item


def _ensure_unique_name(session: Session, branch_id: str, name: str, exclude_id: Optional[str] = None) -> None:
    statement = select(StockItem).where(
        StockItem.branch_id == branch_id,
        func.lower(StockItem.name) == name.strip().lower(),
        StockItem.is_active == True,
    )
    if exclude_id:
        statement = statement.where(StockItem.id != exclude_id)
    if session.exec(statement).first():
        raise Conflict("Stock item with this name already exists in this branch", field="name")


@router.get("")
def list_stock(
    branch: Optional[str] = None,
    low_stock: Optional[bool] = Query(None, alias="lowStock"),
    expired: Optional[bool] = None,
    params: PaginationParams = Depends(),
    current_user: User = Depends(require_privilege("stock", "view")),
    session: Session = Depends(get_session)
):
    statement = select(StockItem).where(StockItem.is_active == True)
    if branch:
        statement = statement.where(StockItem.branch_id == branch)
    if low_stock is not None:
        if low_stock:
            statement = statement.where(StockItem.quantity <= StockItem.minimum_threshold)
        else:
            statement = statement.where(StockItem.quantity > StockItem.minimum_threshold)
    if expired is not None:
        now = datetime.utcnow()
        if expired:
            statement = statement.where(StockItem.valid_until <= now)
        else:
            statement = statement.where(StockItem.valid_until > now)
    if params.search:
        statement = statement.where(StockItem.name.ilike(f"%{params.search}%"))

    items, pagination = paginate(session, statement, params, SORTABLE, "createdAt")
    return success([StockResponse.model_validate(i) for i in items], pagination=pagination)


@router.get("/check-low-stock")
async def check_low_stock(
    branch: Optional[str] = None,
    current_user: User = Depends(require_privilege("stock", "update")),
    session: Session = Depends(get_session)
):
    """List low stock and alert every user allowed to update stock"""
    items = find_low_stock(session, branch)
    notified = await notify_low_stock(session, items)
    return success({
        "items": [StockResponse.model_validate(i) for i in items],
        "count": len(items),
        "notified": notified,
    })


@router.get("/{item_id}")
def get_stock_item(
    item_id: str,
    current_user: User = Depends(require_privilege("stock", "view")),
    session: Session = Depends(get_session)
):
    return success(StockResponse.model_validate(_get_item(session, item_id)))


@router.post("", status_code=status.HTTP_201_CREATED)
def create_stock_item(
    payload: StockCreate,
    current_user: User = Depends(require_privilege("stock", "create")),
    session: Session = Depends(get_session)
):
    branch = session.get(Branch, payload.branch)
    if not branch or not branch.is_active:
        raise NotFound("Branch not found", field="branch")
    _ensure_unique_name(session, branch.id, payload.name)

    item = StockItem(
        name=payload.name.strip(),
        branch_id=branch.id,
        quantity=payload.quantity,
        minimum_threshold=payload.minimum_threshold,
        price=payload.price,
        valid_until=payload.valid_until,
        created_by=current_user.id,
        updated_by=current_user.id,
    )
    session.add(item)
    session.commit()
    session.refresh(item)
    logger.info(f"Stock item {item.id} ({item.name}) created in branch {branch.id}")

    log_audit(session, current_user.id, AuditAction.CREATE, ENTITY_KIND, item.id, snapshot(item))
    return success(StockResponse.model_validate(item), "Stock item created successfully")


@router.patch("/{item_id}")
def update_stock_item(
    item_id: str,
    payload: StockUpdate,
    current_user: User = Depends(require_privilege("stock", "update")),
    session: Session = Depends(get_session)
):
    item = _get_item(session, item_id)
    changes = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if not changes:
        raise BadRequest("No fields to update")

    quantity = changes.get("quantity", item.quantity)
    threshold = changes.get("minimum_threshold", item.minimum_threshold)
    if threshold > quantity:
        raise BadRequest("Minimum threshold cannot exceed quantity", field="minimumThreshold")
    if "name" in changes:
        changes["name"] = changes["name"].strip()
        _ensure_unique_name(session, item.branch_id, changes["name"], exclude_id=item.id)

    before = snapshot(item)
    for key, value in changes.items():
        setattr(item, key, value)
    item.updated_by = current_user.id
    item.updated_at = datetime.utcnow()
    session.add(item)
    session.commit()
    session.refresh(item)

    log_audit(session, current_user.id, AuditAction.UPDATE, ENTITY_KIND, item.id,
              {"before": before, "after": snapshot(item)})
    return success(StockResponse.model_validate(item), "Stock item updated successfully")


@router.patch("/{item_id}/quantity")
async def update_stock_quantity(
    item_id: str,
    payload: StockQuantityUpdate,
    current_user: User = Depends(require_privilege("stock", "update")),
    session: Session = Depends(get_session)
):
    """Add to or subtract from the quantity; it never goes below the minimum threshold"""
    item = _get_item(session, item_id)
    previous = item.quantity

    if payload.operation == "add":
        item.quantity = previous + payload.quantity
    else:
        if payload.quantity > previous:
            raise BadRequest("Cannot reduce quantity below zero", field="quantity")
        if previous - payload.quantity < item.minimum_threshold:
            raise BadRequest(
                f"Cannot reduce quantity below the minimum threshold of {item.minimum_threshold}",
                field="quantity",
            )
        item.quantity = previous - payload.quantity

    item.updated_by = current_user.id
    item.updated_at = datetime.utcnow()
    session.add(item)
    session.commit()
    session.refresh(item)
    logger.info(f"Stock item {item.id}: {payload.operation} {payload.quantity} ({previous} -> {item.quantity})")

    log_audit(session, current_user.id, AuditAction.UPDATE, ENTITY_KIND, item.id, {
        "operation": payload.operation,
        "amount": payload.quantity,
        "previousQuantity": previous,
        "newQuantity": item.quantity,
    })

    if item.is_low_stock:
        await notify_low_stock(session, [item])
    return success(StockResponse.model_validate(item), "Stock quantity updated successfully")


@router.delete("/{item_id}")
def delete_stock_item(
    item_id: str,
    current_user: User = Depends(require_privilege("stock", "delete")),
    session: Session = Depends(get_session)
):
    item = _get_item(session, item_id)
    before = snapshot(item)
    item.is_active = False
    item.updated_by = current_user.id
    item.updated_at = datetime.utcnow()
    session.add(item)
    session.commit()

    log_audit(session, current_user.id, AuditAction.DELETE, ENTITY_KIND, item.id, {"deleted": before})
    return success(message="Stock item deleted successfully")
