"""
Stock Service
Availability checks and deductions of consumables for appointment scans.

Both operations report business failures in their result instead of raising:
callers decide what an unavailable or partially deducted item means for them.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, update
from sqlmodel import Session, select

from models import Scan, StockItem

logger = logging.getLogger(__name__)

ITEM_NOT_FOUND = "Item not found in stock"
INSUFFICIENT_QUANTITY = "Insufficient quantity"
SCAN_NOT_FOUND = "Scan not found"


@dataclass
class RequiredItem:
    item_name: str
    required: int


@dataclass
class AvailabilityResult:
    available: bool = True
    available_items: List[dict] = field(default_factory=list)
    unavailable_items: List[dict] = field(default_factory=list)
    total_items_needed: int = 0

    def describe_shortages(self) -> str:
        return ", ".join(f"{item['itemName']} - {item['reason']}" for item in self.unavailable_items)

    def to_dict(self) -> dict:
        return {
            "available": self.available,
            "availableItems": self.available_items,
            "unavailableItems": self.unavailable_items,
            "totalItemsNeeded": self.total_items_needed,
        }


@dataclass
class DeductionResult:
    success: bool = True
    deducted_items: List[dict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    total_items_deducted: int = 0
    low_stock_items: List[StockItem] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "deductedItems": self.deducted_items,
            "errors": self.errors,
            "totalItemsDeducted": self.total_items_deducted,
        }

    def audit_summary(self) -> dict:
        return {
            "success": self.success,
            "itemsDeducted": len(self.deducted_items),
            "totalQuantityDeducted": self.total_items_deducted,
            "errors": self.errors,
        }


def expand_scans(session: Session, scans: Iterable[dict]) -> Tuple["OrderedDict[str, RequiredItem]", List[str]]:
    """
    Turn appointment scans into ``{lowercased item name: RequiredItem}``.

    Quantities are summed across scans; the first spelling of a name is kept
    for display. Returns the ids of scans missing from the catalog as well.
    """
    required: "OrderedDict[str, RequiredItem]" = OrderedDict()
    missing_scans: List[str] = []

    for entry in scans:
        scan_id = entry["scan"]
        appointment_quantity = int(entry.get("quantity", 1))
        scan = session.get(Scan, scan_id)
        if not scan:
            missing_scans.append(scan_id)
            continue
        for line in scan.items or []:
            name = str(line["item"]).strip()
            key = name.lower()
            needed = int(line.get("quantity", 1)) * appointment_quantity
            if key in required:
                required[key].required += needed
            else:
                required[key] = RequiredItem(item_name=name, required=needed)

    return required, missing_scans


def find_stock_item(session: Session, branch_id: str, item_name: str) -> Optional[StockItem]:
    """Active stock row of ``branch_id`` whose name matches case-insensitively."""
    return session.exec(
        select(StockItem).where(
            StockItem.branch_id == branch_id,
            func.lower(StockItem.name) == item_name.strip().lower(),
            StockItem.is_active == True,
        )
    ).first()


def check_availability(session: Session, scans: Iterable[dict], branch_id: str) -> AvailabilityResult:
    result = AvailabilityResult()
    try:
        required, missing_scans = expand_scans(session, scans)

        for scan_id in missing_scans:
            result.available = False
            result.unavailable_items.append({"itemName": f"Scan {scan_id}", "reason": SCAN_NOT_FOUND})

        for item in required.values():
            result.total_items_needed += item.required
            stock_item = find_stock_item(session, branch_id, item.item_name)
            if not stock_item:
                result.available = False
                result.unavailable_items.append({
                    "itemName": item.item_name,
                    "reason": ITEM_NOT_FOUND,
                    "quantityNeeded": item.required,
                })
            elif not _can_cover(stock_item, item.required):
                result.available = False
                result.unavailable_items.append({
                    "itemName": item.item_name,
                    "reason": INSUFFICIENT_QUANTITY,
                    "quantityNeeded": item.required,
                    "quantityAvailable": stock_item.quantity,
                    "minimumThreshold": stock_item.minimum_threshold,
                })
            else:
                result.available_items.append({
                    "itemName": item.item_name,
                    "quantityNeeded": item.required,
                    "quantityAvailable": stock_item.quantity,
                    "stockItemId": stock_item.id,
                })
    except Exception as e:
        logger.exception(f"Stock availability check failed for branch {branch_id}")
        result.available = False
        result.unavailable_items.append({"itemName": "stock", "reason": f"Availability check failed: {e}"})

    return result


def _can_cover(stock_item: StockItem, amount: int) -> bool:
    """A deduction may not take the quantity below the minimum threshold."""
    return stock_item.quantity - amount >= stock_item.minimum_threshold


def _shortage(stock_item: StockItem, amount: int) -> str:
    message = f"Insufficient stock for {stock_item.name}. Available: {stock_item.quantity}, Needed: {amount}"
    if stock_item.quantity >= amount:
        message += f", Minimum threshold: {stock_item.minimum_threshold}"
    return message


def _decrement(session: Session, stock_item: StockItem, amount: int) -> bool:
    """Conditional decrement: applied only while quantity - amount >= minimum_threshold."""
    outcome = session.execute(
        update(StockItem)
        .where(
            StockItem.id == stock_item.id,
            StockItem.quantity - amount >= StockItem.minimum_threshold,
        )
        .values(quantity=StockItem.quantity - amount, updated_at=datetime.utcnow())
    )
    session.commit()
    return outcome.rowcount == 1


def deduct(session: Session, scans: Iterable[dict], branch_id: str) -> DeductionResult:
    """
    Deduct every required item, in expansion order.

    Items already deducted stay deducted when a later item fails; each failure
    is listed in ``errors`` and makes ``success`` false.
    """
    result = DeductionResult()
    try:
        required, missing_scans = expand_scans(session, scans)

        for scan_id in missing_scans:
            result.errors.append(f"Scan not found: {scan_id}")

        for item in required.values():
            stock_item = find_stock_item(session, branch_id, item.item_name)
            if not stock_item:
                result.errors.append(f"Stock item not found: {item.item_name} in branch {branch_id}")
                continue

            if not _can_cover(stock_item, item.required) or not _decrement(session, stock_item, item.required):
                session.refresh(stock_item)
                result.errors.append(_shortage(stock_item, item.required))
                continue

            session.refresh(stock_item)
            result.deducted_items.append({
                "itemName": item.item_name,
                "quantityDeducted": item.required,
                "remainingQuantity": stock_item.quantity,
                "stockItemId": stock_item.id,
            })
            result.total_items_deducted += item.required
            if stock_item.is_low_stock:
                result.low_stock_items.append(stock_item)
    except Exception as e:
        logger.exception(f"Stock deduction failed for branch {branch_id}")
        session.rollback()
        result.errors.append(f"Stock deduction failed: {e}")

    result.success = not result.errors
    if result.errors:
        logger.warning(f"Stock deduction in branch {branch_id} incomplete: {result.errors}")
    return result


def find_low_stock(session: Session, branch_id: Optional[str] = None) -> List[StockItem]:
    statement = select(StockItem).where(
        StockItem.is_active == True,
        StockItem.quantity <= StockItem.minimum_threshold,
    )
    if branch_id:
        statement = statement.where(StockItem.branch_id == branch_id)
    return list(session.exec(statement.order_by(StockItem.quantity)).all())


def low_stock_payload(items: Iterable[StockItem]) -> Dict[str, list]:
    return {
        "items": [
            {
                "id": item.id,
                "name": item.name,
                "branch": item.branch_id,
                "quantity": item.quantity,
                "minimumThreshold": item.minimum_threshold,
            }
            for item in items
        ]
    }
