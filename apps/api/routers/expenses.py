"""
Expenses with an approval workflow:
pending -> approved | rejected, approved -> paid.
"""
from datetime import datetime
from typing import Optional
import logging

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func
from sqlmodel import Session, or_, select

from database import get_session
from dependencies import require_privilege
from errors import BadRequest, NotFound
from models import AuditAction, Expense, ExpenseCategory, ExpenseStatus, User, snapshot
from schemas import ExpenseCreate, ExpenseResponse, ExpenseUpdate
from services.audit import log_audit
from utils.pagination import PaginationParams, paginate
from utils.responses import success
from validators.time_validator import to_naive_utc, validate_date_range

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/expenses", tags=["Expenses"])

ENTITY_KIND = "Expense"

SORTABLE = {
    "date": Expense.date,
    "totalCost": Expense.total_cost,
    "createdAt": Expense.created_at,
    "status": Expense.status,
}


def _get_expense(session: Session, expense_id: str) -> Expense:
    expense = session.get(Expense, expense_id)
    if not expense or not expense.is_active:
        raise NotFound("Expense not found")
    return expense


def _date_filtered(statement, start_date: Optional[datetime], end_date: Optional[datetime]):
    try:
        validate_date_range(start_date, end_date)
    except ValueError as e:
        raise BadRequest(str(e), field="endDate")
    if start_date:
        statement = statement.where(Expense.date >= to_naive_utc(start_date))
    if end_date:
        statement = statement.where(Expense.date <= to_naive_utc(end_date))
    return statement


def _transition(session: Session, expense: Expense, target: ExpenseStatus, actor: User) -> Expense:
    before_status = expense.status
    expense.status = target
    if target in (ExpenseStatus.APPROVED, ExpenseStatus.REJECTED):
        expense.approved_by = actor.id
        expense.approved_at = datetime.utcnow()
    expense.updated_by = actor.id
    expense.updated_at = datetime.utcnow()
    session.add(expense)
    session.commit()
    session.refresh(expense)
    logger.info(f"Expense {expense.id} moved from {before_status.value} to {target.value} by {actor.id}")

    log_audit(session, actor.id, AuditAction.STATUS_CHANGE, ENTITY_KIND, expense.id,
              {"from": before_status.value, "to": target.value})
    return expense


@router.post("", status_code=status.HTTP_201_CREATED)
def create_expense(
    payload: ExpenseCreate,
    current_user: User = Depends(require_privilege("expenses", "create")),
    session: Session = Depends(get_session)
):
    data = payload.model_dump(exclude_none=True)
    if "date" in data:
        data["date"] = to_naive_utc(data["date"])
    expense = Expense(
        **data,
        status=ExpenseStatus.PENDING,
        created_by=current_user.id,
        updated_by=current_user.id,
    )
    session.add(expense)
    session.commit()
    session.refresh(expense)

    log_audit(session, current_user.id, AuditAction.CREATE, ENTITY_KIND, expense.id, snapshot(expense))
    return success(ExpenseResponse.model_validate(expense), "Expense created successfully")


@router.get("")
def list_expenses(
    status_filter: Optional[ExpenseStatus] = Query(None, alias="status"),
    category: Optional[ExpenseCategory] = None,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    params: PaginationParams = Depends(),
    current_user: User = Depends(require_privilege("expenses", "view")),
    session: Session = Depends(get_session)
):
    statement = select(Expense).where(Expense.is_active == True)
    if status_filter:
        statement = statement.where(Expense.status == status_filter)
    if category:
        statement = statement.where(Expense.category == category)
    statement = _date_filtered(statement, start_date, end_date)
    if params.search:
        pattern = f"%{params.search}%"
        statement = statement.where(or_(
            Expense.reason.ilike(pattern),
            Expense.requester.ilike(pattern),
            Expense.description.ilike(pattern),
        ))

    expenses, pagination = paginate(session, statement, params, SORTABLE, "date")
    return success([ExpenseResponse.model_validate(e) for e in expenses], pagination=pagination)


@router.get("/stats")
def expense_stats(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    current_user: User = Depends(require_privilege("expenses", "view")),
    session: Session = Depends(get_session)
):
    """Counts per status, total cost and a per-category breakdown"""
    base = _date_filtered(select(Expense).where(Expense.is_active == True), start_date, end_date).subquery()

    total_expenses, total_cost = session.exec(
        select(func.count(), func.coalesce(func.sum(base.c.total_cost), 0)).select_from(base)
    ).one()

    by_status = dict(session.exec(
        select(base.c.status, func.count()).group_by(base.c.status)
    ).all())

    category_stats = [
        {"category": category, "count": count, "total": float(total or 0)}
        for category, count, total in session.exec(
            select(base.c.category, func.count(), func.sum(base.c.total_cost))
            .group_by(base.c.category)
            .order_by(func.sum(base.c.total_cost).desc())
        ).all()
    ]

    def count_for(expense_status: ExpenseStatus) -> int:
        return by_status.get(expense_status, by_status.get(expense_status.name, 0))

    return success({
        "totalExpenses": total_expenses,
        "totalCost": float(total_cost or 0),
        "pendingExpenses": count_for(ExpenseStatus.PENDING),
        "approvedExpenses": count_for(ExpenseStatus.APPROVED),
        "paidExpenses": count_for(ExpenseStatus.PAID),
        "rejectedExpenses": count_for(ExpenseStatus.REJECTED),
        "categoryStats": category_stats,
    })


@router.get("/{expense_id}")
def get_expense(
    expense_id: str,
    current_user: User = Depends(require_privilege("expenses", "view")),
    session: Session = Depends(get_session)
):
    return success(ExpenseResponse.model_validate(_get_expense(session, expense_id)))


@router.patch("/{expense_id}")
def update_expense(
    expense_id: str,
    payload: ExpenseUpdate,
    current_user: User = Depends(require_privilege("expenses", "update")),
    session: Session = Depends(get_session)
):
    expense = _get_expense(session, expense_id)
    if expense.status in (ExpenseStatus.APPROVED, ExpenseStatus.PAID):
        raise BadRequest("Cannot update approved or paid expenses")

    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise BadRequest("No fields to update")
    if "date" in changes:
        changes["date"] = to_naive_utc(changes["date"])

    before = snapshot(expense)
    for key, value in changes.items():
        setattr(expense, key, value)
    expense.updated_by = current_user.id
    expense.updated_at = datetime.utcnow()
    session.add(expense)
    session.commit()
    session.refresh(expense)

    log_audit(session, current_user.id, AuditAction.UPDATE, ENTITY_KIND, expense.id,
              {"before": before, "after": snapshot(expense)})
    return success(ExpenseResponse.model_validate(expense), "Expense updated successfully")


@router.delete("/{expense_id}")
def delete_expense(
    expense_id: str,
    current_user: User = Depends(require_privilege("expenses", "delete")),
    session: Session = Depends(get_session)
):
    expense = _get_expense(session, expense_id)
    before = snapshot(expense)
    expense.is_active = False
    expense.updated_by = current_user.id
    expense.updated_at = datetime.utcnow()
    session.add(expense)
    session.commit()

    log_audit(session, current_user.id, AuditAction.DELETE, ENTITY_KIND, expense.id, {"deleted": before})
    return success(message="Expense deleted successfully")


@router.patch("/{expense_id}/approve")
def approve_expense(
    expense_id: str,
    current_user: User = Depends(require_privilege("expenses", "approve")),
    session: Session = Depends(get_session)
):
    expense = _get_expense(session, expense_id)
    if expense.status != ExpenseStatus.PENDING:
        raise BadRequest("Expense is not pending approval")
    expense = _transition(session, expense, ExpenseStatus.APPROVED, current_user)
    return success(ExpenseResponse.model_validate(expense), "Expense approved successfully")


@router.patch("/{expense_id}/reject")
def reject_expense(
    expense_id: str,
    current_user: User = Depends(require_privilege("expenses", "approve")),
    session: Session = Depends(get_session)
):
    expense = _get_expense(session, expense_id)
    if expense.status != ExpenseStatus.PENDING:
        raise BadRequest("Expense is not pending approval")
    expense = _transition(session, expense, ExpenseStatus.REJECTED, current_user)
    return success(ExpenseResponse.model_validate(expense), "Expense rejected successfully")


@router.patch("/{expense_id}/mark-paid")
def mark_expense_paid(
    expense_id: str,
    current_user: User = Depends(require_privilege("expenses", "update")),
    session: Session = Depends(get_session)
):
    expense = _get_expense(session, expense_id)
    if expense.status != ExpenseStatus.APPROVED:
        raise BadRequest("Expense must be approved before marking as paid")
    expense = _transition(session, expense, ExpenseStatus.PAID, current_user)
    return success(ExpenseResponse.model_validate(expense), "Expense marked as paid successfully")
