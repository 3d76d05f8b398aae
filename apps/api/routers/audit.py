"""Read-only access to the audit trail"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlmodel import Session, select

from database import get_session
from dependencies import require_privilege
from errors import BadRequest, NotFound
from models import AuditAction, AuditLog, User
from schemas import AuditLogResponse
from utils.pagination import PaginationParams, paginate
from utils.responses import success
from validators.time_validator import to_naive_utc, validate_date_range

router = APIRouter(prefix="/api/audit", tags=["Audit"])

SORTABLE = {
    "timestamp": AuditLog.created_at,
    "createdAt": AuditLog.created_at,
    "action": AuditLog.action,
    "entityKind": AuditLog.entity_kind,
}


def _filtered(
    statement,
    entity_kind: Optional[str] = None,
    entity_id: Optional[str] = None,
    user_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
):
    try:
        validate_date_range(start_date, end_date)
    except ValueError as e:
        raise BadRequest(str(e), field="endDate")

    if entity_kind:
        statement = statement.where(AuditLog.entity_kind == entity_kind)
    if entity_id:
        statement = statement.where(AuditLog.entity_id == entity_id)
    if user_id:
        statement = statement.where(AuditLog.user_id == user_id)
    if action:
        statement = statement.where(AuditLog.action == action)
    if start_date:
        statement = statement.where(AuditLog.created_at >= to_naive_utc(start_date))
    if end_date:
        statement = statement.where(AuditLog.created_at <= to_naive_utc(end_date))
    return statement


@router.get("")
def list_audit_logs(
    entity_kind: Optional[str] = Query(None, alias="entityKind"),
    entity_id: Optional[str] = Query(None, alias="entityId"),
    user_id: Optional[str] = Query(None, alias="userId"),
    action: Optional[AuditAction] = None,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    params: PaginationParams = Depends(),
    current_user: User = Depends(require_privilege("audit", "view")),
    session: Session = Depends(get_session)
):
    statement = _filtered(select(AuditLog), entity_kind, entity_id, user_id, action, start_date, end_date)
    records, pagination = paginate(session, statement, params, SORTABLE, "timestamp")
    return success([AuditLogResponse.model_validate(r) for r in records], pagination=pagination)


@router.get("/stats")
def audit_stats(
    entity_kind: Optional[str] = Query(None, alias="entityKind"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    current_user: User = Depends(require_privilege("audit", "view")),
    session: Session = Depends(get_session)
):
    """Record counts per action, per entity kind and for the ten most active users"""
    base = _filtered(select(AuditLog), entity_kind, start_date=start_date, end_date=end_date).subquery()

    total = session.exec(select(func.count()).select_from(base)).one()
    action_stats = [
        {"action": action, "count": count}
        for action, count in session.exec(
            select(base.c.action, func.count()).group_by(base.c.action).order_by(func.count().desc())
        ).all()
    ]
    entity_stats = [
        {"entityKind": kind, "count": count}
        for kind, count in session.exec(
            select(base.c.entity_kind, func.count()).group_by(base.c.entity_kind).order_by(func.count().desc())
        ).all()
    ]
    user_rows = session.exec(
        select(base.c.user_id, func.count())
        .where(base.c.user_id.is_not(None))
        .group_by(base.c.user_id)
        .order_by(func.count().desc())
        .limit(10)
    ).all()
    users = {u.id: u for u in session.exec(select(User).where(User.id.in_([r[0] for r in user_rows]))).all()} if user_rows else {}
    user_stats = [
        {
            "userId": user_id,
            "username": users[user_id].username if user_id in users else None,
            "email": users[user_id].email if user_id in users else None,
            "count": count,
        }
        for user_id, count in user_rows
    ]

    return success({
        "totalLogs": total,
        "actionStats": action_stats,
        "entityStats": entity_stats,
        "userStats": user_stats,
    })


@router.get("/{audit_id}")
def get_audit_log(
    audit_id: str,
    current_user: User = Depends(require_privilege("audit", "view")),
    session: Session = Depends(get_session)
):
    record = session.get(AuditLog, audit_id)
    if not record:
        raise NotFound("Audit log not found")
    return success(AuditLogResponse.model_validate(record))
