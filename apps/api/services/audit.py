"""
Audit trail writer.

Records are written after the business change has been committed. A failed
audit write is logged and swallowed: it never fails the calling operation.
"""

import logging
from typing import Optional

from sqlmodel import Session

from models import AuditAction, AuditLog

logger = logging.getLogger(__name__)


def log_audit(
    session: Session,
    actor_id: Optional[str],
    action: AuditAction,
    entity_kind: str,
    entity_id: str,
    changes: Optional[dict] = None,
) -> Optional[AuditLog]:
    record = AuditLog(
        user_id=actor_id,
        action=action,
        entity_kind=entity_kind,
        entity_id=entity_id,
        changes=changes,
    )
    try:
        session.add(record)
        session.commit()
        return record
    except Exception as e:
        session.rollback()
        logger.error(
            f"Failed to write audit record {action.value} {entity_kind}/{entity_id} "
            f"by {actor_id}: {e}"
        )
        return None
