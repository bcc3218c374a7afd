import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger(__name__)


def _as_uuid(value: str | UUID) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def log_action(
    db: Session,
    user_id: str | UUID,
    action: str,
    target_type: str | None = None,
    target_id: str | UUID | None = None,
    details: dict | None = None,
) -> models.AuditLog:
    # joins the caller's transaction; the route commits or rolls back
    entry = models.AuditLog(
        user_id=_as_uuid(user_id),
        action=action,
        target_type=target_type,
        target_id=_as_uuid(target_id) if target_id else None,
        details=dict(details or {}),
        created_at=datetime.now(timezone.utc),
    )
    db.add(entry)
    db.flush()
    logger.debug("audit: %s %s %s by %s", action, target_type, target_id, user_id)
    return entry


def action_counts(
    db: Session,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    target_type: str | None = None,
) -> list[dict]:
    """Count audit entries per action, e.g. how many templates were activated this month."""
    query = db.query(models.AuditLog.action, func.count(models.AuditLog.id))
    if start is not None:
        query = query.filter(models.AuditLog.created_at >= start)
    if end is not None:
        query = query.filter(models.AuditLog.created_at <= end)
    if target_type:
        query = query.filter(models.AuditLog.target_type == target_type)
    rows = query.group_by(models.AuditLog.action).order_by(models.AuditLog.action).all()
    return [{"action": action, "count": count} for action, count in rows]
