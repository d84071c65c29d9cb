from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from tool_lending.models.lending_models import AuditLog


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, user_id: int | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def list_audit(db: Session, entity_type: str | None = None, limit: int = 200) -> list[AuditLog]:
    stmt = select(AuditLog)
    if entity_type:
        stmt = stmt.where(AuditLog.EntityType == entity_type)
    stmt = stmt.order_by(AuditLog.AuditID.desc()).limit(max(1, limit))
    return list(db.execute(stmt).scalars().all())


def serialize_audit(entry: AuditLog) -> dict:
    return {
        "auditID": entry.AuditID,
        "entityType": entry.EntityType,
        "entityID": entry.EntityID,
        "action": entry.Action,
        "details": entry.Details,
        "userID": entry.UserID,
        "createdAt": entry.CreatedAt,
    }
