from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from farmtrack.models import AuditActorType, AuditLog

logger = logging.getLogger("farmtrack.audit")

ACTION_NIGHT_CHECK_SCHEDULE_UPDATED = "NIGHT_CHECK_SCHEDULE_UPDATED"
ACTION_NIGHT_CHECK_TRIGGERED = "NIGHT_CHECK_TRIGGERED"
ACTION_RETURN_RECORD_UPSERTED = "RETURN_RECORD_UPSERTED"
ACTION_RETURN_RECORD_DELETED = "RETURN_RECORD_DELETED"


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    success: bool,
    farm_id: int | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> None:
    """Persist one audit row; a failed write is logged and never bubbles up."""
    log_fields: dict[str, Any] = {
        "request_id": request_id,
        "action": action,
        "actor_type": actor_type.value,
        "actor_id": actor_id,
        "farm_id": farm_id,
        "success": success,
    }
    db.add(
        AuditLog(
            ts_utc=datetime.now(timezone.utc),
            actor_type=actor_type,
            actor_id=actor_id,
            farm_id=farm_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            success=success,
            details=details or {},
        )
    )
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("audit_log_write_failed", extra=log_fields)
        return

    logger.info(
        "audit_event",
        extra={
            **log_fields,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "details": details or {},
        },
    )
