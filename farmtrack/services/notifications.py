from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from farmtrack.db import translate_store_errors
from farmtrack.models import Notification

logger = logging.getLogger("farmtrack.notifications")

ALERT_TYPE_NIGHT_RETURN = "NIGHT_RETURN"
NIGHT_RETURN_ALERT_TITLE = "Night Return Alert"


@dataclass(frozen=True, slots=True)
class AlertRecordResult:
    notification: Notification
    created: bool


def build_idempotency_key(*, alert_type: str, trigger: str, farm_id: int, local_day: date) -> str:
    return f"{alert_type}:{trigger.upper()}:{farm_id}:{local_day.isoformat()}"


def build_night_return_message(missing_labels: list[str], local_day: date) -> str:
    return (
        f"The following animals did not return to the barn tonight ({local_day.isoformat()}):\n"
        f"{', '.join(missing_labels)}"
    )


def _find_by_idempotency_key(session: Session, idempotency_key: str) -> Notification | None:
    return session.scalar(select(Notification).where(Notification.idempotency_key == idempotency_key))


def record_alert(
    session: Session,
    *,
    farm_id: int,
    recipient_user_id: int | None,
    title: str,
    message: str,
    alert_day: date | None = None,
    alert_type: str = ALERT_TYPE_NIGHT_RETURN,
    idempotency_key: str | None = None,
) -> AlertRecordResult:
    """Append one notification row and commit it.

    With an ``idempotency_key`` an existing row for the same key is returned
    instead (``created=False``); the unique index settles concurrent writers.
    Raises ``StoreUnavailable`` when the row could not be persisted.
    """
    with translate_store_errors("record_alert", session):
        if idempotency_key is not None:
            existing = _find_by_idempotency_key(session, idempotency_key)
            if existing is not None:
                return AlertRecordResult(notification=existing, created=False)

        notification = Notification(
            farm_id=farm_id,
            user_id=recipient_user_id,
            title=title,
            message=message,
            alert_type=alert_type,
            alert_day=alert_day,
            is_read=False,
            idempotency_key=idempotency_key,
        )
        session.add(notification)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            if idempotency_key is None:
                raise
            existing = _find_by_idempotency_key(session, idempotency_key)
            if existing is None:
                raise
            logger.info(
                "notification_idempotency_conflict",
                extra={"farm_id": farm_id, "idempotency_key": idempotency_key},
            )
            return AlertRecordResult(notification=existing, created=False)
        session.refresh(notification)

    logger.info(
        "notification_recorded",
        extra={
            "farm_id": farm_id,
            "notification_id": notification.id,
            "alert_type": alert_type,
            "alert_day": alert_day.isoformat() if alert_day is not None else None,
        },
    )
    return AlertRecordResult(notification=notification, created=True)


def list_farm_notifications(
    session: Session,
    *,
    farm_id: int,
    unread_only: bool = False,
    offset: int = 0,
    limit: int = 100,
) -> list[Notification]:
    with translate_store_errors("list_farm_notifications", session):
        stmt = select(Notification).where(Notification.farm_id == farm_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = (
            stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(max(0, offset))
            .limit(max(1, limit))
        )
        return list(session.scalars(stmt).all())


def mark_notification_read(session: Session, *, farm_id: int, notification_id: int) -> Notification | None:
    with translate_store_errors("mark_notification_read", session):
        notification = session.scalar(
            select(Notification).where(Notification.id == notification_id, Notification.farm_id == farm_id)
        )
        if notification is None:
            return None
        if not notification.is_read:
            notification.is_read = True
            session.commit()
            session.refresh(notification)
    return notification
