from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from sqlalchemy.orm import Session

from farmtrack.db import SessionLocal
from farmtrack.errors import NightCheckError
from farmtrack.services.cache import (
    CacheInvalidationResult,
    DashboardCache,
    get_dashboard_cache,
    night_check_cache_keys,
)
from farmtrack.services.email_dispatch import EmailDeliveryResult, EmailDispatcher, get_email_dispatcher
from farmtrack.services.email_templates import render_night_return_alert_email
from farmtrack.services.farms import farm_local_day, get_farm, get_responsible_contact
from farmtrack.services.night_check import MissingSet, evaluate_missing_animals
from farmtrack.services.notifications import (
    ALERT_TYPE_NIGHT_RETURN,
    NIGHT_RETURN_ALERT_TITLE,
    build_idempotency_key,
    build_night_return_message,
    record_alert,
)
from farmtrack.settings import get_settings

logger = logging.getLogger("farmtrack.night_check")

TRIGGER_SCHEDULED = "scheduled"
TRIGGER_MANUAL = "manual"
TRIGGER_CHECKIN = "checkin"

STATUS_CLEAN = "CLEAN"
STATUS_ALERTED = "ALERTED"
STATUS_ALREADY_ALERTED = "ALREADY_ALERTED"


@dataclass(frozen=True, slots=True)
class AlertEmail:
    farm_id: int
    recipient: str | None
    subject: str
    html: str


@dataclass(frozen=True, slots=True)
class NightCheckRunResult:
    farm_id: int
    local_day: date
    trigger: str
    status: str
    missing: MissingSet
    notification_id: int | None = None
    cache: CacheInvalidationResult | None = None
    email: EmailDeliveryResult | None = None
    pending_email: AlertEmail | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "farm_id": self.farm_id,
            "local_day": self.local_day.isoformat(),
            "trigger": self.trigger,
            "status": self.status,
            "roster_size": self.missing.roster_size,
            "missing": self.missing.labels,
            "notification_id": self.notification_id,
            "cache": self.cache.to_dict() if self.cache is not None else None,
            "email": self.email.to_dict() if self.email is not None else None,
            "email_pending": self.pending_email is not None,
        }


def alert_idempotency_key(*, trigger: str, farm_id: int, local_day: date) -> str | None:
    if trigger == TRIGGER_SCHEDULED:
        return build_idempotency_key(
            alert_type=ALERT_TYPE_NIGHT_RETURN,
            trigger="scheduled",
            farm_id=farm_id,
            local_day=local_day,
        )
    if get_settings().night_check_manual_dedupe:
        return build_idempotency_key(
            alert_type=ALERT_TYPE_NIGHT_RETURN,
            trigger="manual",
            farm_id=farm_id,
            local_day=local_day,
        )
    return None


def _resolve_recipient(session: Session, *, farm_id: int) -> str | None:
    # The alert is already durable here; a failed lookup only costs the email.
    try:
        return get_responsible_contact(session, farm_id=farm_id)
    except NightCheckError as exc:
        logger.warning(
            "night_check_contact_lookup_failed",
            extra={"farm_id": farm_id, "error_code": exc.code, "error": str(exc)},
        )
        return None


def deliver_alert_email(
    alert_email: AlertEmail,
    *,
    dispatcher: EmailDispatcher | None = None,
) -> EmailDeliveryResult:
    result = (dispatcher or get_email_dispatcher()).send(alert_email.recipient, alert_email.subject, alert_email.html)
    if not result.success:
        logger.error(
            "night_check_email_not_delivered",
            extra={
                "farm_id": alert_email.farm_id,
                "recipient": alert_email.recipient,
                "error_kind": result.error_kind,
                "error": result.error,
                "attempts": result.attempts,
            },
        )
    return result


def run_night_check(
    farm_id: int,
    *,
    local_day: date | None = None,
    trigger: str = TRIGGER_MANUAL,
    dispatch_email: bool = True,
    reference_utc: datetime | None = None,
    db: Session | None = None,
    cache: DashboardCache | None = None,
    email_dispatcher: EmailDispatcher | None = None,
) -> NightCheckRunResult:
    """Evaluate one farm's day and alert when animals are missing.

    Steps run in order: evaluate, record the notification, invalidate cached
    views, send the email. ``TenantNotFound`` and ``StoreUnavailable`` raised
    before the notification is stored abort the run. Cache and email failures
    after that point are reported on the result only. With
    ``dispatch_email=False`` the rendered email is returned as
    ``pending_email`` for the caller to deliver later.
    """
    if db is None:
        with SessionLocal() as managed_db:
            return run_night_check(
                farm_id,
                local_day=local_day,
                trigger=trigger,
                dispatch_email=dispatch_email,
                reference_utc=reference_utc,
                db=managed_db,
                cache=cache,
                email_dispatcher=email_dispatcher,
            )

    session = db
    farm = get_farm(session, farm_id)
    resolved_day = local_day or farm_local_day(farm.timezone_name, reference_utc=reference_utc)
    log_fields: dict[str, Any] = {
        "farm_id": farm_id,
        "local_day": resolved_day.isoformat(),
        "trigger": trigger,
    }

    missing = evaluate_missing_animals(session, farm_id, resolved_day)
    if missing.is_empty:
        logger.info("night_check_clean", extra={**log_fields, "roster_size": missing.roster_size})
        return NightCheckRunResult(
            farm_id=farm_id,
            local_day=resolved_day,
            trigger=trigger,
            status=STATUS_CLEAN,
            missing=missing,
        )

    message = build_night_return_message(missing.labels, resolved_day)
    alert = record_alert(
        session,
        farm_id=farm_id,
        recipient_user_id=farm.owner_user_id,
        title=NIGHT_RETURN_ALERT_TITLE,
        message=message,
        alert_day=resolved_day,
        idempotency_key=alert_idempotency_key(trigger=trigger, farm_id=farm_id, local_day=resolved_day),
    )
    if not alert.created:
        logger.info(
            "night_check_already_alerted",
            extra={**log_fields, "notification_id": alert.notification.id},
        )
        return NightCheckRunResult(
            farm_id=farm_id,
            local_day=resolved_day,
            trigger=trigger,
            status=STATUS_ALREADY_ALERTED,
            missing=missing,
            notification_id=alert.notification.id,
        )

    cache_result = (cache or get_dashboard_cache()).invalidate(night_check_cache_keys(farm_id, resolved_day))
    if not cache_result.ok:
        logger.warning(
            "night_check_cache_invalidation_incomplete",
            extra={**log_fields, "failed_keys": list(cache_result.failed), "error": cache_result.error},
        )

    subject, html = render_night_return_alert_email(NIGHT_RETURN_ALERT_TITLE, message, resolved_day)
    alert_email = AlertEmail(
        farm_id=farm_id,
        recipient=_resolve_recipient(session, farm_id=farm_id),
        subject=subject,
        html=html,
    )

    email_result: EmailDeliveryResult | None = None
    pending_email: AlertEmail | None = None
    if dispatch_email:
        email_result = deliver_alert_email(alert_email, dispatcher=email_dispatcher)
    else:
        pending_email = alert_email

    logger.info(
        "night_check_alerted",
        extra={
            **log_fields,
            "notification_id": alert.notification.id,
            "missing_count": len(missing.animals),
            "cache_ok": cache_result.ok,
            "email_success": email_result.success if email_result is not None else None,
        },
    )
    return NightCheckRunResult(
        farm_id=farm_id,
        local_day=resolved_day,
        trigger=trigger,
        status=STATUS_ALERTED,
        missing=missing,
        notification_id=alert.notification.id,
        cache=cache_result,
        email=email_result,
        pending_email=pending_email,
    )


def trigger_now(
    farm_id: int,
    *,
    local_day: date | None = None,
    trigger: str = TRIGGER_MANUAL,
    dispatch_email: bool = True,
    db: Session | None = None,
    cache: DashboardCache | None = None,
    email_dispatcher: EmailDispatcher | None = None,
) -> NightCheckRunResult:
    """Run the night check for ``farm_id`` right away, outside its schedule."""
    if trigger == TRIGGER_SCHEDULED:
        raise ValueError("trigger_now is for manual and check-in triggers only")
    logger.info(
        "night_check_triggered",
        extra={"farm_id": farm_id, "trigger": trigger, "dispatch_email": dispatch_email},
    )
    return run_night_check(
        farm_id,
        local_day=local_day,
        trigger=trigger,
        dispatch_email=dispatch_email,
        db=db,
        cache=cache,
        email_dispatcher=email_dispatcher,
    )
