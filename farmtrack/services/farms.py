from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.orm import Session

from farmtrack.db import translate_store_errors
from farmtrack.errors import TenantNotFound
from farmtrack.models import Animal, Farm, User
from farmtrack.settings import get_settings

logger = logging.getLogger("farmtrack.farms")


def farm_timezone(timezone_name: str | None) -> ZoneInfo:
    fallback_name = (get_settings().farm_timezone or "").strip() or "UTC"
    normalized = (timezone_name or "").strip() or fallback_name
    try:
        return ZoneInfo(normalized)
    except ZoneInfoNotFoundError:
        logger.warning("farm_timezone_unknown", extra={"timezone_name": normalized, "fallback": fallback_name})
        try:
            return ZoneInfo(fallback_name)
        except ZoneInfoNotFoundError:
            return ZoneInfo("UTC")


def farm_local_day(timezone_name: str | None, *, reference_utc: datetime | None = None) -> date:
    reference = (reference_utc or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return reference.astimezone(farm_timezone(timezone_name)).date()


def get_farm(session: Session, farm_id: int) -> Farm:
    with translate_store_errors("get_farm", session):
        farm = session.get(Farm, farm_id)
    if farm is None:
        raise TenantNotFound(farm_id)
    return farm


def list_farm_animals(session: Session, *, farm_id: int) -> list[Animal]:
    with translate_store_errors("list_farm_animals", session):
        stmt = (
            select(Animal)
            .where(Animal.farm_id == farm_id, Animal.is_active.is_(True))
            .order_by(Animal.id.asc())
        )
        return list(session.scalars(stmt).all())


def get_responsible_contact(session: Session, *, farm_id: int) -> str | None:
    farm = get_farm(session, farm_id)
    if farm.owner_user_id is None:
        return None
    with translate_store_errors("get_responsible_contact", session):
        owner = session.get(User, farm.owner_user_id)
    if owner is None or not owner.is_active:
        return None
    email = (owner.email or "").strip()
    return email or None
