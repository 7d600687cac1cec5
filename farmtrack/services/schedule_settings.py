from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from farmtrack.db import dialect_insert, translate_store_errors
from farmtrack.errors import InvalidScheduleTime
from farmtrack.models import NIGHT_CHECK_SCHEDULE_KEY, Farm, FarmSetting
from farmtrack.services.farms import farm_timezone, get_farm
from farmtrack.settings import get_settings

HHMM_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$")
SCHEDULE_DESCRIPTION = "Daily night return check schedule time (24-hour format)"


@dataclass(frozen=True, slots=True)
class FarmSchedule:
    farm_id: int
    run_time_local: time
    timezone_name: str | None = None
    is_default: bool = False

    @property
    def hhmm(self) -> str:
        return format_schedule_time(self.run_time_local)


def parse_schedule_time(value: str | None) -> time:
    raw = (value or "").strip()
    match = HHMM_PATTERN.match(raw)
    if match is None:
        raise InvalidScheduleTime(value)
    return time(int(match.group(1)), int(match.group(2)))


def format_schedule_time(value: time) -> str:
    return value.strftime("%H:%M")


def default_schedule_time() -> time:
    return parse_schedule_time(get_settings().night_check_default_time)


def _coerce_stored_time(value: str | None) -> time | None:
    try:
        return parse_schedule_time(value)
    except InvalidScheduleTime:
        return None


def get_schedule_time(session: Session, *, farm_id: int) -> time | None:
    """The farm's configured time, or ``None`` when absent or unparseable."""
    with translate_store_errors("get_schedule_time", session):
        stored = session.scalar(
            select(FarmSetting.value).where(
                FarmSetting.farm_id == farm_id,
                FarmSetting.key == NIGHT_CHECK_SCHEDULE_KEY,
            )
        )
    return _coerce_stored_time(stored)


def get_farm_schedule(session: Session, *, farm_id: int) -> FarmSchedule:
    farm = get_farm(session, farm_id)
    configured = get_schedule_time(session, farm_id=farm_id)
    return FarmSchedule(
        farm_id=farm.id,
        run_time_local=configured or default_schedule_time(),
        timezone_name=farm.timezone_name,
        is_default=configured is None,
    )


def set_schedule_time(session: Session, *, farm_id: int, value: str) -> FarmSchedule:
    run_time_local = parse_schedule_time(value)
    farm = get_farm(session, farm_id)
    with translate_store_errors("set_schedule_time", session):
        insert = dialect_insert(session)
        stmt = insert(FarmSetting).values(
            farm_id=farm_id,
            key=NIGHT_CHECK_SCHEDULE_KEY,
            value=format_schedule_time(run_time_local),
            description=SCHEDULE_DESCRIPTION,
            updated_at=datetime.now(timezone.utc),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[FarmSetting.farm_id, FarmSetting.key],
            set_={
                "value": stmt.excluded.value,
                "description": stmt.excluded.description,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        session.execute(stmt)
        session.commit()
    return FarmSchedule(
        farm_id=farm_id,
        run_time_local=run_time_local,
        timezone_name=farm.timezone_name,
        is_default=False,
    )


def load_farm_schedules(session: Session) -> list[FarmSchedule]:
    """One schedule per farm, falling back to the default time for farms without a setting."""
    with translate_store_errors("load_farm_schedules", session):
        rows = session.execute(
            select(Farm.id, Farm.timezone_name, FarmSetting.value)
            .outerjoin(
                FarmSetting,
                and_(FarmSetting.farm_id == Farm.id, FarmSetting.key == NIGHT_CHECK_SCHEDULE_KEY),
            )
            .order_by(Farm.id.asc())
        ).all()

    fallback = default_schedule_time()
    schedules: list[FarmSchedule] = []
    for farm_id, timezone_name, stored_value in rows:
        configured = _coerce_stored_time(stored_value)
        schedules.append(
            FarmSchedule(
                farm_id=farm_id,
                run_time_local=configured or fallback,
                timezone_name=timezone_name,
                is_default=configured is None,
            )
        )
    return schedules


def next_fire_at_utc(
    run_time_local: time,
    timezone_name: str | None,
    *,
    reference_utc: datetime,
) -> datetime:
    """First instant strictly after ``reference_utc`` at ``run_time_local`` in the farm's zone."""
    tz = farm_timezone(timezone_name)
    reference = reference_utc.astimezone(timezone.utc)
    candidate_date = reference.astimezone(tz).date()
    candidate = datetime.combine(candidate_date, run_time_local, tzinfo=tz).astimezone(timezone.utc)
    while candidate <= reference:
        candidate_date = candidate_date + timedelta(days=1)
        candidate = datetime.combine(candidate_date, run_time_local, tzinfo=tz).astimezone(timezone.utc)
    return candidate
