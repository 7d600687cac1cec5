from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from farmtrack.db import dialect_insert, translate_store_errors
from farmtrack.models import Animal, ReturnRecord, ReturnRecordSource


class AnimalNotInFarmError(LookupError):
    def __init__(self, *, farm_id: int, animal_id: int) -> None:
        super().__init__("Animal not found or not in your farm.")
        self.farm_id = farm_id
        self.animal_id = animal_id


def _normalize_reason(value: str | None) -> str | None:
    normalized = " ".join((value or "").strip().split())
    return normalized or None


def _require_animal_in_farm(session: Session, *, farm_id: int, animal_id: int) -> Animal:
    animal = session.scalar(select(Animal).where(Animal.id == animal_id, Animal.farm_id == farm_id))
    if animal is None:
        raise AnimalNotInFarmError(farm_id=farm_id, animal_id=animal_id)
    return animal


def upsert_return_record(
    session: Session,
    *,
    farm_id: int,
    animal_id: int,
    local_day: date,
    returned: bool,
    reason: str | None = None,
    source: ReturnRecordSource = ReturnRecordSource.SCAN,
) -> ReturnRecord:
    """Write the single (farm, animal, day) record, updating it in place when it exists.

    The unique constraint on the key makes concurrent scans for the same animal
    converge on one row; a later write replaces ``returned`` and keeps the stored
    reason unless a new one is given.
    """
    with translate_store_errors("upsert_return_record", session):
        _require_animal_in_farm(session, farm_id=farm_id, animal_id=animal_id)
        now_utc = datetime.now(timezone.utc)
        insert = dialect_insert(session)
        stmt = insert(ReturnRecord).values(
            farm_id=farm_id,
            animal_id=animal_id,
            local_day=local_day,
            returned=bool(returned),
            return_reason=_normalize_reason(reason),
            source=source,
            created_at=now_utc,
            updated_at=now_utc,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[ReturnRecord.farm_id, ReturnRecord.animal_id, ReturnRecord.local_day],
            set_={
                "returned": stmt.excluded.returned,
                "return_reason": func.coalesce(stmt.excluded.return_reason, ReturnRecord.return_reason),
                "source": stmt.excluded.source,
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(ReturnRecord.id)
        record_id = session.execute(stmt).scalar_one()
        session.commit()
        record = session.get(ReturnRecord, record_id, populate_existing=True)
    if record is None:
        raise RuntimeError("return record vanished after upsert")
    return record


def get_return_records(session: Session, *, farm_id: int, local_day: date) -> list[ReturnRecord]:
    """Records for one farm and day, most recently written first."""
    with translate_store_errors("get_return_records", session):
        stmt = (
            select(ReturnRecord)
            .where(ReturnRecord.farm_id == farm_id, ReturnRecord.local_day == local_day)
            .order_by(ReturnRecord.updated_at.desc(), ReturnRecord.id.desc())
        )
        return list(session.scalars(stmt).all())


def list_return_records(
    session: Session,
    *,
    farm_id: int,
    local_day: date | None = None,
    animal_id: int | None = None,
    limit: int = 500,
) -> list[ReturnRecord]:
    with translate_store_errors("list_return_records", session):
        stmt = select(ReturnRecord).where(ReturnRecord.farm_id == farm_id)
        if local_day is not None:
            stmt = stmt.where(ReturnRecord.local_day == local_day)
        if animal_id is not None:
            stmt = stmt.where(ReturnRecord.animal_id == animal_id)
        stmt = stmt.order_by(ReturnRecord.local_day.desc(), ReturnRecord.id.desc()).limit(max(1, limit))
        return list(session.scalars(stmt).all())


def delete_return_record(session: Session, *, farm_id: int, record_id: int) -> ReturnRecord | None:
    """Administrative revert: the animal goes back to "not returned" for that day."""
    with translate_store_errors("delete_return_record", session):
        record = session.scalar(
            select(ReturnRecord).where(ReturnRecord.id == record_id, ReturnRecord.farm_id == farm_id)
        )
        if record is None:
            return None
        session.delete(record)
        session.commit()
    return record
