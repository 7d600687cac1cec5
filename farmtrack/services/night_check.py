from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from sqlalchemy.orm import Session

from farmtrack.models import Animal, ReturnRecord
from farmtrack.services.farms import get_farm, list_farm_animals
from farmtrack.services.return_ledger import get_return_records


@dataclass(frozen=True, slots=True)
class MissingAnimal:
    animal_id: int
    name: str
    tag_number: str
    reason: str | None = None

    @property
    def label(self) -> str:
        return f"{self.name} ({self.tag_number})"


@dataclass(frozen=True, slots=True)
class MissingSet:
    farm_id: int
    local_day: date
    roster_size: int
    animals: tuple[MissingAnimal, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.animals

    @property
    def animal_ids(self) -> frozenset[int]:
        return frozenset(item.animal_id for item in self.animals)

    @property
    def labels(self) -> list[str]:
        return [item.label for item in self.animals]


def _latest_record_by_animal(records: list[ReturnRecord]) -> dict[int, ReturnRecord]:
    # Records arrive newest first; a duplicated key keeps the most recent write.
    latest: dict[int, ReturnRecord] = {}
    for record in records:
        latest.setdefault(record.animal_id, record)
    return latest


def classify_missing(
    *,
    farm_id: int,
    local_day: date,
    animals: list[Animal],
    records: list[ReturnRecord],
) -> MissingSet:
    latest = _latest_record_by_animal(records)
    missing: list[MissingAnimal] = []
    for animal in animals:
        record = latest.get(animal.id)
        if record is not None and record.returned is True:
            continue
        missing.append(
            MissingAnimal(
                animal_id=animal.id,
                name=animal.name,
                tag_number=animal.tag_number,
                reason=record.return_reason if record is not None else None,
            )
        )
    return MissingSet(
        farm_id=farm_id,
        local_day=local_day,
        roster_size=len(animals),
        animals=tuple(missing),
    )


def evaluate_missing_animals(session: Session, farm_id: int, local_day: date) -> MissingSet:
    """Animals of ``farm_id`` with no affirmative check-in on ``local_day``.

    Read-only: the ledger is never written here. ``local_day`` is already the
    farm-local calendar day. Raises ``TenantNotFound`` for an unknown farm and
    ``StoreUnavailable`` when the database cannot be reached.
    """
    get_farm(session, farm_id)
    animals = list_farm_animals(session, farm_id=farm_id)
    if not animals:
        return MissingSet(farm_id=farm_id, local_day=local_day, roster_size=0)
    records = get_return_records(session, farm_id=farm_id, local_day=local_day)
    return classify_missing(farm_id=farm_id, local_day=local_day, animals=animals, records=records)
