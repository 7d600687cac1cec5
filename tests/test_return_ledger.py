from __future__ import annotations

import unittest
from datetime import date

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from farmtrack.errors import StoreUnavailable
from farmtrack.models import ReturnRecord, ReturnRecordSource
from farmtrack.services.return_ledger import (
    AnimalNotInFarmError,
    delete_return_record,
    get_return_records,
    list_return_records,
    upsert_return_record,
)
from tests.db_support import build_session_factory, seed_farm

NIGHT = date(2024, 1, 10)


class _FailingScalarsSession:
    def __init__(self) -> None:
        self.rolled_back = False

    def scalars(self, _statement):  # type: ignore[no-untyped-def]
        raise OperationalError("SELECT return_records", {}, Exception("statement timeout"))

    def rollback(self) -> None:
        self.rolled_back = True


class ReturnLedgerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = build_session_factory()

    def test_repeated_upserts_keep_a_single_record_per_key(self) -> None:
        with self.session_factory() as session:
            farm, (bella, *_rest) = seed_farm(session)
            first = upsert_return_record(
                session,
                farm_id=farm.id,
                animal_id=bella.id,
                local_day=NIGHT,
                returned=False,
            )
            second = upsert_return_record(
                session,
                farm_id=farm.id,
                animal_id=bella.id,
                local_day=NIGHT,
                returned=True,
            )
            rows = list(session.scalars(select(ReturnRecord)).all())

        self.assertEqual(first.id, second.id)
        self.assertEqual(len(rows), 1)
        self.assertTrue(rows[0].returned)

    def test_update_without_reason_keeps_stored_reason(self) -> None:
        with self.session_factory() as session:
            farm, (bella, *_rest) = seed_farm(session)
            upsert_return_record(
                session,
                farm_id=farm.id,
                animal_id=bella.id,
                local_day=NIGHT,
                returned=False,
                reason="  stuck   behind the gate ",
                source=ReturnRecordSource.MANUAL,
            )
            record = upsert_return_record(
                session,
                farm_id=farm.id,
                animal_id=bella.id,
                local_day=NIGHT,
                returned=False,
                source=ReturnRecordSource.CORRECTION,
            )

        self.assertEqual(record.return_reason, "stuck behind the gate")
        self.assertEqual(record.source, ReturnRecordSource.CORRECTION)

    def test_each_day_gets_its_own_record(self) -> None:
        with self.session_factory() as session:
            farm, (bella, *_rest) = seed_farm(session)
            upsert_return_record(session, farm_id=farm.id, animal_id=bella.id, local_day=NIGHT, returned=True)
            upsert_return_record(
                session,
                farm_id=farm.id,
                animal_id=bella.id,
                local_day=date(2024, 1, 11),
                returned=False,
            )

            tonight = get_return_records(session, farm_id=farm.id, local_day=NIGHT)
            everything = list_return_records(session, farm_id=farm.id)

        self.assertEqual(len(tonight), 1)
        self.assertEqual(len(everything), 2)
        self.assertEqual(everything[0].local_day, date(2024, 1, 11))

    def test_animal_from_another_farm_is_rejected(self) -> None:
        with self.session_factory() as session:
            farm, _ = seed_farm(session)
            _, (other_animal,) = seed_farm(session, name="South Barn", animals=(("Rex", "S-1"),))

            with self.assertRaises(AnimalNotInFarmError):
                upsert_return_record(
                    session,
                    farm_id=farm.id,
                    animal_id=other_animal.id,
                    local_day=NIGHT,
                    returned=True,
                )
            rows = list(session.scalars(select(ReturnRecord)).all())

        self.assertEqual(rows, [])

    def test_delete_reverts_record_and_is_scoped_to_farm(self) -> None:
        with self.session_factory() as session:
            farm, (bella, *_rest) = seed_farm(session)
            other_farm, _ = seed_farm(session, name="South Barn", animals=())
            record = upsert_return_record(
                session,
                farm_id=farm.id,
                animal_id=bella.id,
                local_day=NIGHT,
                returned=True,
            )

            self.assertIsNone(delete_return_record(session, farm_id=other_farm.id, record_id=record.id))
            deleted = delete_return_record(session, farm_id=farm.id, record_id=record.id)
            remaining = get_return_records(session, farm_id=farm.id, local_day=NIGHT)

        self.assertIsNotNone(deleted)
        self.assertEqual(remaining, [])

    def test_read_failure_is_reported_as_store_unavailable(self) -> None:
        session = _FailingScalarsSession()

        with self.assertRaises(StoreUnavailable) as ctx:
            get_return_records(session, farm_id=1, local_day=NIGHT)  # type: ignore[arg-type]

        self.assertEqual(ctx.exception.status_code, 503)
        self.assertTrue(session.rolled_back)


if __name__ == "__main__":
    unittest.main()
