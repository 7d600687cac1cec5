from __future__ import annotations

import unittest
from datetime import datetime, time, timezone

from sqlalchemy import select

from farmtrack.errors import InvalidScheduleTime, TenantNotFound
from farmtrack.models import FarmSetting
from farmtrack.services.farms import farm_timezone
from farmtrack.services.schedule_settings import (
    get_farm_schedule,
    load_farm_schedules,
    next_fire_at_utc,
    parse_schedule_time,
    set_schedule_time,
)
from tests.db_support import build_session_factory, seed_farm


class ParseScheduleTimeTests(unittest.TestCase):
    def test_accepts_24_hour_values(self) -> None:
        self.assertEqual(parse_schedule_time("21:00"), time(21, 0))
        self.assertEqual(parse_schedule_time(" 7:05 "), time(7, 5))
        self.assertEqual(parse_schedule_time("00:00"), time(0, 0))

    def test_rejects_malformed_values(self) -> None:
        for value in ("24:00", "21:60", "9pm", "", None, "21:0"):
            with self.subTest(value=value):
                with self.assertRaises(InvalidScheduleTime):
                    parse_schedule_time(value)


class NextFireAtTests(unittest.TestCase):
    def test_later_today_when_time_not_reached(self) -> None:
        result = next_fire_at_utc(
            time(21, 0),
            "UTC",
            reference_utc=datetime(2024, 1, 10, 20, 59, tzinfo=timezone.utc),
        )

        self.assertEqual(result, datetime(2024, 1, 10, 21, 0, tzinfo=timezone.utc))

    def test_exact_fire_instant_rolls_to_next_day(self) -> None:
        result = next_fire_at_utc(
            time(21, 0),
            "UTC",
            reference_utc=datetime(2024, 1, 10, 21, 0, tzinfo=timezone.utc),
        )

        self.assertEqual(result, datetime(2024, 1, 11, 21, 0, tzinfo=timezone.utc))

    def test_follows_daylight_saving_changes(self) -> None:
        before = next_fire_at_utc(
            time(21, 0),
            "America/New_York",
            reference_utc=datetime(2024, 3, 9, 12, 0, tzinfo=timezone.utc),
        )
        after = next_fire_at_utc(
            time(21, 0),
            "America/New_York",
            reference_utc=datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc),
        )

        self.assertEqual(before, datetime(2024, 3, 10, 2, 0, tzinfo=timezone.utc))
        self.assertEqual(after, datetime(2024, 3, 11, 1, 0, tzinfo=timezone.utc))

    def test_unknown_timezone_falls_back(self) -> None:
        with self.assertLogs("farmtrack.farms", level="WARNING"):
            tz = farm_timezone("Mars/Olympus_Mons")

        self.assertEqual(str(tz), "UTC")


class ScheduleSettingStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = build_session_factory()

    def test_unset_farm_uses_default_time(self) -> None:
        with self.session_factory() as session:
            farm, _ = seed_farm(session, timezone_name="Europe/Istanbul")

            schedule = get_farm_schedule(session, farm_id=farm.id)

        self.assertEqual(schedule.run_time_local, time(21, 0))
        self.assertTrue(schedule.is_default)
        self.assertEqual(schedule.timezone_name, "Europe/Istanbul")

    def test_set_twice_keeps_one_setting_row(self) -> None:
        with self.session_factory() as session:
            farm, _ = seed_farm(session)

            set_schedule_time(session, farm_id=farm.id, value="20:15")
            schedule = set_schedule_time(session, farm_id=farm.id, value="22:45")
            rows = list(session.scalars(select(FarmSetting)).all())
            stored = get_farm_schedule(session, farm_id=farm.id)

        self.assertEqual(schedule.hhmm, "22:45")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].value, "22:45")
        self.assertFalse(stored.is_default)

    def test_set_for_unknown_farm_raises(self) -> None:
        with self.session_factory() as session:
            with self.assertRaises(TenantNotFound):
                set_schedule_time(session, farm_id=77, value="20:00")

    def test_load_farm_schedules_covers_every_farm(self) -> None:
        with self.session_factory() as session:
            configured, _ = seed_farm(session)
            unconfigured, _ = seed_farm(session, name="South Barn", animals=())
            broken, _ = seed_farm(session, name="East Field", animals=())
            set_schedule_time(session, farm_id=configured.id, value="19:30")
            session.add(FarmSetting(farm_id=broken.id, key="night_check_schedule", value="late"))
            session.commit()

            schedules = {item.farm_id: item for item in load_farm_schedules(session)}

        self.assertEqual(set(schedules), {configured.id, unconfigured.id, broken.id})
        self.assertEqual(schedules[configured.id].run_time_local, time(19, 30))
        self.assertFalse(schedules[configured.id].is_default)
        self.assertEqual(schedules[unconfigured.id].run_time_local, time(21, 0))
        self.assertTrue(schedules[broken.id].is_default)


if __name__ == "__main__":
    unittest.main()
