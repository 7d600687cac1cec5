import unittest
from collections.abc import Generator
from datetime import time

from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from farmtrack.db import get_db
from farmtrack.main import app
from farmtrack.models import AuditLog, Notification
from farmtrack.routers.night_check import get_night_check_scheduler
from farmtrack.services.cache import CacheInvalidationResult, get_dashboard_cache
from farmtrack.services.email_dispatch import EmailDispatcher, EmailSendOutcome, get_email_dispatcher
from tests.db_support import build_session_factory, seed_farm


class _FakeCache:
    def __init__(self) -> None:
        self.invalidated: list[tuple[str, ...]] = []

    def invalidate(self, keys) -> CacheInvalidationResult:  # type: ignore[no-untyped-def]
        ordered = tuple(sorted(keys))
        self.invalidated.append(ordered)
        return CacheInvalidationResult(keys=ordered, deleted=ordered)


class _FakeChannel:
    enabled = True
    configured = True

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send(self, to: str, subject: str, html: str) -> EmailSendOutcome:
        self.sent.append((to, subject, html))
        return EmailSendOutcome(success=True, message_id="<1@farmtrack.test>")


class _FakeScheduler:
    def __init__(self) -> None:
        self.rescheduled: list[tuple[int, time]] = []

    async def reschedule(self, farm_id: int, new_time: time) -> bool:
        self.rescheduled.append((farm_id, new_time))
        return True

    def next_fire_at(self, _farm_id: int):  # type: ignore[no-untyped-def]
        return None

    def farm_status(self, farm_id: int) -> dict:
        return {"farm_id": farm_id, "armed": True, "run_time_local": "21:00", "timezone_name": "UTC"}


class _UnreachableDB:
    def get(self, _model, _pk):  # type: ignore[no-untyped-def]
        raise OperationalError("SELECT farms", {}, Exception("could not connect to server"))

    def rollback(self) -> None:
        return


class NightCheckEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = build_session_factory()
        with self.session_factory() as session:
            farm, animals = seed_farm(session)
            other_farm, other_animals = seed_farm(session, name="South Barn", animals=(("Rex", "S-1"),))
        self.farm_id = farm.id
        self.animal_ids = [animal.id for animal in animals]
        self.other_farm_id = other_farm.id
        self.other_animal_id = other_animals[0].id

        self.cache = _FakeCache()
        self.channel = _FakeChannel()
        self.scheduler = _FakeScheduler()
        dispatcher = EmailDispatcher(self.channel, max_attempts=3, backoff_base_seconds=2.0, sleep=lambda _s: None)

        def override_get_db() -> Generator:
            with self.session_factory() as session:
                yield session

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_dashboard_cache] = lambda: self.cache
        app.dependency_overrides[get_email_dispatcher] = lambda: dispatcher
        app.dependency_overrides[get_night_check_scheduler] = lambda: self.scheduler
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def test_manual_run_alerts_and_sends_email_after_response(self) -> None:
        response = self.client.post(
            f"/api/farms/{self.farm_id}/night-check/run",
            json={"local_day": "2024-01-10"},
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ALERTED")
        self.assertEqual(body["trigger"], "manual")
        self.assertEqual(body["missing"], ["Bella (A-1)", "Duke (B-2)", "Maisie (C-3)"])
        self.assertTrue(body["email_pending"])
        self.assertEqual(len(self.channel.sent), 1)
        with self.session_factory() as session:
            actions = list(session.scalars(select(AuditLog.action)).all())
        self.assertIn("NIGHT_CHECK_TRIGGERED", actions)

    def test_second_manual_run_same_day_is_deduplicated(self) -> None:
        first = self.client.post(f"/api/farms/{self.farm_id}/night-check/run", json={"local_day": "2024-01-10"})
        second = self.client.post(f"/api/farms/{self.farm_id}/night-check/run", json={"local_day": "2024-01-10"})

        self.assertEqual(first.json()["status"], "ALERTED")
        self.assertEqual(second.json()["status"], "ALREADY_ALERTED")
        self.assertEqual(len(self.channel.sent), 1)

    def test_unknown_farm_returns_tenant_not_found(self) -> None:
        response = self.client.post("/api/farms/9999/night-check/run")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "TENANT_NOT_FOUND")
        self.assertIn("request_id", response.json()["error"])

    def test_store_outage_returns_503(self) -> None:
        def override_get_db() -> Generator:
            yield _UnreachableDB()

        app.dependency_overrides[get_db] = override_get_db

        response = self.client.post(f"/api/farms/{self.farm_id}/night-check/run")

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["error"]["code"], "STORE_UNAVAILABLE")
        self.assertEqual(self.channel.sent, [])

    def test_schedule_defaults_then_updates_and_reschedules(self) -> None:
        default = self.client.get(f"/api/farms/{self.farm_id}/night-check/schedule")
        updated = self.client.put(f"/api/farms/{self.farm_id}/night-check/schedule", json={"time": "5:30"})
        current = self.client.get(f"/api/farms/{self.farm_id}/night-check/schedule")

        self.assertEqual(default.status_code, 200)
        self.assertEqual(default.json()["time"], "21:00")
        self.assertTrue(default.json()["is_default"])
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.json()["time"], "05:30")
        self.assertTrue(updated.json()["rescheduled"])
        self.assertEqual(self.scheduler.rescheduled, [(self.farm_id, time(5, 30))])
        self.assertEqual(current.json()["time"], "05:30")
        self.assertFalse(current.json()["is_default"])

    def test_invalid_schedule_time_is_rejected(self) -> None:
        response = self.client.put(f"/api/farms/{self.farm_id}/night-check/schedule", json={"time": "25:00"})

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "INVALID_SCHEDULE_TIME")
        self.assertEqual(self.scheduler.rescheduled, [])

    def test_status_reports_scheduler_state(self) -> None:
        response = self.client.get(f"/api/farms/{self.farm_id}/night-check/status")

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["armed"])
        self.assertEqual(response.json()["run_time_local"], "21:00")

    def test_return_record_upsert_and_listing(self) -> None:
        bella_id = self.animal_ids[0]
        first = self.client.put(
            f"/api/farms/{self.farm_id}/return-records",
            json={"animal_id": bella_id, "local_day": "2024-01-10", "returned": False, "return_reason": "late"},
        )
        second = self.client.put(
            f"/api/farms/{self.farm_id}/return-records",
            json={"animal_id": bella_id, "local_day": "2024-01-10", "returned": True},
        )
        listing = self.client.get(f"/api/farms/{self.farm_id}/return-records", params={"date": "2024-01-10"})

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.json()["record"]["id"], first.json()["record"]["id"])
        self.assertTrue(second.json()["record"]["returned"])
        self.assertEqual(second.json()["record"]["return_reason"], "late")
        self.assertIsNone(second.json()["night_check"])
        self.assertEqual(len(listing.json()), 1)
        self.assertEqual(len(self.cache.invalidated), 2)

    def test_checkin_can_trigger_night_check(self) -> None:
        responses = [
            self.client.put(
                f"/api/farms/{self.farm_id}/return-records",
                json={
                    "animal_id": animal_id,
                    "local_day": "2024-01-10",
                    "returned": True,
                    "trigger_night_check": True,
                },
            )
            for animal_id in self.animal_ids
        ]

        self.assertEqual(responses[0].json()["night_check"]["status"], "ALERTED")
        self.assertEqual(responses[0].json()["night_check"]["trigger"], "checkin")
        self.assertEqual(responses[-1].json()["night_check"]["status"], "CLEAN")

    def test_return_record_for_foreign_animal_is_rejected(self) -> None:
        response = self.client.put(
            f"/api/farms/{self.farm_id}/return-records",
            json={"animal_id": self.other_animal_id, "local_day": "2024-01-10", "returned": True},
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "ANIMAL_NOT_FOUND")

    def test_delete_return_record(self) -> None:
        created = self.client.put(
            f"/api/farms/{self.farm_id}/return-records",
            json={"animal_id": self.animal_ids[0], "local_day": "2024-01-10", "returned": True},
        )
        record_id = created.json()["record"]["id"]

        deleted = self.client.delete(f"/api/farms/{self.farm_id}/return-records/{record_id}")
        missing = self.client.delete(f"/api/farms/{self.farm_id}/return-records/{record_id}")

        self.assertEqual(deleted.status_code, 204)
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["error"]["code"], "RETURN_RECORD_NOT_FOUND")

    def test_notifications_list_and_mark_read(self) -> None:
        self.client.post(f"/api/farms/{self.farm_id}/night-check/run", json={"local_day": "2024-01-10"})

        listing = self.client.get(f"/api/farms/{self.farm_id}/notifications")
        other_listing = self.client.get(f"/api/farms/{self.other_farm_id}/notifications")
        notification_id = listing.json()[0]["id"]
        marked = self.client.post(f"/api/farms/{self.farm_id}/notifications/{notification_id}/read")
        unread = self.client.get(f"/api/farms/{self.farm_id}/notifications", params={"unread_only": True})
        foreign = self.client.post(f"/api/farms/{self.other_farm_id}/notifications/{notification_id}/read")

        self.assertEqual(len(listing.json()), 1)
        self.assertEqual(listing.json()[0]["alert_type"], "NIGHT_RETURN")
        self.assertEqual(other_listing.json(), [])
        self.assertTrue(marked.json()["is_read"])
        self.assertEqual(unread.json(), [])
        self.assertEqual(foreign.status_code, 404)
        with self.session_factory() as session:
            self.assertEqual(session.query(Notification).count(), 1)


if __name__ == "__main__":
    unittest.main()
