from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from concurrent.futures import ThreadPoolExecutor
from contextlib import suppress
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any

from farmtrack.db import SessionLocal
from farmtrack.errors import NightCheckError, TenantNotFound
from farmtrack.services.farms import farm_timezone
from farmtrack.services.night_check_pipeline import (
    TRIGGER_SCHEDULED,
    AlertEmail,
    NightCheckRunResult,
    deliver_alert_email,
    run_night_check,
)
from farmtrack.services.schedule_settings import (
    FarmSchedule,
    format_schedule_time,
    get_farm_schedule,
    load_farm_schedules,
    next_fire_at_utc,
    parse_schedule_time,
)
from farmtrack.settings import get_settings

logger = logging.getLogger("farmtrack.scheduler")

Runner = Callable[[int, date, str], Any]
EmailSender = Callable[[AlertEmail], Any]
ScheduleLoader = Callable[[], list[FarmSchedule]]
FarmScheduleLoader = Callable[[int], "FarmSchedule | None"]
Clock = Callable[[], datetime]
Sleeper = Callable[[float], Awaitable[None]]

FIRE_STATUS_RUNNING_LATE = "RUNNING_LATE"
FIRE_STATUS_MISSED = "MISSED"


def _run_scheduled_night_check(farm_id: int, local_day: date, trigger: str) -> NightCheckRunResult:
    # Email leaves the fire worker; the scheduler sends it as its own task.
    return run_night_check(farm_id, local_day=local_day, trigger=trigger, dispatch_email=False)


def _load_all_schedules() -> list[FarmSchedule]:
    with SessionLocal() as session:
        return load_farm_schedules(session)


def _load_one_schedule(farm_id: int) -> FarmSchedule | None:
    with SessionLocal() as session:
        try:
            return get_farm_schedule(session, farm_id=farm_id)
        except TenantNotFound:
            return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class _FarmTimer:
    farm_id: int
    run_time_local: time
    timezone_name: str | None
    task: asyncio.Task[None] | None = None
    next_fire_at_utc: datetime | None = None

    def matches(self, schedule: FarmSchedule) -> bool:
        return self.run_time_local == schedule.run_time_local and self.timezone_name == schedule.timezone_name


class NightCheckScheduler:
    """One independent timer per farm, firing the night check at the farm's local time.

    The registry of timers is private and only changes through ``arm_all``,
    ``reconcile``, ``reschedule``, ``unschedule`` and ``shutdown``, all
    serialized by one lock. A fire hands the pipeline to its own task and
    re-arms immediately, so cancelling a timer never interrupts a run already
    in flight. Pipeline runs are never cancelled either: a run that outlives
    ``pipeline_timeout_seconds`` is reported as running late and its real
    outcome is recorded once it finishes.
    """

    def __init__(
        self,
        *,
        runner: Runner | None = None,
        email_sender: EmailSender | None = None,
        load_schedules: ScheduleLoader | None = None,
        load_farm_schedule: FarmScheduleLoader | None = None,
        clock: Clock | None = None,
        sleep: Sleeper | None = None,
        pipeline_timeout_seconds: float | None = None,
        fire_workers: int | None = None,
        reconcile_seconds: float | None = None,
    ) -> None:
        settings = get_settings()
        self._runner = runner or _run_scheduled_night_check
        self._email_sender = email_sender or deliver_alert_email
        self._load_schedules = load_schedules or _load_all_schedules
        self._load_farm_schedule = load_farm_schedule or _load_one_schedule
        self._clock = clock or _utcnow
        self._sleep = sleep or asyncio.sleep
        self._pipeline_timeout_seconds = float(
            pipeline_timeout_seconds
            if pipeline_timeout_seconds is not None
            else settings.night_check_pipeline_timeout_seconds
        )
        self._reconcile_seconds = float(
            reconcile_seconds if reconcile_seconds is not None else settings.night_check_reconcile_seconds
        )
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, fire_workers or settings.night_check_fire_workers),
            thread_name_prefix="night-check-fire",
        )
        self._timers: dict[int, _FarmTimer] = {}
        self._registry_lock = asyncio.Lock()
        self._inflight: set[asyncio.Task[None]] = set()
        self._last_runs: dict[int, dict[str, Any]] = {}
        self._maintenance_task: asyncio.Task[None] | None = None
        self._armed_once = False

    async def start(self) -> None:
        if self._maintenance_task is not None and not self._maintenance_task.done():
            return
        self._maintenance_task = asyncio.create_task(self._maintain(), name="night-check-maintenance")

    async def _maintain(self) -> None:
        retry_seconds = 5.0
        while True:
            try:
                await self.arm_all()
            except Exception:
                logger.exception("night_check_scheduler_arm_failed", extra={"retry_in_seconds": retry_seconds})
                await self._sleep(retry_seconds)
                retry_seconds = min(retry_seconds * 2, 300.0)
            else:
                break

        while True:
            await self._sleep(self._reconcile_seconds)
            try:
                await self.reconcile()
            except Exception:
                logger.exception(
                    "night_check_reconcile_failed",
                    extra={"retry_in_seconds": self._reconcile_seconds},
                )

    async def arm_all(self) -> int:
        schedules = await asyncio.to_thread(self._load_schedules)
        async with self._registry_lock:
            for timer in self._timers.values():
                self._cancel_timer(timer)
            self._timers.clear()
            for schedule in schedules:
                self._arm_locked(schedule)
            self._armed_once = True
        logger.info(
            "night_check_scheduler_armed",
            extra={
                "farm_count": len(schedules),
                "default_schedule_count": sum(1 for item in schedules if item.is_default),
            },
        )
        return len(schedules)

    async def reconcile(self) -> dict[str, int]:
        """Bring the timers in line with the farms and schedules currently stored.

        New farms are armed, deleted farms unscheduled and changed schedules
        re-armed. Timers whose schedule is unchanged keep running untouched.
        """
        schedules = await asyncio.to_thread(self._load_schedules)
        counts = {"armed": 0, "rearmed": 0, "removed": 0}
        async with self._registry_lock:
            current_ids = {schedule.farm_id for schedule in schedules}
            for farm_id in [item for item in self._timers if item not in current_ids]:
                self._cancel_timer(self._timers.pop(farm_id))
                counts["removed"] += 1
            for schedule in schedules:
                existing = self._timers.get(schedule.farm_id)
                if existing is not None and existing.matches(schedule):
                    continue
                if existing is not None:
                    self._cancel_timer(existing)
                    counts["rearmed"] += 1
                else:
                    counts["armed"] += 1
                self._arm_locked(schedule)
        if any(counts.values()):
            logger.info("night_check_scheduler_reconciled", extra={"farm_count": len(schedules), **counts})
        return counts

    async def reschedule(self, farm_id: int, new_time: time | str | None = None) -> bool:
        """Re-arm ``farm_id`` from its stored schedule; a no-op returning False for an unknown farm.

        ``new_time`` is what the caller just saved. The timer always follows the
        stored value, which wins when two updates race.
        """
        requested = new_time if isinstance(new_time, time) or new_time is None else parse_schedule_time(new_time)
        schedule = await asyncio.to_thread(self._load_farm_schedule, farm_id)
        async with self._registry_lock:
            existing = self._timers.pop(farm_id, None)
            if existing is not None:
                self._cancel_timer(existing)
            if schedule is None:
                logger.info("night_check_reschedule_unknown_farm", extra={"farm_id": farm_id})
                return False
            self._arm_locked(schedule)
        if requested is not None and requested != schedule.run_time_local:
            logger.warning(
                "night_check_reschedule_superseded",
                extra={
                    "farm_id": farm_id,
                    "requested_time": format_schedule_time(requested),
                    "run_time_local": schedule.hhmm,
                },
            )
        logger.info("night_check_rescheduled", extra={"farm_id": farm_id, "run_time_local": schedule.hhmm})
        return True

    async def unschedule(self, farm_id: int) -> bool:
        async with self._registry_lock:
            existing = self._timers.pop(farm_id, None)
            if existing is None:
                return False
            self._cancel_timer(existing)
        logger.info("night_check_unscheduled", extra={"farm_id": farm_id})
        return True

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for fires and alert emails already in flight, including emails they start."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._inflight:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return
            await asyncio.wait(set(self._inflight), timeout=remaining)

    async def shutdown(self, timeout: float | None = 30.0) -> None:
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._maintenance_task
            self._maintenance_task = None
        async with self._registry_lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            self._cancel_timer(timer)
        for timer in timers:
            if timer.task is not None:
                with suppress(asyncio.CancelledError):
                    await timer.task
        await self.drain(timeout=timeout)
        self._executor.shutdown(wait=False)

    def is_armed(self, farm_id: int) -> bool:
        return farm_id in self._timers

    def next_fire_at(self, farm_id: int) -> datetime | None:
        timer = self._timers.get(farm_id)
        return timer.next_fire_at_utc if timer is not None else None

    def farm_status(self, farm_id: int) -> dict[str, Any]:
        timer = self._timers.get(farm_id)
        return {
            "farm_id": farm_id,
            "armed": timer is not None,
            "run_time_local": format_schedule_time(timer.run_time_local) if timer is not None else None,
            "timezone_name": timer.timezone_name if timer is not None else None,
            "next_fire_at_utc": (
                timer.next_fire_at_utc.isoformat()
                if timer is not None and timer.next_fire_at_utc is not None
                else None
            ),
            "last_run": self._last_runs.get(farm_id),
        }

    def health(self) -> dict[str, Any]:
        maintaining = self._maintenance_task is not None and not self._maintenance_task.done()
        return {
            "armed_farms": len(self._timers),
            "inflight_fires": len(self._inflight),
            "arming": maintaining and not self._armed_once,
            "reconciling": maintaining and self._armed_once,
        }

    def _arm_locked(self, schedule: FarmSchedule) -> None:
        timer = _FarmTimer(
            farm_id=schedule.farm_id,
            run_time_local=schedule.run_time_local,
            timezone_name=schedule.timezone_name,
        )
        timer.next_fire_at_utc = next_fire_at_utc(
            timer.run_time_local,
            timer.timezone_name,
            reference_utc=self._clock(),
        )
        timer.task = asyncio.create_task(self._timer_loop(timer), name=f"night-check-timer-{schedule.farm_id}")
        self._timers[schedule.farm_id] = timer

    @staticmethod
    def _cancel_timer(timer: _FarmTimer) -> None:
        if timer.task is not None and not timer.task.done():
            timer.task.cancel()

    async def _timer_loop(self, timer: _FarmTimer) -> None:
        while True:
            now_utc = self._clock()
            fire_at = next_fire_at_utc(timer.run_time_local, timer.timezone_name, reference_utc=now_utc)
            timer.next_fire_at_utc = fire_at
            await self._sleep(max(0.0, (fire_at - now_utc).total_seconds()))
            if self._clock() < fire_at:
                continue
            local_day = fire_at.astimezone(farm_timezone(timer.timezone_name)).date()
            self._track(
                self._execute_fire(timer.farm_id, local_day),
                f"night-check-fire-{timer.farm_id}-{local_day}",
            )

    def _track(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _execute_fire(self, farm_id: int, local_day: date) -> None:
        log_fields: dict[str, Any] = {"farm_id": farm_id, "local_day": local_day.isoformat()}
        started_at = self._clock()
        future = asyncio.get_running_loop().run_in_executor(
            self._executor, self._runner, farm_id, local_day, TRIGGER_SCHEDULED
        )
        done, _ = await asyncio.wait({future}, timeout=self._pipeline_timeout_seconds)
        overran = not done
        if overran:
            logger.error(
                "night_check_fire_overrun",
                extra={**log_fields, "timeout_seconds": self._pipeline_timeout_seconds},
            )
            self._record_last_run(farm_id, local_day, FIRE_STATUS_RUNNING_LATE, started_at, overran=True)

        try:
            result = await future
        except TenantNotFound as exc:
            logger.error("night_check_missed_alert", extra={**log_fields, "error_code": exc.code, "error": str(exc)})
            self._record_last_run(
                farm_id, local_day, FIRE_STATUS_MISSED, started_at, error_code=exc.code, overran=overran
            )
            await self.unschedule(farm_id)
        except NightCheckError as exc:
            logger.error("night_check_missed_alert", extra={**log_fields, "error_code": exc.code, "error": str(exc)})
            self._record_last_run(
                farm_id, local_day, FIRE_STATUS_MISSED, started_at, error_code=exc.code, overran=overran
            )
        except Exception:
            logger.exception("night_check_missed_alert", extra={**log_fields, "error_code": "UNEXPECTED"})
            self._record_last_run(
                farm_id, local_day, FIRE_STATUS_MISSED, started_at, error_code="UNEXPECTED", overran=overran
            )
        else:
            status = getattr(result, "status", None) or "DONE"
            self._record_last_run(farm_id, local_day, status, started_at, overran=overran)
            pending_email = getattr(result, "pending_email", None)
            if pending_email is not None:
                self._track(
                    self._send_alert_email(farm_id, local_day, pending_email),
                    f"night-check-email-{farm_id}-{local_day}",
                )

    async def _send_alert_email(self, farm_id: int, local_day: date, alert_email: AlertEmail) -> None:
        try:
            delivery = await asyncio.to_thread(self._email_sender, alert_email)
        except Exception:
            logger.exception(
                "night_check_email_task_failed",
                extra={"farm_id": farm_id, "local_day": local_day.isoformat()},
            )
            delivered = False
        else:
            delivered = bool(getattr(delivery, "success", False))
        last_run = self._last_runs.get(farm_id)
        if last_run is not None and last_run.get("local_day") == local_day.isoformat():
            last_run["email_delivered"] = delivered

    def _record_last_run(
        self,
        farm_id: int,
        local_day: date,
        status: str,
        started_at: datetime,
        *,
        error_code: str | None = None,
        overran: bool = False,
    ) -> None:
        self._last_runs[farm_id] = {
            "local_day": local_day.isoformat(),
            "status": status,
            "error_code": error_code,
            "overran": overran,
            "started_at_utc": started_at.isoformat(),
            "finished_at_utc": self._clock().isoformat() if status != FIRE_STATUS_RUNNING_LATE else None,
        }

    def last_run(self, farm_id: int) -> dict[str, Any] | None:
        return self._last_runs.get(farm_id)
