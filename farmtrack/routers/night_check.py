from datetime import date
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from farmtrack.audit import (
    ACTION_NIGHT_CHECK_SCHEDULE_UPDATED,
    ACTION_NIGHT_CHECK_TRIGGERED,
    ACTION_RETURN_RECORD_DELETED,
    ACTION_RETURN_RECORD_UPSERTED,
    log_audit,
)
from farmtrack.db import get_db
from farmtrack.errors import ApiError, InvalidScheduleTime
from farmtrack.models import AuditActorType
from farmtrack.schemas import (
    NightCheckRunRequest,
    NightCheckRunResponse,
    NightCheckScheduleRead,
    NightCheckScheduleUpdate,
    NightCheckScheduleUpdateResponse,
    NightCheckStatusRead,
    NotificationRead,
    ReturnRecordRead,
    ReturnRecordUpsertRequest,
    ReturnRecordUpsertResponse,
)
from farmtrack.services.cache import (
    DashboardCache,
    get_dashboard_cache,
    notifications_key,
    return_record_cache_keys,
)
from farmtrack.services.email_dispatch import EmailDispatcher, get_email_dispatcher
from farmtrack.services.farms import get_farm
from farmtrack.services.night_check_pipeline import (
    TRIGGER_CHECKIN,
    TRIGGER_MANUAL,
    NightCheckRunResult,
    deliver_alert_email,
    trigger_now,
)
from farmtrack.services.notifications import list_farm_notifications, mark_notification_read
from farmtrack.services.return_ledger import (
    AnimalNotInFarmError,
    delete_return_record,
    list_return_records,
    upsert_return_record,
)
from farmtrack.services.schedule_settings import get_farm_schedule, set_schedule_time
from farmtrack.services.scheduler import NightCheckScheduler

router = APIRouter(tags=["night-check"])


def get_night_check_scheduler(request: Request) -> NightCheckScheduler | None:
    return getattr(request.app.state, "night_check_scheduler", None)


def _actor_id(request: Request) -> str:
    return str(getattr(request.state, "actor_id", "admin"))


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _queue_pending_email(
    background_tasks: BackgroundTasks,
    result: NightCheckRunResult,
    email_dispatcher: EmailDispatcher,
) -> None:
    if result.pending_email is not None:
        background_tasks.add_task(deliver_alert_email, result.pending_email, dispatcher=email_dispatcher)


def _to_run_response(result: NightCheckRunResult) -> NightCheckRunResponse:
    payload: dict[str, Any] = result.to_dict()
    return NightCheckRunResponse(**payload)


@router.post(
    "/api/farms/{farm_id}/night-check/run",
    response_model=NightCheckRunResponse,
)
def run_farm_night_check(
    farm_id: int,
    request: Request,
    background_tasks: BackgroundTasks,
    payload: NightCheckRunRequest | None = None,
    db: Session = Depends(get_db),
    cache: DashboardCache = Depends(get_dashboard_cache),
    email_dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
) -> NightCheckRunResponse:
    result = trigger_now(
        farm_id,
        local_day=payload.local_day if payload is not None else None,
        trigger=TRIGGER_MANUAL,
        dispatch_email=False,
        db=db,
        cache=cache,
        email_dispatcher=email_dispatcher,
    )
    _queue_pending_email(background_tasks, result, email_dispatcher)
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=_actor_id(request),
        action=ACTION_NIGHT_CHECK_TRIGGERED,
        success=True,
        farm_id=farm_id,
        entity_type="night_check",
        entity_id=result.local_day.isoformat(),
        details={
            "status": result.status,
            "missing_count": len(result.missing.animals),
            "notification_id": result.notification_id,
        },
        request_id=_request_id(request),
    )
    return _to_run_response(result)


@router.get(
    "/api/farms/{farm_id}/night-check/schedule",
    response_model=NightCheckScheduleRead,
)
def get_night_check_schedule(farm_id: int, db: Session = Depends(get_db)) -> NightCheckScheduleRead:
    schedule = get_farm_schedule(db, farm_id=farm_id)
    return NightCheckScheduleRead(
        farm_id=schedule.farm_id,
        time=schedule.hhmm,
        timezone_name=schedule.timezone_name,
        is_default=schedule.is_default,
    )


@router.put(
    "/api/farms/{farm_id}/night-check/schedule",
    response_model=NightCheckScheduleUpdateResponse,
)
async def update_night_check_schedule(
    farm_id: int,
    payload: NightCheckScheduleUpdate,
    request: Request,
    db: Session = Depends(get_db),
    scheduler: NightCheckScheduler | None = Depends(get_night_check_scheduler),
) -> NightCheckScheduleUpdateResponse:
    try:
        schedule = await run_in_threadpool(set_schedule_time, db, farm_id=farm_id, value=payload.time)
    except InvalidScheduleTime as exc:
        raise ApiError(status_code=422, code=exc.code, message=str(exc)) from exc

    rescheduled = False
    if scheduler is not None:
        rescheduled = await scheduler.reschedule(farm_id, schedule.run_time_local)

    await run_in_threadpool(
        log_audit,
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=_actor_id(request),
        action=ACTION_NIGHT_CHECK_SCHEDULE_UPDATED,
        success=True,
        farm_id=farm_id,
        entity_type="farm_setting",
        entity_id=f"{farm_id}:night_check_schedule",
        details={"time": schedule.hhmm, "rescheduled": rescheduled},
        request_id=_request_id(request),
    )
    return NightCheckScheduleUpdateResponse(
        farm_id=farm_id,
        time=schedule.hhmm,
        timezone_name=schedule.timezone_name,
        is_default=False,
        rescheduled=rescheduled,
        next_fire_at_utc=scheduler.next_fire_at(farm_id) if scheduler is not None else None,
    )


@router.get(
    "/api/farms/{farm_id}/night-check/status",
    response_model=NightCheckStatusRead,
)
def get_night_check_status(
    farm_id: int,
    db: Session = Depends(get_db),
    scheduler: NightCheckScheduler | None = Depends(get_night_check_scheduler),
) -> NightCheckStatusRead:
    get_farm(db, farm_id)
    if scheduler is None:
        return NightCheckStatusRead(farm_id=farm_id, armed=False)
    return NightCheckStatusRead(**scheduler.farm_status(farm_id))


@router.put(
    "/api/farms/{farm_id}/return-records",
    response_model=ReturnRecordUpsertResponse,
)
def put_return_record(
    farm_id: int,
    payload: ReturnRecordUpsertRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    cache: DashboardCache = Depends(get_dashboard_cache),
    email_dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
) -> ReturnRecordUpsertResponse:
    get_farm(db, farm_id)
    try:
        record = upsert_return_record(
            db,
            farm_id=farm_id,
            animal_id=payload.animal_id,
            local_day=payload.local_day,
            returned=payload.returned,
            reason=payload.return_reason,
            source=payload.source,
        )
    except AnimalNotInFarmError as exc:
        raise ApiError(status_code=404, code="ANIMAL_NOT_FOUND", message=str(exc)) from exc

    cache.invalidate(return_record_cache_keys(farm_id, record.local_day))
    record_read = ReturnRecordRead.model_validate(record)
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=_actor_id(request),
        action=ACTION_RETURN_RECORD_UPSERTED,
        success=True,
        farm_id=farm_id,
        entity_type="return_record",
        entity_id=str(record_read.id),
        details={
            "animal_id": record_read.animal_id,
            "local_day": record_read.local_day.isoformat(),
            "returned": record_read.returned,
            "source": record_read.source.value,
        },
        request_id=_request_id(request),
    )

    night_check: NightCheckRunResponse | None = None
    if payload.trigger_night_check:
        result = trigger_now(
            farm_id,
            local_day=record_read.local_day,
            trigger=TRIGGER_CHECKIN,
            dispatch_email=False,
            db=db,
            cache=cache,
            email_dispatcher=email_dispatcher,
        )
        _queue_pending_email(background_tasks, result, email_dispatcher)
        night_check = _to_run_response(result)

    return ReturnRecordUpsertResponse(record=record_read, night_check=night_check)


@router.get(
    "/api/farms/{farm_id}/return-records",
    response_model=list[ReturnRecordRead],
)
def get_farm_return_records(
    farm_id: int,
    local_day: date | None = Query(default=None, alias="date"),
    animal_id: int | None = Query(default=None, ge=1),
    limit: int = Query(default=500, ge=1, le=2000),
    db: Session = Depends(get_db),
) -> list[ReturnRecordRead]:
    get_farm(db, farm_id)
    records = list_return_records(db, farm_id=farm_id, local_day=local_day, animal_id=animal_id, limit=limit)
    return [ReturnRecordRead.model_validate(item) for item in records]


@router.delete(
    "/api/farms/{farm_id}/return-records/{record_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def remove_return_record(
    farm_id: int,
    record_id: int,
    request: Request,
    db: Session = Depends(get_db),
    cache: DashboardCache = Depends(get_dashboard_cache),
) -> None:
    get_farm(db, farm_id)
    record = delete_return_record(db, farm_id=farm_id, record_id=record_id)
    if record is None:
        raise ApiError(status_code=404, code="RETURN_RECORD_NOT_FOUND", message="Return record not found.")

    cache.invalidate(return_record_cache_keys(farm_id, record.local_day))
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=_actor_id(request),
        action=ACTION_RETURN_RECORD_DELETED,
        success=True,
        farm_id=farm_id,
        entity_type="return_record",
        entity_id=str(record_id),
        details={"animal_id": record.animal_id, "local_day": record.local_day.isoformat()},
        request_id=_request_id(request),
    )


@router.get(
    "/api/farms/{farm_id}/notifications",
    response_model=list[NotificationRead],
)
def get_farm_notifications(
    farm_id: int,
    unread_only: bool = Query(default=False),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[NotificationRead]:
    get_farm(db, farm_id)
    notifications = list_farm_notifications(
        db,
        farm_id=farm_id,
        unread_only=unread_only,
        offset=offset,
        limit=limit,
    )
    return [NotificationRead.model_validate(item) for item in notifications]


@router.post(
    "/api/farms/{farm_id}/notifications/{notification_id}/read",
    response_model=NotificationRead,
)
def read_farm_notification(
    farm_id: int,
    notification_id: int,
    db: Session = Depends(get_db),
    cache: DashboardCache = Depends(get_dashboard_cache),
) -> NotificationRead:
    get_farm(db, farm_id)
    notification = mark_notification_read(db, farm_id=farm_id, notification_id=notification_id)
    if notification is None:
        raise ApiError(status_code=404, code="NOTIFICATION_NOT_FOUND", message="Notification not found.")
    cache.invalidate([notifications_key(farm_id)])
    return NotificationRead.model_validate(notification)
