from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from farmtrack.models import ReturnRecordSource


class ReturnRecordUpsertRequest(BaseModel):
    animal_id: int = Field(ge=1)
    local_day: date
    returned: bool
    return_reason: str | None = Field(default=None, max_length=1000)
    source: ReturnRecordSource = ReturnRecordSource.SCAN
    trigger_night_check: bool = False


class ReturnRecordRead(BaseModel):
    id: int
    farm_id: int
    animal_id: int
    local_day: date
    returned: bool
    return_reason: str | None
    source: ReturnRecordSource
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NightCheckScheduleRead(BaseModel):
    farm_id: int
    time: str
    timezone_name: str | None = None
    is_default: bool = False


class NightCheckScheduleUpdate(BaseModel):
    time: str


class NightCheckScheduleUpdateResponse(NightCheckScheduleRead):
    rescheduled: bool
    next_fire_at_utc: datetime | None = None


class NightCheckRunRequest(BaseModel):
    local_day: date | None = None


class NightCheckRunResponse(BaseModel):
    farm_id: int
    local_day: date
    trigger: Literal["scheduled", "manual", "checkin"]
    status: Literal["CLEAN", "ALERTED", "ALREADY_ALERTED"]
    roster_size: int
    missing: list[str] = Field(default_factory=list)
    notification_id: int | None = None
    cache: dict[str, Any] | None = None
    email: dict[str, Any] | None = None
    email_pending: bool = False


class ReturnRecordUpsertResponse(BaseModel):
    record: ReturnRecordRead
    night_check: NightCheckRunResponse | None = None


class NightCheckStatusRead(BaseModel):
    farm_id: int
    armed: bool
    run_time_local: str | None = None
    timezone_name: str | None = None
    next_fire_at_utc: datetime | None = None
    last_run: dict[str, Any] | None = None


class NotificationRead(BaseModel):
    id: int
    farm_id: int
    user_id: int | None
    title: str
    message: str
    alert_type: str
    alert_day: date | None
    is_read: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
