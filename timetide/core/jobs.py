"""
Typed job payloads and handler results
Each JobType has exactly one payload model, validated once at enqueue time
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional, Type

from pydantic import (
    BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator, model_validator
)

from timetide.core.errors import ErrorKind, ValidationError
from timetide.core.models import JobType, to_naive_utc


class JobPayload(BaseModel):
    """Base class for job payloads"""
    model_config = ConfigDict(extra='forbid', frozen=True)

    def dedup_key(self) -> Optional[str]:
        """Key that collapses duplicate active jobs for the same entity"""
        return None


class SyncCalendarPayload(JobPayload):
    calendar_id: str = Field(..., min_length=1)
    force_full_sync: bool = False

    def dedup_key(self) -> Optional[str]:
        return f"sync:{self.calendar_id}"


class SyncUserCalendarsPayload(JobPayload):
    user_id: Optional[str] = None

    def dedup_key(self) -> Optional[str]:
        return f"sync-user:{self.user_id or '*'}"


class CheckConflictsPayload(JobPayload):
    user_id: str = Field(..., min_length=1)
    start: datetime
    end: datetime
    booking_id: Optional[str] = None

    @field_validator('start', 'end')
    @classmethod
    def normalize_to_utc(cls, value: datetime) -> datetime:
        return to_naive_utc(value)

    @model_validator(mode='after')
    def validate_window(self):
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self

    def dedup_key(self) -> Optional[str]:
        return f"conflicts:{self.booking_id}" if self.booking_id else None


class DeliverWebhookPayload(JobPayload):
    delivery_id: str = Field(..., min_length=1)

    def dedup_key(self) -> Optional[str]:
        return f"delivery:{self.delivery_id}"


class RetryDeliveryPayload(JobPayload):
    delivery_id: str = Field(..., min_length=1)
    manual: bool = False

    def dedup_key(self) -> Optional[str]:
        return f"delivery:{self.delivery_id}"


class WebhookTestPayload(JobPayload):
    webhook_id: str = Field(..., min_length=1)


class RefreshTokensPayload(JobPayload):
    horizon_minutes: int = Field(default=60, ge=1)

    def dedup_key(self) -> Optional[str]:
        return "refresh-tokens"


PAYLOAD_TYPES: Dict[JobType, Type[JobPayload]] = {
    JobType.SYNC_CALENDAR: SyncCalendarPayload,
    JobType.SYNC_USER_CALENDARS: SyncUserCalendarsPayload,
    JobType.CHECK_CONFLICTS: CheckConflictsPayload,
    JobType.DELIVER_WEBHOOK: DeliverWebhookPayload,
    JobType.RETRY_DELIVERY: RetryDeliveryPayload,
    JobType.TEST_WEBHOOK: WebhookTestPayload,
    JobType.REFRESH_TOKENS: RefreshTokensPayload,
}


def parse_job_type(value: Any) -> JobType:
    if isinstance(value, JobType):
        return value
    try:
        return JobType(value)
    except ValueError:
        raise ValidationError(f"Unknown job type: {value!r}")


def parse_payload(job_type: Any, payload: Any) -> JobPayload:
    """Validate a raw payload against the model for its job type"""
    job_type = parse_job_type(job_type)
    model = PAYLOAD_TYPES[job_type]

    if isinstance(payload, model):
        return payload
    if isinstance(payload, JobPayload):
        raise ValidationError(
            f"Payload {type(payload).__name__} does not belong to job type {job_type.value}"
        )
    try:
        return model.model_validate(payload or {})
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid payload for {job_type.value}: {e.errors()}")


@dataclass
class JobRequest:
    """A job to be enqueued, e.g. a follow-up produced by a handler"""
    job_type: JobType
    payload: JobPayload
    dedup_key: Optional[str] = None
    delay_seconds: float = 0.0
    expedite: bool = False


@dataclass
class JobResult:
    """Outcome of one handler execution"""
    ok: bool
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    retry_after: Optional[float] = None
    data: Optional[Dict[str, Any]] = None
    follow_ups: List[JobRequest] = field(default_factory=list)

    @classmethod
    def success(cls, data: Optional[Dict[str, Any]] = None,
                follow_ups: Optional[List[JobRequest]] = None) -> 'JobResult':
        return cls(ok=True, data=data, follow_ups=list(follow_ups or []))

    @classmethod
    def failure(cls, kind: ErrorKind, message: str,
                retry_after: Optional[float] = None,
                data: Optional[Dict[str, Any]] = None) -> 'JobResult':
        return cls(ok=False, error_kind=kind, message=message, retry_after=retry_after, data=data)

    @property
    def retryable(self) -> bool:
        return not self.ok and self.error_kind == ErrorKind.TRANSIENT
