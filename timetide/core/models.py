"""
Core data models for the TimeTide scheduling core - SQLAlchemy Integration
Jobs, calendars, credentials, synced events, webhooks, deliveries and bookings
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional
import uuid

from sqlalchemy import Column, String, DateTime, Integer, Text, Boolean, JSON, Index, text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utc_now() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC already"""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def new_id() -> str:
    return str(uuid.uuid4())


class JobType(Enum):
    """Closed set of job kinds the worker pool knows how to execute"""
    SYNC_CALENDAR = "sync_calendar"
    SYNC_USER_CALENDARS = "sync_user_calendars"
    CHECK_CONFLICTS = "check_conflicts"
    DELIVER_WEBHOOK = "deliver_webhook"
    RETRY_DELIVERY = "retry_delivery"
    TEST_WEBHOOK = "test_webhook"
    REFRESH_TOKENS = "refresh_tokens"


class JobStatus(Enum):
    """Job lifecycle status"""
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


ACTIVE_JOB_STATUSES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)


class ProviderKind(Enum):
    """External calendar providers"""
    GOOGLE = "google"
    OUTLOOK = "outlook"


class SyncStatus(Enum):
    """Per-calendar synchronization state"""
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class DeliveryStatus(Enum):
    """Webhook delivery status"""
    PENDING = "pending"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_DELIVERY_STATUSES = (DeliveryStatus.SUCCESS.value, DeliveryStatus.FAILED.value)


class WebhookEventType(Enum):
    """Booking lifecycle events a webhook can subscribe to"""
    BOOKING_CREATED = "booking.created"
    BOOKING_CANCELLED = "booking.cancelled"
    BOOKING_RESCHEDULED = "booking.rescheduled"
    BOOKING_CONFIRMED = "booking.confirmed"
    BOOKING_REJECTED = "booking.rejected"


class BookingStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    SKIPPED = "skipped"


# SQLAlchemy Models
class JobDB(Base):
    """SQLAlchemy model for durable background jobs"""
    __tablename__ = 'jobs'

    id = Column(String(36), primary_key=True, default=new_id)
    job_type = Column(String(40), nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default=JobStatus.QUEUED.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    next_run_at = Column(DateTime, nullable=False, default=utc_now)
    dedup_key = Column(String(200), nullable=True, index=True)
    lease_owner = Column(String(100), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    error_kind = Column(String(20), nullable=True)
    result = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_jobs_due', 'status', 'next_run_at'),
        # At most one queued/running job per dedup key
        Index(
            'uq_jobs_active_dedup', 'dedup_key', unique=True,
            sqlite_where=text("status IN ('queued', 'running') AND dedup_key IS NOT NULL"),
            postgresql_where=text("status IN ('queued', 'running') AND dedup_key IS NOT NULL"),
        ),
    )

    def to_domain_model(self) -> 'Job':
        """Convert to domain model"""
        return Job(
            id=self.id,
            job_type=JobType(self.job_type),
            payload=dict(self.payload or {}),
            status=JobStatus(self.status),
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            next_run_at=self.next_run_at,
            dedup_key=self.dedup_key,
            lease_owner=self.lease_owner,
            lease_expires_at=self.lease_expires_at,
            last_error=self.last_error,
            result=self.result,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at
        )


class CalendarCredentialDB(Base):
    """OAuth credential, shared by every calendar that references it"""
    __tablename__ = 'calendar_credentials'

    id = Column(String(36), primary_key=True, default=new_id)
    provider = Column(String(20), nullable=False)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    is_valid = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class CalendarDB(Base):
    """Connected external calendar"""
    __tablename__ = 'calendars'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    credential_id = Column(String(36), nullable=True, index=True)
    provider = Column(String(20), nullable=False)
    external_id = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False, default='')
    is_enabled = Column(Boolean, nullable=False, default=True)
    is_primary = Column(Boolean, nullable=False, default=False)
    check_for_conflicts = Column(Boolean, nullable=False, default=True)
    sync_status = Column(String(20), nullable=False, default=SyncStatus.PENDING.value)
    sync_token = Column(Text, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class SyncedEventDB(Base):
    """Event pulled from a provider during a sync pass"""
    __tablename__ = 'synced_events'

    id = Column(String(36), primary_key=True, default=new_id)
    calendar_id = Column(String(36), nullable=False, index=True)
    external_event_id = Column(String(255), nullable=False)
    title = Column(String(500), nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    is_all_day = Column(Boolean, nullable=False, default=False)
    is_busy = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utc_now)

    __table_args__ = (
        Index('idx_synced_events_window', 'calendar_id', 'start_time', 'end_time'),
        Index('uq_synced_events_external', 'calendar_id', 'external_event_id', unique=True),
    )


class WebhookDB(Base):
    """Outbound webhook subscription"""
    __tablename__ = 'webhooks'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    url = Column(Text, nullable=False)
    secret = Column(String(255), nullable=True)
    event_triggers = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    failure_count = Column(Integer, nullable=False, default=0)
    last_triggered_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)
    last_error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utc_now)


class WebhookDeliveryDB(Base):
    """One logical delivery of one event to one webhook; attempts tracked inside"""
    __tablename__ = 'webhook_deliveries'

    id = Column(String(36), primary_key=True, default=new_id)
    webhook_id = Column(String(36), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default=DeliveryStatus.PENDING.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)
    # Set once the delivery has counted toward its webhook's failure_count
    failure_counted = Column(Boolean, nullable=False, default=False)
    delivered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now)


class BookingDB(Base):
    """Booking row; recurring occurrences share recurring_group_id"""
    __tablename__ = 'bookings'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default=BookingStatus.CONFIRMED.value)
    recurring_group_id = Column(String(36), nullable=True, index=True)
    recurring_index = Column(Integer, nullable=True)
    recurring_count = Column(Integer, nullable=True)
    recurring_frequency = Column(String(20), nullable=True)
    recurring_interval = Column(Integer, nullable=True)
    has_calendar_conflict = Column(Boolean, nullable=False, default=False)
    conflict_checked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now)


@dataclass
class Job:
    """Background job domain model"""
    id: str = field(default_factory=new_id)
    job_type: JobType = JobType.SYNC_CALENDAR
    payload: Dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    max_attempts: int = 3
    next_run_at: datetime = field(default_factory=utc_now)
    dedup_key: Optional[str] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    result: Optional[Any] = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status.value in ACTIVE_JOB_STATUSES

    def to_db_model(self) -> JobDB:
        """Convert to SQLAlchemy model"""
        return JobDB(
            id=self.id,
            job_type=self.job_type.value,
            payload=self.payload,
            status=self.status.value,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            next_run_at=self.next_run_at,
            dedup_key=self.dedup_key,
            lease_owner=self.lease_owner,
            lease_expires_at=self.lease_expires_at,
            last_error=self.last_error,
            result=self.result,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at
        )
