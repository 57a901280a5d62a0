"""
TimeTide Core Module
Exports the scheduling core components for easy imports
"""

from .models import (
    BookingStatus,
    DeliveryStatus,
    Job,
    JobStatus,
    JobType,
    ProviderKind,
    SyncStatus,
    WebhookEventType
)
from .errors import (
    AuthError,
    DeliveryRejectedError,
    ErrorKind,
    JobEnqueueError,
    NotFoundError,
    RateLimitError,
    SyncTokenExpiredError,
    TimetideError,
    TransientError,
    ValidationError
)
from .database import DatabaseService
from .jobs import JobRequest, JobResult
from .job_queue import JobQueue
from .worker_pool import WorkerPool
from .token_manager import HttpTokenExchange, OAuthTokenManager, TokenExchange, TokenSet
from .providers import CalendarProvider, EventPage, GoogleCalendarProvider, OutlookCalendarProvider, ProviderEvent
from .calendar_sync import CalendarSyncEngine
from .conflict_detector import ConflictDetector, ConflictingEvent, ConflictResult
from .webhook_delivery import WebhookDeliveryEngine, build_booking_payload, sign_payload, verify_signature
from .recurring import (
    RecurringConfig,
    RecurringFrequency,
    RecurringSeriesService,
    generate_recurring_dates,
    plan_recurring_series
)
from .scheduler import TimetideScheduler
