"""
Recurring Series Generator for the TimeTide scheduling core
Expands one booking request into correctly spaced occurrences sharing a group id
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Any, List, Optional, Union

from dateutil.relativedelta import relativedelta
from sqlalchemy import select

from timetide.core.conflict_detector import ConflictDetector, overlaps
from timetide.core.database import DatabaseService
from timetide.core.errors import ValidationError
from timetide.core.models import BookingDB, BookingStatus, new_id, to_naive_utc, utc_now

MIN_RECURRING_OCCURRENCES = 2
MAX_RECURRING_OCCURRENCES = 24
DEFAULT_CUSTOM_INTERVAL_DAYS = 7


class RecurringFrequency(Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"

    @property
    def label(self) -> str:
        return {
            RecurringFrequency.WEEKLY: "Every week",
            RecurringFrequency.BIWEEKLY: "Every 2 weeks",
            RecurringFrequency.MONTHLY: "Every month",
            RecurringFrequency.CUSTOM: "Custom interval",
        }[self]


@dataclass
class RecurringConfig:
    frequency: RecurringFrequency = RecurringFrequency.WEEKLY
    count: int = MIN_RECURRING_OCCURRENCES
    interval: Optional[int] = None  # days, custom frequency only

    def __post_init__(self):
        if not isinstance(self.frequency, RecurringFrequency):
            try:
                self.frequency = RecurringFrequency(self.frequency)
            except ValueError:
                raise ValidationError(f"Unknown recurring frequency: {self.frequency!r}")
        if self.interval is not None and self.interval < 0:
            raise ValidationError("Recurring interval must not be negative")


def clamp_count(count: int) -> int:
    return min(MAX_RECURRING_OCCURRENCES, max(MIN_RECURRING_OCCURRENCES, int(count)))


def generate_recurring_dates(
    start: datetime,
    config: Union[RecurringConfig, int, str, RecurringFrequency],
    count: Optional[int] = None,
    interval: Optional[int] = None
) -> List[datetime]:
    """
    Occurrence start times for a series.

    `config` is a RecurringConfig, a frequency (then `count` is required) or
    a bare int, which means that many weekly occurrences. The count is always
    clamped to [2, 24] and index 0 is `start` unchanged. Monthly steps are
    measured from `start`, so a series from Jan 31 lands on the last day of
    shorter months and returns to the 31st where it exists.
    """
    if isinstance(config, bool):
        raise ValidationError("Recurring count must be an integer")
    if isinstance(config, int):
        config = RecurringConfig(RecurringFrequency.WEEKLY, config)
    elif not isinstance(config, RecurringConfig):
        if count is None:
            raise ValidationError("Recurring count is required")
        config = RecurringConfig(config, count, interval)

    total = clamp_count(config.count)
    step_days = {
        RecurringFrequency.WEEKLY: 7,
        RecurringFrequency.BIWEEKLY: 14,
        RecurringFrequency.CUSTOM: config.interval or DEFAULT_CUSTOM_INTERVAL_DAYS,
    }

    dates = [start]
    for i in range(1, total):
        if config.frequency == RecurringFrequency.MONTHLY:
            dates.append(start + relativedelta(months=i))
        else:
            dates.append(start + timedelta(days=i * step_days[config.frequency]))
    return dates


@dataclass
class PlannedOccurrence:
    index: int
    start_time: datetime
    end_time: datetime
    status: BookingStatus
    group_id: str
    count: int
    frequency: RecurringFrequency
    interval: Optional[int] = None


def plan_recurring_series(
    start: datetime,
    duration: timedelta,
    config: RecurringConfig,
    is_slot_free: Callable[[datetime, datetime], bool],
    status: BookingStatus = BookingStatus.CONFIRMED,
    group_id: Optional[str] = None
) -> List[PlannedOccurrence]:
    """Stamp every occurrence of the series; occupied slots are kept as SKIPPED so indices stay contiguous"""
    if duration <= timedelta(0):
        raise ValidationError("Booking duration must be positive")

    dates = generate_recurring_dates(start, config)
    group_id = group_id or new_id()
    interval = config.interval if config.frequency == RecurringFrequency.CUSTOM else None

    plan = []
    for index, occurrence_start in enumerate(dates):
        occurrence_end = occurrence_start + duration
        plan.append(PlannedOccurrence(
            index=index,
            start_time=occurrence_start,
            end_time=occurrence_end,
            status=status if is_slot_free(occurrence_start, occurrence_end) else BookingStatus.SKIPPED,
            group_id=group_id,
            count=len(dates),
            frequency=config.frequency,
            interval=interval
        ))
    return plan


class RecurringSeriesService:
    """Persists a planned series as booking rows"""

    def __init__(self, db: DatabaseService, conflict_detector: ConflictDetector):
        self.db = db
        self.conflict_detector = conflict_detector
        self.logger = logging.getLogger(__name__)

    async def create_series(self, user_id: str, start: datetime, duration: timedelta,
                            config: RecurringConfig,
                            status: BookingStatus = BookingStatus.CONFIRMED) -> List[Dict[str, Any]]:
        start = to_naive_utc(start)
        dates = generate_recurring_dates(start, config)
        series_end = dates[-1] + duration

        async with self.db.get_session() as session:
            result = await session.execute(
                select(BookingDB.start_time, BookingDB.end_time).where(
                    BookingDB.user_id == user_id,
                    BookingDB.status.in_((BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)),
                    BookingDB.start_time < series_end,
                    BookingDB.end_time > start
                )
            )
            booked = result.all()

        busy: Dict[datetime, bool] = {}
        calendar_conflict: Dict[datetime, bool] = {}
        for occurrence_start in dates:
            occurrence_end = occurrence_start + duration
            conflicts = await self.conflict_detector.check_conflicts(user_id, occurrence_start, occurrence_end)
            calendar_conflict[occurrence_start] = conflicts.has_conflict
            busy[occurrence_start] = conflicts.has_conflict or any(
                overlaps(b_start, b_end, occurrence_start, occurrence_end) for b_start, b_end in booked
            )

        plan = plan_recurring_series(start, duration, config,
                                     lambda slot_start, _: not busy[slot_start], status=status)

        checked_at = utc_now()
        booking_ids = [new_id() for _ in plan]
        async with self.db.get_session() as session:
            for booking_id, occurrence in zip(booking_ids, plan):
                session.add(BookingDB(
                    id=booking_id,
                    user_id=user_id,
                    start_time=occurrence.start_time,
                    end_time=occurrence.end_time,
                    status=occurrence.status.value,
                    recurring_group_id=occurrence.group_id,
                    recurring_index=occurrence.index,
                    recurring_count=occurrence.count,
                    recurring_frequency=occurrence.frequency.value,
                    recurring_interval=occurrence.interval,
                    has_calendar_conflict=calendar_conflict[occurrence.start_time],
                    conflict_checked_at=checked_at
                ))

        skipped = sum(1 for occurrence in plan if occurrence.status == BookingStatus.SKIPPED)
        self.logger.info(f"Created recurring series {plan[0].group_id} for user {user_id}: "
                         f"{len(plan)} occurrences ({config.frequency.label}), {skipped} skipped")

        return [
            {
                'id': booking_id,
                'group_id': occurrence.group_id,
                'index': occurrence.index,
                'start_time': occurrence.start_time,
                'end_time': occurrence.end_time,
                'status': occurrence.status.value,
            }
            for booking_id, occurrence in zip(booking_ids, plan)
        ]
