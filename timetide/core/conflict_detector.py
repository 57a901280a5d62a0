"""
Conflict Detector for the TimeTide scheduling core
Reports synced calendar events overlapping a half-open [start, end) window
"""

import logging
from bisect import bisect_left
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional, Sequence

from sqlalchemy import select

from timetide.core.database import DatabaseService
from timetide.core.errors import NotFoundError, ValidationError
from timetide.core.jobs import CheckConflictsPayload, JobResult
from timetide.core.models import BookingDB, CalendarDB, SyncedEventDB, to_naive_utc, utc_now


@dataclass
class ConflictingEvent:
    calendar_id: str
    calendar_name: str
    external_event_id: str
    title: str
    start_time: datetime
    end_time: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'calendar_id': self.calendar_id,
            'calendar_name': self.calendar_name,
            'external_event_id': self.external_event_id,
            'title': self.title,
            'start_time': self.start_time.isoformat(),
            'end_time': self.end_time.isoformat(),
        }


@dataclass
class ConflictResult:
    has_conflict: bool
    conflicting_events: List[ConflictingEvent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'has_conflict': self.has_conflict,
            'conflicting_events': [event.to_dict() for event in self.conflicting_events],
        }


def overlaps(start: datetime, end: datetime, window_start: datetime, window_end: datetime) -> bool:
    """Half-open interval overlap: touching intervals do not conflict"""
    return start < window_end and end > window_start


def sweep_overlapping(events: Sequence[ConflictingEvent], start: datetime,
                      end: datetime) -> List[ConflictingEvent]:
    """
    Sort-then-sweep filter.

    Events are ordered by start time; everything starting at or after `end`
    is cut off with a binary search, and the remainder is kept when its end
    lies after `start`.
    """
    ordered = sorted(events, key=lambda event: (event.start_time, event.end_time))
    cutoff = bisect_left([event.start_time for event in ordered], end)
    return [event for event in ordered[:cutoff] if event.end_time > start]


class ConflictDetector:
    """Read-only overlap check across a user's enabled, conflict-checked calendars"""

    def __init__(self, db: DatabaseService):
        self.db = db
        self.logger = logging.getLogger(__name__)

    async def check_conflicts(self, user_id: str, start: datetime, end: datetime,
                              exclude_calendar_ids: Optional[Sequence[str]] = None) -> ConflictResult:
        start, end = to_naive_utc(start), to_naive_utc(end)
        if end <= start:
            raise ValidationError("Conflict window end must be after its start")

        query = (
            select(SyncedEventDB, CalendarDB.name)
            .join(CalendarDB, CalendarDB.id == SyncedEventDB.calendar_id)
            .where(
                CalendarDB.user_id == user_id,
                CalendarDB.is_enabled.is_(True),
                CalendarDB.check_for_conflicts.is_(True),
                SyncedEventDB.is_busy.is_(True),
                # Coarse prefilter; the sweep applies the exact half-open test
                SyncedEventDB.start_time < end,
                SyncedEventDB.end_time > start
            )
        )
        if exclude_calendar_ids:
            query = query.where(CalendarDB.id.notin_(list(exclude_calendar_ids)))

        async with self.db.get_session() as session:
            result = await session.execute(query)
            rows = result.all()

        candidates = [
            ConflictingEvent(
                calendar_id=event.calendar_id,
                calendar_name=calendar_name,
                external_event_id=event.external_event_id,
                title=event.title or f"Busy ({calendar_name})",
                start_time=event.start_time,
                end_time=event.end_time
            )
            for event, calendar_name in rows
        ]
        conflicting = sweep_overlapping(candidates, start, end)

        self.logger.debug(f"Conflict check for user {user_id} [{start} - {end}): {len(conflicting)} overlaps")
        return ConflictResult(has_conflict=bool(conflicting), conflicting_events=conflicting)

    async def handle_check_conflicts(self, payload: CheckConflictsPayload) -> JobResult:
        """CheckConflicts job handler; stores the outcome on the referenced booking"""
        result = await self.check_conflicts(payload.user_id, payload.start, payload.end)

        if payload.booking_id:
            async with self.db.get_session() as session:
                booking = await session.get(BookingDB, payload.booking_id)
                if booking is None:
                    raise NotFoundError('Booking', payload.booking_id)
                booking.has_calendar_conflict = result.has_conflict
                booking.conflict_checked_at = utc_now()

            if result.has_conflict:
                self.logger.info(f"Booking {payload.booking_id} conflicts with "
                                 f"{len(result.conflicting_events)} calendar events")

        return JobResult.success(data=result.to_dict())
