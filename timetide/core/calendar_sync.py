"""
Calendar Sync Engine for the TimeTide scheduling core
Per-calendar state machine: Pending -> Syncing -> Synced | Error | Disconnected
"""

import logging
from datetime import timedelta
from typing import Dict, Any, List, Optional

from sqlalchemy import select, delete

from timetide.core.database import DatabaseService
from timetide.core.errors import (
    ErrorKind, NotFoundError, SyncTokenExpiredError, classify_exception, retry_after_of
)
from timetide.core.jobs import (
    CheckConflictsPayload, JobRequest, JobResult, SyncCalendarPayload, SyncUserCalendarsPayload,
    parse_payload
)
from timetide.core.models import (
    BookingDB, BookingStatus, CalendarDB, Job, JobType, SyncedEventDB, SyncStatus, utc_now
)
from timetide.core.providers import CalendarProvider, EventPage, ProviderEvent
from timetide.core.token_manager import OAuthTokenManager


class CalendarSyncEngine:
    """Pulls provider events into synced_events and drives each calendar's sync status"""

    def __init__(self, db: DatabaseService, token_manager: OAuthTokenManager,
                 providers: Dict[str, CalendarProvider], config: Optional[Dict[str, Any]] = None):
        self.db = db
        self.token_manager = token_manager
        self.providers = providers
        self.config = config or {}
        self.window_past = timedelta(hours=float(self.config.get('window_past_hours', 1)))
        self.window_ahead = timedelta(days=float(self.config.get('window_days_ahead', 60)))
        self.logger = logging.getLogger(__name__)

    async def handle_sync_calendar(self, payload: SyncCalendarPayload) -> JobResult:
        """SyncCalendar job handler"""
        return await self.sync_calendar(payload.calendar_id, payload.force_full_sync)

    async def handle_sync_user_calendars(self, payload: SyncUserCalendarsPayload) -> JobResult:
        """SyncUserCalendars job handler: fans out one SyncCalendar job per calendar"""
        requests = await self.fan_out_requests(payload.user_id)
        return JobResult.success(data={'calendars': len(requests)}, follow_ups=requests)

    async def fan_out_requests(self, user_id: Optional[str]) -> List[JobRequest]:
        """SyncCalendar requests for every enabled, connected calendar (of one user, or all)"""
        query = select(CalendarDB.id).where(
            CalendarDB.is_enabled.is_(True),
            CalendarDB.sync_status != SyncStatus.DISCONNECTED.value
        )
        if user_id:
            query = query.where(CalendarDB.user_id == user_id)

        async with self.db.get_session() as session:
            result = await session.execute(query)
            calendar_ids = [row[0] for row in result.all()]

        return [
            JobRequest(JobType.SYNC_CALENDAR, SyncCalendarPayload(calendar_id=calendar_id))
            for calendar_id in calendar_ids
        ]

    async def sync_calendar(self, calendar_id: str, force_full_sync: bool = False) -> JobResult:
        """
        Run one sync pass for a calendar.

        Failures are classified rather than raised: auth failures disconnect
        the calendar, transient ones leave it in Error for the job's retry,
        validation failures restore the status it had before the pass.
        """
        async with self.db.get_session() as session:
            calendar = await session.get(CalendarDB, calendar_id)
            if calendar is None:
                raise NotFoundError('Calendar', calendar_id)

            if not calendar.is_enabled:
                self.logger.info(f"Skipping sync of disabled calendar {calendar_id}")
                return JobResult.success(data={'skipped': 'disabled'})
            if calendar.sync_status == SyncStatus.DISCONNECTED.value:
                self.logger.info(f"Skipping sync of disconnected calendar {calendar_id}")
                return JobResult.success(data={'skipped': 'disconnected'})

            prior_status = calendar.sync_status
            calendar.sync_status = SyncStatus.SYNCING.value

        full_sync = force_full_sync or not calendar.sync_token or calendar.last_synced_at is None
        self.logger.info(f"Syncing calendar {calendar.name} ({calendar_id}) "
                         f"[{'full' if full_sync else 'incremental'}]")

        try:
            access_token = await self.token_manager.ensure_valid_token(calendar)
            page, full_sync = await self._pull(calendar, access_token, full_sync)
        except Exception as e:
            return await self._record_failure(calendar_id, prior_status, e)

        return await self._apply(calendar_id, prior_status, page, full_sync)

    async def _pull(self, calendar: CalendarDB, access_token: str, full_sync: bool):
        provider = self.providers.get(calendar.provider)
        if provider is None:
            raise NotFoundError('Calendar provider', calendar.provider)

        now = utc_now()
        since, until = now - self.window_past, now + self.window_ahead

        if not full_sync:
            try:
                page = await provider.list_events(calendar, access_token, since, until,
                                                  sync_token=calendar.sync_token)
                return page, False
            except SyncTokenExpiredError:
                self.logger.warning(f"Sync token expired for calendar {calendar.id}; falling back to full pull")

        page = await provider.list_events(calendar, access_token, since, until)
        return page, True

    async def _apply(self, calendar_id: str, prior_status: str, page: EventPage, full_sync: bool) -> JobResult:
        async with self.db.get_session() as session:
            # Re-read: the calendar may have been disabled or removed while we were pulling
            calendar = await session.get(CalendarDB, calendar_id, populate_existing=True)
            if calendar is None:
                self.logger.info(f"Calendar {calendar_id} deleted during sync; results discarded")
                return JobResult.success(data={'discarded': 'deleted'})
            if not calendar.is_enabled or calendar.sync_status == SyncStatus.DISCONNECTED.value:
                if calendar.sync_status == SyncStatus.SYNCING.value:
                    calendar.sync_status = prior_status
                self.logger.info(f"Calendar {calendar_id} disabled during sync; results discarded")
                return JobResult.success(data={'discarded': 'disabled'})

            if full_sync:
                stored, removed = await self._replace_events(session, calendar_id, page.events)
            else:
                stored, removed = await self._merge_events(session, calendar_id, page)

            calendar.sync_token = page.next_sync_token
            calendar.last_synced_at = utc_now()
            calendar.last_sync_error = None
            calendar.sync_status = SyncStatus.SYNCED.value
            user_id = calendar.user_id
            name = calendar.name

        follow_ups = await self._conflict_follow_ups(user_id)
        self.logger.info(f"Calendar {name} synced: {stored} events stored, {removed} removed, "
                         f"{len(follow_ups)} bookings to re-check")

        return JobResult.success(
            data={'full_sync': full_sync, 'events': stored, 'removed': removed},
            follow_ups=follow_ups
        )

    async def _replace_events(self, session, calendar_id: str, events: List[ProviderEvent]):
        result = await session.execute(delete(SyncedEventDB).where(SyncedEventDB.calendar_id == calendar_id))
        # Providers can repeat an id across pages
        unique = {event.external_id: event for event in events}
        for event in unique.values():
            session.add(self._to_row(calendar_id, event))
        return len(unique), result.rowcount or 0

    async def _merge_events(self, session, calendar_id: str, page: EventPage):
        removed = 0
        if page.deleted_ids:
            result = await session.execute(
                delete(SyncedEventDB).where(
                    SyncedEventDB.calendar_id == calendar_id,
                    SyncedEventDB.external_event_id.in_(page.deleted_ids)
                )
            )
            removed = result.rowcount or 0

        unique = {event.external_id: event for event in page.events}
        if not unique:
            return 0, removed

        result = await session.execute(
            select(SyncedEventDB).where(
                SyncedEventDB.calendar_id == calendar_id,
                SyncedEventDB.external_event_id.in_(list(unique))
            )
        )
        existing = {row.external_event_id: row for row in result.scalars().all()}

        for external_id, event in unique.items():
            row = existing.get(external_id)
            if row is None:
                session.add(self._to_row(calendar_id, event))
            else:
                row.title = event.title
                row.start_time = event.start_time
                row.end_time = event.end_time
                row.is_all_day = event.is_all_day
                row.is_busy = event.is_busy
        return len(unique), removed

    @staticmethod
    def _to_row(calendar_id: str, event: ProviderEvent) -> SyncedEventDB:
        return SyncedEventDB(
            calendar_id=calendar_id,
            external_event_id=event.external_id,
            title=event.title,
            start_time=event.start_time,
            end_time=event.end_time,
            is_all_day=event.is_all_day,
            is_busy=event.is_busy
        )

    async def _conflict_follow_ups(self, user_id: str) -> List[JobRequest]:
        now = utc_now()
        async with self.db.get_session() as session:
            result = await session.execute(
                select(BookingDB).where(
                    BookingDB.user_id == user_id,
                    BookingDB.start_time >= now,
                    BookingDB.start_time <= now + self.window_ahead,
                    BookingDB.status.in_((BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value))
                )
            )
            bookings = result.scalars().all()

        return [
            JobRequest(JobType.CHECK_CONFLICTS, CheckConflictsPayload(
                user_id=user_id, start=booking.start_time, end=booking.end_time, booking_id=booking.id
            ))
            for booking in bookings
            if booking.end_time > booking.start_time
        ]

    async def _record_failure(self, calendar_id: str, prior_status: str, error: Exception) -> JobResult:
        kind = classify_exception(error)
        message = str(error) or type(error).__name__

        if kind == ErrorKind.AUTH:
            new_status = SyncStatus.DISCONNECTED.value
            self.logger.error(f"Calendar {calendar_id} disconnected: {message}")
        elif kind == ErrorKind.VALIDATION:
            new_status = prior_status
            self.logger.error(f"Sync of calendar {calendar_id} rejected: {message}")
        else:
            new_status = SyncStatus.ERROR.value
            self.logger.warning(f"Sync of calendar {calendar_id} failed, will retry: {message}")

        async with self.db.get_session() as session:
            calendar = await session.get(CalendarDB, calendar_id)
            if calendar is not None:
                calendar.sync_status = new_status
                if kind != ErrorKind.VALIDATION:
                    calendar.last_sync_error = message

        return JobResult.failure(kind, message, retry_after=retry_after_of(error))

    async def on_sync_dead_letter(self, job: Job, error: str):
        """Surface an exhausted sync on the calendar; disconnected calendars keep their state"""
        payload = parse_payload(job.job_type, job.payload)
        async with self.db.get_session() as session:
            calendar = await session.get(CalendarDB, payload.calendar_id)
            if calendar is None or calendar.sync_status == SyncStatus.DISCONNECTED.value:
                return
            calendar.sync_status = SyncStatus.ERROR.value
            calendar.last_sync_error = f"Sync failed after {job.max_attempts} attempts: {error}"
        self.logger.error(f"Calendar {payload.calendar_id} sync dead-lettered: {error}")
