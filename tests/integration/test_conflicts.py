"""Integration tests for conflict detection against synced events."""

from datetime import timedelta, timezone

import pytest

from timetide.core.conflict_detector import ConflictDetector
from timetide.core.errors import NotFoundError, ValidationError
from timetide.core.jobs import CheckConflictsPayload
from timetide.core.models import BookingDB, utc_now

T1 = (utc_now() + timedelta(days=2)).replace(hour=14, minute=0, second=0, microsecond=0)
T2 = T1 + timedelta(hours=1)


@pytest.fixture
def detector(db):
    return ConflictDetector(db)


class TestCheckConflicts:
    @pytest.mark.asyncio
    async def test_event_straddling_window_start_conflicts(self, detector, make_calendar, add_event):
        calendar = await make_calendar(name='Work')
        await add_event(calendar.id, T1 - timedelta(minutes=30), T1 + timedelta(minutes=30),
                        title='Planning', external_id='evt-planning')

        result = await detector.check_conflicts('user-1', T1, T2)

        assert result.has_conflict
        [event] = result.conflicting_events
        assert event.calendar_id == calendar.id
        assert event.external_event_id == 'evt-planning'
        assert event.title == 'Planning'
        assert event.start_time == T1 - timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_touching_events_do_not_conflict(self, detector, make_calendar, add_event):
        calendar = await make_calendar()
        await add_event(calendar.id, T1 - timedelta(hours=1), T1, external_id='before')
        await add_event(calendar.id, T2, T2 + timedelta(hours=1), external_id='after')

        assert not (await detector.check_conflicts('user-1', T1, T2)).has_conflict

    @pytest.mark.asyncio
    async def test_ignored_sources(self, detector, make_calendar, add_event):
        disabled = await make_calendar(name='Disabled', is_enabled=False)
        unchecked = await make_calendar(name='Unchecked', check_for_conflicts=False)
        busy_free = await make_calendar(name='Tentative')
        other_user = await make_calendar(user_id='user-2', name='Other')
        for calendar in (disabled, unchecked, other_user):
            await add_event(calendar.id, T1, T2)
        await add_event(busy_free.id, T1, T2, is_busy=False)

        assert (await detector.check_conflicts('user-1', T1, T2)).conflicting_events == []

    @pytest.mark.asyncio
    async def test_results_span_calendars_in_start_order(self, detector, make_calendar, add_event):
        work = await make_calendar(name='Work')
        family = await make_calendar(name='Family')
        await add_event(family.id, T1 + timedelta(minutes=20), T1 + timedelta(minutes=40), title=None)
        await add_event(work.id, T1 - timedelta(minutes=10), T1 + timedelta(minutes=10), title='Sync')

        result = await detector.check_conflicts('user-1', T1, T2)

        assert [event.title for event in result.conflicting_events] == ['Sync', 'Busy (Family)']

    @pytest.mark.asyncio
    async def test_excluded_calendars(self, detector, make_calendar, add_event):
        calendar = await make_calendar()
        await add_event(calendar.id, T1, T2)

        result = await detector.check_conflicts('user-1', T1, T2, exclude_calendar_ids=[calendar.id])

        assert not result.has_conflict

    @pytest.mark.asyncio
    async def test_inverted_window_is_rejected(self, detector):
        with pytest.raises(ValidationError):
            await detector.check_conflicts('user-1', T2, T1)
        with pytest.raises(ValidationError):
            await detector.check_conflicts('user-1', T1, T1)

    @pytest.mark.asyncio
    async def test_timezone_aware_window_is_compared_in_utc(self, detector, make_calendar, add_event):
        calendar = await make_calendar()
        await add_event(calendar.id, T1, T1 + timedelta(minutes=30))
        berlin = timezone(timedelta(hours=2))

        # 15:45+02:00 is 13:45 UTC, fifteen minutes before the stored event
        start = (T1 - timedelta(minutes=15)).replace(tzinfo=timezone.utc).astimezone(berlin)
        result = await detector.check_conflicts('user-1', start, start + timedelta(minutes=30))

        assert result.has_conflict
        assert result.conflicting_events[0].start_time == T1

        later = (T1 + timedelta(minutes=30)).replace(tzinfo=timezone.utc)
        assert not (await detector.check_conflicts('user-1', later, later + timedelta(hours=1))).has_conflict


class TestCheckConflictsJob:
    @pytest.mark.asyncio
    async def test_flags_booking(self, db, detector, make_calendar, add_event, add_booking):
        calendar = await make_calendar()
        await add_event(calendar.id, T1, T2)
        booking = await add_booking('user-1', T1, T2)

        result = await detector.handle_check_conflicts(
            CheckConflictsPayload(user_id='user-1', start=T1, end=T2, booking_id=booking.id)
        )

        assert result.ok and result.data['has_conflict'] is True
        async with db.get_session() as session:
            stored = await session.get(BookingDB, booking.id)
            assert stored.has_calendar_conflict is True
            assert stored.conflict_checked_at is not None

    @pytest.mark.asyncio
    async def test_clears_flag_when_conflict_disappears(self, db, detector, add_booking):
        booking = await add_booking('user-1', T1, T2)
        async with db.get_session() as session:
            (await session.get(BookingDB, booking.id)).has_calendar_conflict = True

        await detector.handle_check_conflicts(
            CheckConflictsPayload(user_id='user-1', start=T1, end=T2, booking_id=booking.id)
        )

        async with db.get_session() as session:
            assert (await session.get(BookingDB, booking.id)).has_calendar_conflict is False

    @pytest.mark.asyncio
    async def test_unknown_booking(self, detector):
        with pytest.raises(NotFoundError):
            await detector.handle_check_conflicts(
                CheckConflictsPayload(user_id='user-1', start=T1, end=T2, booking_id='missing')
            )
