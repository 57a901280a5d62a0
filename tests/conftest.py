"""
Pytest configuration and fixtures for TimeTide tests
"""

from datetime import datetime, timedelta, timezone

import pytest

from timetide.config.config_loader import default_config
from timetide.core.database import DatabaseService
from timetide.core.job_queue import JobQueue
from timetide.core.models import (
    BookingDB, BookingStatus, CalendarCredentialDB, CalendarDB, SyncedEventDB, SyncStatus,
    WebhookDB
)
from timetide.core.worker_pool import WorkerPool


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@pytest.fixture
def test_config():
    """Defaults tuned for deterministic tests"""
    config = default_config()
    config['database']['url'] = 'sqlite+aiosqlite://'
    config['worker'].update({
        'concurrency': 1,
        'poll_interval_seconds': 0.01,
        'backoff_jitter_ratio': 0,
        'backoff_base_seconds': 5,
        'handler_timeout_seconds': 5,
        'shutdown_grace_seconds': 0.5,
    })
    config['webhooks'].update({'max_attempts': 3, 'auto_disable_threshold': 10, 'stall_grace_seconds': 0})
    return config


@pytest.fixture
async def db():
    """Fresh in-memory database per test"""
    service = DatabaseService('sqlite+aiosqlite://')
    await service.create_tables()
    yield service
    await service.close()


@pytest.fixture
def job_queue(db, test_config):
    return JobQueue(db, test_config['worker'])


@pytest.fixture
def worker_pool(job_queue, test_config):
    return WorkerPool(job_queue, test_config['worker'], worker_id='test-worker')


@pytest.fixture
def make_calendar(db):
    """Insert a calendar with its credential"""

    async def factory(user_id='user-1', name='Work', provider='google', expires_in=timedelta(hours=1),
                      refresh_token='refresh-1', credential_id=None, **overrides):
        async with db.get_session() as session:
            if credential_id is None:
                credential = CalendarCredentialDB(
                    provider=provider,
                    access_token='access-1',
                    refresh_token=refresh_token,
                    expires_at=_utc_now() + expires_in if expires_in is not None else None,
                )
                session.add(credential)
                await session.flush()
                credential_id = credential.id

            calendar = CalendarDB(
                user_id=user_id,
                credential_id=credential_id,
                provider=provider,
                external_id=overrides.pop('external_id', f'{name.lower()}@example.com'),
                name=name,
                sync_status=overrides.pop('sync_status', SyncStatus.PENDING.value),
                **overrides
            )
            session.add(calendar)
            await session.flush()
            return calendar

    return factory


@pytest.fixture
def add_event(db):
    async def factory(calendar_id, start, end, title='Meeting', external_id=None, is_busy=True):
        async with db.get_session() as session:
            event = SyncedEventDB(
                calendar_id=calendar_id,
                external_event_id=external_id or f'evt-{start.isoformat()}',
                title=title,
                start_time=start,
                end_time=end,
                is_busy=is_busy,
            )
            session.add(event)
            return event

    return factory


@pytest.fixture
def add_booking(db):
    async def factory(user_id, start, end, status=BookingStatus.CONFIRMED.value):
        async with db.get_session() as session:
            booking = BookingDB(user_id=user_id, start_time=start, end_time=end, status=status)
            session.add(booking)
            await session.flush()
            return booking

    return factory


@pytest.fixture
def add_webhook(db):
    async def factory(user_id='user-1', url='https://hooks.example.com/timetide', secret='s3cret',
                      triggers=('booking.created',), **overrides):
        async with db.get_session() as session:
            webhook = WebhookDB(user_id=user_id, url=url, secret=secret,
                                event_triggers=list(triggers), **overrides)
            session.add(webhook)
            await session.flush()
            return webhook

    return factory
