"""
Main Scheduler for the TimeTide scheduling core
Wires the queue, worker pool and engines together and runs periodic work
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Any, List, Optional

import httpx

from timetide.core.calendar_sync import CalendarSyncEngine
from timetide.core.conflict_detector import ConflictDetector, ConflictResult
from timetide.core.database import DatabaseService
from timetide.core.errors import NotFoundError
from timetide.core.job_queue import JobQueue
from timetide.core.jobs import RefreshTokensPayload, SyncCalendarPayload, SyncUserCalendarsPayload
from timetide.core.models import CalendarDB, JobType, ProviderKind
from timetide.core.providers import CalendarProvider, build_providers
from timetide.core.recurring import RecurringConfig, RecurringSeriesService
from timetide.core.token_manager import HttpTokenExchange, OAuthTokenManager, TokenExchange
from timetide.core.webhook_delivery import WebhookDeliveryEngine
from timetide.core.worker_pool import WorkerPool


class TimetideScheduler:
    """Service facade: the enqueue surface consumed by the API layer"""

    def __init__(
        self,
        config: Dict[str, Any],
        db: Optional[DatabaseService] = None,
        token_exchanges: Optional[Dict[str, TokenExchange]] = None,
        providers: Optional[Dict[str, CalendarProvider]] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.is_running = False
        self._periodic_tasks: List[asyncio.Task] = []

        worker_config = config.get('worker', {})
        sync_config = config.get('sync', {})
        provider_config = config.get('providers', {})
        request_timeout = float(sync_config.get('request_timeout_seconds', 30))

        database_config = config.get('database', {})
        self.db = db or DatabaseService(
            database_config.get('url', 'sqlite+aiosqlite:///./data/timetide.db'),
            echo=database_config.get('echo', False)
        )

        self.job_queue = JobQueue(self.db, worker_config)
        self.worker_pool = WorkerPool(self.job_queue, worker_config)

        if token_exchanges is None:
            token_exchanges = {
                kind.value: HttpTokenExchange(kind.value, provider_config.get(kind.value, {}),
                                              timeout=request_timeout)
                for kind in ProviderKind
            }
        self.token_manager = OAuthTokenManager(self.db, token_exchanges, sync_config)
        self.providers = providers or build_providers(provider_config, timeout=request_timeout)

        self.sync_engine = CalendarSyncEngine(self.db, self.token_manager, self.providers, sync_config)
        self.conflict_detector = ConflictDetector(self.db)
        self.webhook_engine = WebhookDeliveryEngine(self.db, self.job_queue, config.get('webhooks', {}),
                                                    client=http_client)
        self.recurring_service = RecurringSeriesService(self.db, self.conflict_detector)

        self._register_handlers()
        self.logger.info("TimeTide scheduler initialized")

    def _register_handlers(self):
        pool = self.worker_pool
        pool.register_handler(JobType.SYNC_CALENDAR, self.sync_engine.handle_sync_calendar)
        pool.register_handler(JobType.SYNC_USER_CALENDARS, self.sync_engine.handle_sync_user_calendars)
        pool.register_handler(JobType.CHECK_CONFLICTS, self.conflict_detector.handle_check_conflicts)
        pool.register_handler(JobType.DELIVER_WEBHOOK, self.webhook_engine.handle_deliver)
        pool.register_handler(JobType.RETRY_DELIVERY, self.webhook_engine.handle_retry)
        pool.register_handler(JobType.TEST_WEBHOOK, self.webhook_engine.handle_test_webhook)
        pool.register_handler(JobType.REFRESH_TOKENS, self.token_manager.handle_refresh_tokens)

        pool.register_dead_letter_hook(JobType.SYNC_CALENDAR, self.sync_engine.on_sync_dead_letter)
        pool.register_dead_letter_hook(JobType.DELIVER_WEBHOOK, self.webhook_engine.on_delivery_dead_letter)
        pool.register_dead_letter_hook(JobType.RETRY_DELIVERY, self.webhook_engine.on_delivery_dead_letter)

    async def start(self):
        """Start the scheduler"""
        if self.is_running:
            return

        self.logger.info("Starting TimeTide scheduler...")

        try:
            await self.db.create_tables()
            await self.worker_pool.start()
            self.is_running = True

            sync_config = self.config.get('sync', {})
            worker_config = self.config.get('worker', {})
            webhook_config = self.config.get('webhooks', {})
            self._periodic_tasks = [
                asyncio.create_task(self._periodic(
                    'calendar sync', float(sync_config.get('periodic_interval_seconds', 3600)),
                    lambda: self.job_queue.enqueue(JobType.SYNC_USER_CALENDARS, SyncUserCalendarsPayload())
                )),
                asyncio.create_task(self._periodic(
                    'token refresh', float(sync_config.get('token_refresh_interval_seconds', 1800)),
                    lambda: self.job_queue.enqueue(JobType.REFRESH_TOKENS, RefreshTokensPayload(
                        horizon_minutes=int(sync_config.get('token_refresh_horizon_minutes', 60))
                    ))
                )),
                asyncio.create_task(self._periodic(
                    'job cleanup', float(worker_config.get('cleanup_interval_seconds', 3600)),
                    self.run_cleanup
                )),
                asyncio.create_task(self._periodic(
                    'delivery recovery', float(webhook_config.get('recovery_interval_seconds', 600)),
                    self.webhook_engine.requeue_stalled_deliveries
                )),
            ]

            self.logger.info("TimeTide scheduler started successfully")

        except Exception as e:
            self.logger.error(f"Failed to start scheduler: {e}")
            raise

    async def stop(self):
        """Stop the scheduler"""
        self.logger.info("Stopping TimeTide scheduler...")
        self.is_running = False

        for task in self._periodic_tasks:
            task.cancel()
        await asyncio.gather(*self._periodic_tasks, return_exceptions=True)
        self._periodic_tasks = []

        await self.worker_pool.stop()
        await self.db.close()
        self.logger.info("TimeTide scheduler stopped")

    async def _periodic(self, name: str, interval: float, action: Callable[[], Awaitable[Any]]):
        """Run `action` now and then every `interval` seconds"""
        while self.is_running:
            try:
                await action()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Error in periodic {name}: {e}")
            await asyncio.sleep(interval)

    async def run_cleanup(self) -> int:
        worker_config = self.config.get('worker', {})
        return await self.job_queue.cleanup_finished_jobs(
            done_retention=timedelta(hours=float(worker_config.get('done_retention_hours', 24))),
            failed_retention=timedelta(days=float(worker_config.get('failed_retention_days', 7)))
        )

    async def trigger_calendar_sync(self, calendar_id: str, force_full_sync: bool = False) -> str:
        async with self.db.get_session() as session:
            if await session.get(CalendarDB, calendar_id) is None:
                raise NotFoundError('Calendar', calendar_id)

        return await self.job_queue.enqueue(
            JobType.SYNC_CALENDAR,
            SyncCalendarPayload(calendar_id=calendar_id, force_full_sync=force_full_sync)
        )

    async def trigger_user_calendar_sync(self, user_id: str) -> List[str]:
        """One SyncCalendar job per enabled calendar of the user"""
        requests = await self.sync_engine.fan_out_requests(user_id)
        job_ids = [await self.job_queue.enqueue_request(request) for request in requests]
        self.logger.info(f"Queued sync of {len(job_ids)} calendars for user {user_id}")
        return job_ids

    async def check_calendar_conflicts(self, user_id: str, start: datetime, end: datetime) -> ConflictResult:
        return await self.conflict_detector.check_conflicts(user_id, start, end)

    async def retry_webhook_delivery(self, delivery_id: str) -> str:
        return await self.webhook_engine.retry_delivery(delivery_id)

    async def test_webhook(self, webhook_id: str) -> Dict[str, Any]:
        return await self.webhook_engine.test_webhook(webhook_id)

    async def trigger_webhooks(self, user_id: str, event_type: Any, data: Dict[str, Any]) -> List[str]:
        return await self.webhook_engine.trigger_webhooks(user_id, event_type, data)

    async def create_recurring_series(self, user_id: str, start: datetime, duration: timedelta,
                                      config: RecurringConfig) -> List[Dict[str, Any]]:
        return await self.recurring_service.create_series(user_id, start, duration, config)

    async def get_status(self) -> Dict[str, Any]:
        return {
            'is_running': self.is_running,
            'worker_id': self.worker_pool.worker_id,
            'database_healthy': await self.db.health_check(),
            'jobs': await self.job_queue.get_status(),
        }
