"""Integration tests for the worker pool retry policy."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from timetide.core.errors import AuthError, ErrorKind, RateLimitError, TransientError, ValidationError
from timetide.core.jobs import JobRequest, JobResult, SyncCalendarPayload
from timetide.core.models import JobDB, JobStatus, JobType, utc_now
from timetide.core.worker_pool import WorkerPool


async def _error_kind(db, job_id):
    async with db.get_session() as session:
        return (await session.get(JobDB, job_id)).error_kind


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_success_marks_done_and_enqueues_follow_ups(self, job_queue, worker_pool):
        async def handler(payload):
            return JobResult.success(
                data={'events': 2},
                follow_ups=[JobRequest(JobType.SYNC_CALENDAR, SyncCalendarPayload(calendar_id='cal-2'))]
            )

        worker_pool.register_handler(JobType.SYNC_CALENDAR, handler)
        job_id = await job_queue.enqueue(JobType.SYNC_CALENDAR, {'calendar_id': 'cal-1'})

        assert await worker_pool.run_once() == 1

        job = await job_queue.get_job(job_id)
        assert job.status == JobStatus.DONE
        assert job.result == {'events': 2}
        assert job.completed_at is not None
        assert (await job_queue.active_job_for('sync:cal-2')).status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_handler_receives_typed_payload(self, job_queue, worker_pool):
        handler = AsyncMock(return_value=None)
        worker_pool.register_handler(JobType.SYNC_CALENDAR, handler)

        await job_queue.enqueue(JobType.SYNC_CALENDAR, {'calendar_id': 'cal-1', 'force_full_sync': True})
        await worker_pool.run_once()

        handler.assert_awaited_once_with(SyncCalendarPayload(calendar_id='cal-1', force_full_sync=True))

    @pytest.mark.asyncio
    async def test_handler_returning_none_counts_as_success(self, job_queue, worker_pool):
        async def handler(payload):
            return None

        worker_pool.register_handler(JobType.REFRESH_TOKENS, handler)
        job_id = await job_queue.enqueue(JobType.REFRESH_TOKENS, {})
        await worker_pool.run_once()

        assert (await job_queue.get_job(job_id)).status == JobStatus.DONE

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried_with_backoff(self, db, job_queue, worker_pool):
        async def handler(payload):
            raise TransientError("provider timed out")

        worker_pool.register_handler(JobType.SYNC_CALENDAR, handler)
        job_id = await job_queue.enqueue(JobType.SYNC_CALENDAR, {'calendar_id': 'cal-1'})
        await worker_pool.run_once()

        job = await job_queue.get_job(job_id)
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 1
        assert job.last_error == "provider timed out"
        assert utc_now() + timedelta(seconds=3) < job.next_run_at <= utc_now() + timedelta(seconds=5)
        assert await _error_kind(db, job_id) == 'transient'

        # Not due again until the backoff elapses
        assert await worker_pool.run_once() == 0

    @pytest.mark.asyncio
    async def test_retry_after_extends_backoff(self, job_queue, worker_pool):
        async def handler(payload):
            raise RateLimitError("slow down", retry_after=600)

        worker_pool.register_handler(JobType.SYNC_CALENDAR, handler)
        job_id = await job_queue.enqueue(JobType.SYNC_CALENDAR, {'calendar_id': 'cal-1'})
        await worker_pool.run_once()

        assert (await job_queue.get_job(job_id)).next_run_at > utc_now() + timedelta(seconds=500)

    @pytest.mark.asyncio
    async def test_exhausted_budget_dead_letters_and_calls_hook(self, db, job_queue, worker_pool):
        hook = AsyncMock()

        async def handler(payload):
            raise TransientError("still down")

        worker_pool.register_handler(JobType.SYNC_CALENDAR, handler)
        worker_pool.register_dead_letter_hook(JobType.SYNC_CALENDAR, hook)
        job_id = await job_queue.enqueue(JobType.SYNC_CALENDAR, {'calendar_id': 'cal-1'}, max_attempts=1)
        await worker_pool.run_once()

        job = await job_queue.get_job(job_id)
        assert job.status == JobStatus.DEAD_LETTER
        assert job.attempts == 1
        assert await _error_kind(db, job_id) == 'exhaustion'
        hook.assert_awaited_once()
        dead_job, error = hook.await_args.args
        assert (dead_job.id, error) == (job_id, "still down")

    @pytest.mark.asyncio
    async def test_auth_failure_dead_letters_without_consuming_attempts(self, db, job_queue, worker_pool):
        async def handler(payload):
            raise AuthError("invalid_grant")

        worker_pool.register_handler(JobType.SYNC_CALENDAR, handler)
        job_id = await job_queue.enqueue(JobType.SYNC_CALENDAR, {'calendar_id': 'cal-1'})
        await worker_pool.run_once()

        job = await job_queue.get_job(job_id)
        assert job.status == JobStatus.DEAD_LETTER
        assert job.attempts == 0
        assert await _error_kind(db, job_id) == 'auth'

    @pytest.mark.asyncio
    async def test_validation_failure_fails_immediately(self, db, job_queue, worker_pool):
        async def handler(payload):
            raise ValidationError("calendar vanished")

        worker_pool.register_handler(JobType.SYNC_CALENDAR, handler)
        job_id = await job_queue.enqueue(JobType.SYNC_CALENDAR, {'calendar_id': 'cal-1'})
        await worker_pool.run_once()

        job = await job_queue.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 0
        assert await _error_kind(db, job_id) == 'validation'

    @pytest.mark.asyncio
    async def test_failure_result_is_honored_like_an_exception(self, job_queue, worker_pool):
        async def handler(payload):
            return JobResult.failure(ErrorKind.VALIDATION, "bad window")

        worker_pool.register_handler(JobType.SYNC_CALENDAR, handler)
        job_id = await job_queue.enqueue(JobType.SYNC_CALENDAR, {'calendar_id': 'cal-1'})
        await worker_pool.run_once()

        assert (await job_queue.get_job(job_id)).status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_unclassified_exception_is_transient(self, job_queue, worker_pool):
        async def handler(payload):
            raise RuntimeError("boom")

        worker_pool.register_handler(JobType.SYNC_CALENDAR, handler)
        job_id = await job_queue.enqueue(JobType.SYNC_CALENDAR, {'calendar_id': 'cal-1'})
        await worker_pool.run_once()

        job = await job_queue.get_job(job_id)
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 1

    @pytest.mark.asyncio
    async def test_missing_handler_fails_the_job(self, job_queue, worker_pool):
        job_id = await job_queue.enqueue(JobType.TEST_WEBHOOK, {'webhook_id': 'w1'})
        await worker_pool.run_once()

        job = await job_queue.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert 'No handler' in job.last_error

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_break_the_pool(self, job_queue, worker_pool):
        async def handler(payload):
            raise AuthError("revoked")

        async def hook(job, error):
            raise RuntimeError("hook exploded")

        worker_pool.register_handler(JobType.SYNC_CALENDAR, handler)
        worker_pool.register_dead_letter_hook(JobType.SYNC_CALENDAR, hook)
        job_id = await job_queue.enqueue(JobType.SYNC_CALENDAR, {'calendar_id': 'cal-1'})
        await worker_pool.run_once()

        assert (await job_queue.get_job(job_id)).status == JobStatus.DEAD_LETTER


class TestTimeoutsAndLeases:
    @pytest.mark.asyncio
    async def test_handler_timeout_is_transient(self, job_queue, test_config):
        pool = WorkerPool(job_queue, {**test_config['worker'], 'handler_timeout_seconds': 0.05},
                          worker_id='slow-worker')

        async def handler(payload):
            await asyncio.sleep(1)

        pool.register_handler(JobType.SYNC_CALENDAR, handler)
        job_id = await job_queue.enqueue(JobType.SYNC_CALENDAR, {'calendar_id': 'cal-1'})
        await pool.run_once()

        job = await job_queue.get_job(job_id)
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 1
        assert 'timed out' in job.last_error

    @pytest.mark.asyncio
    async def test_lease_expiries_can_exhaust_the_budget(self, job_queue, worker_pool):
        calls = []

        async def handler(payload):
            calls.append(payload)

        worker_pool.register_handler(JobType.SYNC_CALENDAR, handler)
        job_id = await job_queue.enqueue(JobType.SYNC_CALENDAR, {'calendar_id': 'cal-1'}, max_attempts=1)
        await job_queue.claim_due_jobs('crashed-worker', 10, lease_seconds=-1)

        await worker_pool.run_once()

        job = await job_queue.get_job(job_id)
        assert job.status == JobStatus.DEAD_LETTER
        assert job.attempts == 1
        assert calls == []

    @pytest.mark.asyncio
    async def test_run_until_idle_drains_follow_up_chains(self, job_queue, worker_pool):
        async def fan_out(payload):
            return JobResult.success(follow_ups=[
                JobRequest(JobType.SYNC_CALENDAR, SyncCalendarPayload(calendar_id=f'cal-{index}'))
                for index in range(3)
            ])

        async def sync(payload):
            return JobResult.success()

        worker_pool.register_handler(JobType.SYNC_USER_CALENDARS, fan_out)
        worker_pool.register_handler(JobType.SYNC_CALENDAR, sync)
        await job_queue.enqueue(JobType.SYNC_USER_CALENDARS, {'user_id': 'user-1'})

        assert await worker_pool.run_until_idle() == 4
        assert (await job_queue.get_status())['status_counts']['done'] == 4


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_background_loop_processes_jobs(self, job_queue, worker_pool):
        done = asyncio.Event()

        async def handler(payload):
            done.set()

        worker_pool.register_handler(JobType.SYNC_CALENDAR, handler)
        job_id = await job_queue.enqueue(JobType.SYNC_CALENDAR, {'calendar_id': 'cal-1'})

        await worker_pool.start()
        try:
            await asyncio.wait_for(done.wait(), timeout=2)
            for _ in range(100):
                if (await job_queue.get_job(job_id)).status == JobStatus.DONE:
                    break
                await asyncio.sleep(0.01)
        finally:
            await worker_pool.stop()

        assert (await job_queue.get_job(job_id)).status == JobStatus.DONE

    @pytest.mark.asyncio
    async def test_stop_returns_unfinished_jobs_to_the_queue(self, job_queue, worker_pool):
        started = asyncio.Event()

        async def handler(payload):
            started.set()
            await asyncio.sleep(30)

        worker_pool.register_handler(JobType.SYNC_CALENDAR, handler)
        job_id = await job_queue.enqueue(JobType.SYNC_CALENDAR, {'calendar_id': 'cal-1'})

        await worker_pool.start()
        await asyncio.wait_for(started.wait(), timeout=2)
        await worker_pool.stop()

        job = await job_queue.get_job(job_id)
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 0
        assert job.lease_owner is None
