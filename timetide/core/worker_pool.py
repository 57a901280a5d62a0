"""
Worker Pool for the TimeTide scheduling core
Claims due jobs under a lease, runs typed handlers and applies retry policy
"""

import asyncio
import logging
import os
import random
import socket
import uuid
from typing import Awaitable, Callable, Dict, Any, List, Optional

from timetide.core.errors import (
    ErrorKind, TimetideError, ValidationError, classify_exception, retry_after_of
)
from timetide.core.job_queue import JobQueue
from timetide.core.jobs import JobPayload, JobResult, parse_payload
from timetide.core.models import Job, JobStatus, JobType

JobHandler = Callable[[JobPayload], Awaitable[Optional[JobResult]]]
DeadLetterHook = Callable[[Job, str], Awaitable[None]]


class WorkerPool:
    """
    Explicit worker pool with a start/stop lifecycle.

    One instance per process. Handlers never raise past the pool: whatever
    escapes a handler is classified and turned into a JobResult, which then
    decides the job's next status.
    """

    def __init__(self, job_queue: JobQueue, config: Optional[Dict[str, Any]] = None,
                 worker_id: Optional[str] = None):
        self.job_queue = job_queue
        self.config = config or {}
        self.logger = logging.getLogger(__name__)

        self.concurrency = max(1, int(self.config.get('concurrency', 5)))
        self.poll_interval = float(self.config.get('poll_interval_seconds', 1.0))
        self.lease_seconds = float(self.config.get('lease_seconds', 120))
        self.handler_timeout = float(self.config.get('handler_timeout_seconds', 60))
        self.backoff_base = float(self.config.get('backoff_base_seconds', 5))
        self.backoff_max = float(self.config.get('backoff_max_seconds', 3600))
        self.jitter_ratio = float(self.config.get('backoff_jitter_ratio', 0.2))
        self.shutdown_grace = float(self.config.get('shutdown_grace_seconds', 10))

        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

        self._handlers: Dict[JobType, JobHandler] = {}
        self._dead_letter_hooks: Dict[JobType, List[DeadLetterHook]] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}

        self.is_running = False
        self.worker_task = None

    def register_handler(self, job_type: JobType, handler: JobHandler):
        self._handlers[job_type] = handler
        self.logger.debug(f"Registered handler for {job_type.value}")

    def register_dead_letter_hook(self, job_type: JobType, hook: DeadLetterHook):
        """Hook called when a job of this type is dead-lettered; surfaces the failure on its entity"""
        self._dead_letter_hooks.setdefault(job_type, []).append(hook)

    def compute_backoff(self, attempts: int, retry_after: Optional[float] = None) -> float:
        """Exponential backoff with jitter, capped, never shorter than a provider-requested wait"""
        delay = self.backoff_base * (2 ** max(0, attempts - 1))
        jitter = delay * self.jitter_ratio
        delay = min(self.backoff_max, max(0.0, delay + random.uniform(-jitter, jitter)))
        if retry_after:
            delay = max(delay, float(retry_after))
        return delay

    async def start(self):
        """Start the claim loop"""
        if self.is_running:
            return

        self.is_running = True
        self.worker_task = asyncio.create_task(self._worker_loop())
        self.logger.info(f"✅ Worker pool {self.worker_id} started (concurrency={self.concurrency})")

    async def stop(self):
        """Stop claiming, let in-flight jobs finish, then cancel stragglers"""
        self.is_running = False

        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except asyncio.CancelledError:
                pass
            self.worker_task = None

        in_flight = list(self._in_flight.values())
        if in_flight:
            _, pending = await asyncio.wait(in_flight, timeout=self.shutdown_grace)
            for task in pending:
                task.cancel()
            # Cancelled jobs release themselves back to the queue
            await asyncio.gather(*pending, return_exceptions=True)

        self.logger.info(f"🔒 Worker pool {self.worker_id} stopped")

    async def _worker_loop(self):
        while self.is_running:
            try:
                capacity = self.concurrency - len(self._in_flight)
                if capacity > 0:
                    for job in await self.job_queue.claim_due_jobs(self.worker_id, capacity, self.lease_seconds):
                        self._spawn(job)
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"❌ Error in worker loop: {e}")
                await asyncio.sleep(self.poll_interval * 5)

    def _spawn(self, job: Job):
        task = asyncio.create_task(self.process_job(job))
        self._in_flight[job.id] = task
        task.add_done_callback(lambda _, job_id=job.id: self._in_flight.pop(job_id, None))

    async def run_once(self) -> int:
        """Claim and execute one batch of due jobs; returns how many ran"""
        jobs = await self.job_queue.claim_due_jobs(self.worker_id, self.concurrency, self.lease_seconds)
        if jobs:
            await asyncio.gather(*(self.process_job(job) for job in jobs))
        return len(jobs)

    async def run_until_idle(self, max_batches: int = 100) -> int:
        """Run batches until nothing is due"""
        total = 0
        for _ in range(max_batches):
            processed = await self.run_once()
            if not processed:
                break
            total += processed
        return total

    async def process_job(self, job: Job) -> JobResult:
        """Execute one claimed job and record its outcome"""
        if job.attempts >= job.max_attempts:
            # Lease expiries consumed the whole budget
            result = JobResult.failure(ErrorKind.EXHAUSTION, job.last_error or "Retry budget exhausted")
            await self._dead_letter(job, job.attempts, result)
            return result

        self.logger.info(f"⚡ Running {job.job_type.value} job {job.id} (attempt {job.attempts + 1}/{job.max_attempts})")

        try:
            result = await self._execute(job)
        except asyncio.CancelledError:
            await self.job_queue.release(job, self.worker_id)
            self.logger.warning(f"Job {job.id} cancelled; returned to queue")
            raise

        await self._record_outcome(job, result)
        return result

    async def _execute(self, job: Job) -> JobResult:
        try:
            payload = parse_payload(job.job_type, job.payload)
            handler = self._handlers.get(job.job_type)
            if handler is None:
                raise ValidationError(f"No handler registered for {job.job_type.value}")

            result = await asyncio.wait_for(handler(payload), timeout=self.handler_timeout)
            return result if result is not None else JobResult.success()

        except asyncio.TimeoutError:
            return JobResult.failure(ErrorKind.TRANSIENT, f"Handler timed out after {self.handler_timeout:.0f}s")
        except Exception as e:
            return JobResult.failure(
                classify_exception(e),
                str(e) or type(e).__name__,
                retry_after=retry_after_of(e)
            )

    async def _record_outcome(self, job: Job, result: JobResult):
        if result.ok:
            if await self.job_queue.complete(job, self.worker_id, result.data):
                self.logger.info(f"✅ Job done: {job.job_type.value} ({job.id})")
                await self._enqueue_follow_ups(job, result)
            return

        kind = result.error_kind or ErrorKind.TRANSIENT
        message = result.message or "Handler failed"

        if kind == ErrorKind.VALIDATION:
            self.logger.error(f"❌ Job {job.job_type.value} ({job.id}) failed validation: {message}")
            await self.job_queue.fail(job, self.worker_id, JobStatus.FAILED, job.attempts,
                                      message, kind.value, result.data)
            return

        if kind == ErrorKind.AUTH:
            self.logger.error(f"❌ Job {job.job_type.value} ({job.id}) failed authorization: {message}")
            await self._dead_letter(job, job.attempts, result)
            return

        attempts = job.attempts + 1
        if kind == ErrorKind.TRANSIENT and attempts < job.max_attempts:
            delay = self.compute_backoff(attempts, result.retry_after)
            if await self.job_queue.reschedule(job, self.worker_id, attempts, delay, message, kind.value):
                self.logger.warning(
                    f"🔄 Retry scheduled for {job.job_type.value} ({job.id}) in {delay:.1f}s "
                    f"[{attempts}/{job.max_attempts}]: {message}"
                )
            return

        exhausted = JobResult.failure(ErrorKind.EXHAUSTION, message, data=result.data)
        await self._dead_letter(job, attempts, exhausted)

    async def _dead_letter(self, job: Job, attempts: int, result: JobResult):
        message = result.message or "Handler failed"
        kind = result.error_kind or ErrorKind.EXHAUSTION
        recorded = await self.job_queue.fail(job, self.worker_id, JobStatus.DEAD_LETTER, attempts,
                                             message, kind.value, result.data)
        if not recorded:
            return

        self.logger.error(f"💀 Job dead-lettered: {job.job_type.value} ({job.id}) [{kind.value}]: {message}")
        for hook in self._dead_letter_hooks.get(job.job_type, []):
            try:
                await hook(job, message)
            except Exception as e:
                self.logger.error(f"Dead-letter hook failed for job {job.id}: {e}")

    async def _enqueue_follow_ups(self, job: Job, result: JobResult):
        for request in result.follow_ups:
            try:
                await self.job_queue.enqueue_request(request)
            except TimetideError as e:
                self.logger.error(f"Failed to enqueue follow-up {request.job_type.value} of job {job.id}: {e}")
