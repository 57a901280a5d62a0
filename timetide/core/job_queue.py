"""
Durable Job Queue for the TimeTide scheduling core
Typed enqueue with dedup, lease-based claiming and retention cleanup
"""

import asyncio
import logging
from datetime import timedelta
from typing import Dict, Any, List, Optional

from sqlalchemy import select, update, delete, func, or_, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from timetide.core.database import DatabaseService
from timetide.core.errors import JobEnqueueError
from timetide.core.jobs import JobPayload, JobRequest, parse_job_type, parse_payload
from timetide.core.models import (
    ACTIVE_JOB_STATUSES, Job, JobDB, JobStatus, JobType, utc_now
)


class JobQueue:
    """Database-backed job queue (the dispatcher side of the worker pool)"""

    def __init__(self, db: DatabaseService, config: Optional[Dict[str, Any]] = None):
        self.db = db
        self.config = config or {}
        self.default_max_attempts = int(self.config.get('max_attempts', 3))
        self.logger = logging.getLogger(__name__)
        self._enqueue_lock = asyncio.Lock()

    async def enqueue(
        self,
        job_type: Any,
        payload: Any,
        dedup_key: Optional[str] = None,
        delay_seconds: float = 0.0,
        expedite: bool = False,
        max_attempts: Optional[int] = None
    ) -> str:
        """
        Persist a job and return its id.

        If an active (queued/running) job already holds the dedup key, nothing
        is written and the existing job's id is returned. With expedite=True a
        still-queued duplicate is pulled forward to run immediately.

        Raises:
            ValidationError: unknown job type or malformed payload
            JobEnqueueError: the store refused the write
        """
        job_type = parse_job_type(job_type)
        typed_payload: JobPayload = parse_payload(job_type, payload)
        key = dedup_key or typed_payload.dedup_key()

        job = Job(
            job_type=job_type,
            payload=typed_payload.model_dump(mode='json'),
            max_attempts=max_attempts or self.default_max_attempts,
            next_run_at=utc_now() + timedelta(seconds=max(0.0, delay_seconds)),
            dedup_key=key
        )

        async with self._enqueue_lock:
            try:
                async with self.db.get_session() as session:
                    if key:
                        existing = await self._find_active(session, key)
                        if existing:
                            self._maybe_expedite(existing, expedite)
                            self.logger.debug(f"Dedup hit for {key}: reusing job {existing.id}")
                            return existing.id

                    session.add(job.to_db_model())
            except IntegrityError:
                # Another process inserted the same dedup key between our check and insert
                existing_id = await self._existing_id_for(key, expedite)
                if existing_id:
                    return existing_id
                raise JobEnqueueError(f"Failed to enqueue {job_type.value}: dedup conflict on {key}")
            except SQLAlchemyError as e:
                self.logger.error(f"Failed to persist {job_type.value} job: {e}")
                raise JobEnqueueError(f"Failed to enqueue {job_type.value}: {e}")

        self.logger.info(f"Job queued: {job_type.value} ({job.id})"
                         + (f" delayed {delay_seconds:.0f}s" if delay_seconds else ""))
        return job.id

    async def enqueue_request(self, request: JobRequest) -> str:
        return await self.enqueue(
            request.job_type,
            request.payload,
            dedup_key=request.dedup_key,
            delay_seconds=request.delay_seconds,
            expedite=request.expedite
        )

    async def _find_active(self, session, key: str) -> Optional[JobDB]:
        result = await session.execute(
            select(JobDB).where(
                JobDB.dedup_key == key,
                JobDB.status.in_(ACTIVE_JOB_STATUSES)
            )
        )
        return result.scalars().first()

    async def _existing_id_for(self, key: Optional[str], expedite: bool) -> Optional[str]:
        if not key:
            return None
        async with self.db.get_session() as session:
            existing = await self._find_active(session, key)
            if existing:
                self._maybe_expedite(existing, expedite)
                return existing.id
        return None

    def _maybe_expedite(self, job: JobDB, expedite: bool):
        now = utc_now()
        if expedite and job.status == JobStatus.QUEUED.value and job.next_run_at > now:
            job.next_run_at = now
            self.logger.info(f"Expedited queued job {job.id} ({job.job_type})")

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self.db.get_session() as session:
            db_job = await session.get(JobDB, job_id)
            return db_job.to_domain_model() if db_job else None

    async def active_job_for(self, dedup_key: str) -> Optional[Job]:
        async with self.db.get_session() as session:
            db_job = await self._find_active(session, dedup_key)
            return db_job.to_domain_model() if db_job else None

    async def claim_due_jobs(self, worker_id: str, limit: int, lease_seconds: float) -> List[Job]:
        """
        Claim up to `limit` due jobs under a lease.

        Due means queued with next_run_at <= now, or running with an expired
        lease (the previous worker died). Each claim is a compare-and-set on the
        observed row state, so two workers can never claim the same job.
        Re-claiming an expired lease counts as a consumed attempt.
        """
        if limit <= 0:
            return []

        now = utc_now()
        lease_until = now + timedelta(seconds=lease_seconds)
        claimed: List[Job] = []

        async with self.db.get_session() as session:
            result = await session.execute(
                select(JobDB.id, JobDB.status, JobDB.lease_expires_at)
                .where(or_(
                    and_(JobDB.status == JobStatus.QUEUED.value, JobDB.next_run_at <= now),
                    and_(JobDB.status == JobStatus.RUNNING.value, JobDB.lease_expires_at < now)
                ))
                .order_by(JobDB.next_run_at.asc(), JobDB.created_at.asc())
                .limit(limit)
            )
            candidates = result.all()

            for job_id, observed_status, observed_lease in candidates:
                values = {
                    'status': JobStatus.RUNNING.value,
                    'lease_owner': worker_id,
                    'lease_expires_at': lease_until,
                    'started_at': now,
                }
                conditions = [JobDB.id == job_id, JobDB.status == observed_status]
                if observed_status == JobStatus.RUNNING.value:
                    conditions.append(JobDB.lease_expires_at == observed_lease)
                    values['attempts'] = JobDB.attempts + 1
                    values['last_error'] = "Lease expired before the previous worker finished"

                outcome = await session.execute(update(JobDB).where(*conditions).values(**values))
                if outcome.rowcount == 1:
                    db_job = await session.get(JobDB, job_id, populate_existing=True)
                    claimed.append(db_job.to_domain_model())
                    if observed_status == JobStatus.RUNNING.value:
                        self.logger.warning(f"Re-claimed job {job_id} after lease expiry")

        return claimed

    async def complete(self, job: Job, worker_id: str, result: Optional[Dict[str, Any]] = None) -> bool:
        """Mark a claimed job done"""
        return await self._finish(job, worker_id, {
            'status': JobStatus.DONE.value,
            'result': result,
            'completed_at': utc_now(),
            'last_error': None,
            'error_kind': None,
        })

    async def reschedule(self, job: Job, worker_id: str, attempts: int,
                         delay_seconds: float, error: str, error_kind: str) -> bool:
        """Return a failed job to the queue for another attempt"""
        return await self._finish(job, worker_id, {
            'status': JobStatus.QUEUED.value,
            'attempts': attempts,
            'next_run_at': utc_now() + timedelta(seconds=delay_seconds),
            'last_error': error,
            'error_kind': error_kind,
        })

    async def fail(self, job: Job, worker_id: str, status: JobStatus, attempts: int,
                   error: str, error_kind: str, result: Optional[Dict[str, Any]] = None) -> bool:
        """Move a job into a terminal failure state (failed or dead letter)"""
        return await self._finish(job, worker_id, {
            'status': status.value,
            'attempts': attempts,
            'last_error': error,
            'error_kind': error_kind,
            'result': result,
            'completed_at': utc_now(),
        })

    async def release(self, job: Job, worker_id: str) -> bool:
        """Give a claimed job back without consuming an attempt"""
        return await self._finish(job, worker_id, {
            'status': JobStatus.QUEUED.value,
            'next_run_at': utc_now(),
        })

    async def _finish(self, job: Job, worker_id: str, values: Dict[str, Any]) -> bool:
        values = {**values, 'lease_owner': None, 'lease_expires_at': None}
        async with self.db.get_session() as session:
            outcome = await session.execute(
                update(JobDB)
                .where(
                    JobDB.id == job.id,
                    JobDB.status == JobStatus.RUNNING.value,
                    JobDB.lease_owner == worker_id
                )
                .values(**values)
            )
        if outcome.rowcount != 1:
            self.logger.warning(f"Lost lease on job {job.id}; outcome not recorded")
            return False
        return True

    async def cleanup_finished_jobs(self, done_retention: timedelta, failed_retention: timedelta) -> int:
        """Delete finished jobs past their retention window"""
        now = utc_now()
        async with self.db.get_session() as session:
            done = await session.execute(
                delete(JobDB).where(
                    JobDB.status == JobStatus.DONE.value,
                    JobDB.completed_at < now - done_retention
                )
            )
            failed = await session.execute(
                delete(JobDB).where(
                    JobDB.status.in_((JobStatus.FAILED.value, JobStatus.DEAD_LETTER.value)),
                    JobDB.completed_at < now - failed_retention
                )
            )
        removed = (done.rowcount or 0) + (failed.rowcount or 0)
        if removed:
            self.logger.info(f"Removed {removed} finished jobs past retention")
        return removed

    async def get_status(self) -> Dict[str, Any]:
        """Job counts by status"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(JobDB.status, func.count(JobDB.id)).group_by(JobDB.status)
            )
            counts = {status: count for status, count in result.all()}

        return {
            'status_counts': {status.value: counts.get(status.value, 0) for status in JobStatus},
            'total_jobs': sum(counts.values()),
        }

    async def dead_letter_jobs(self, job_type: Optional[JobType] = None, limit: int = 100) -> List[Job]:
        """Dead-lettered jobs, newest first"""
        query = select(JobDB).where(JobDB.status == JobStatus.DEAD_LETTER.value)
        if job_type:
            query = query.where(JobDB.job_type == job_type.value)
        async with self.db.get_session() as session:
            result = await session.execute(query.order_by(JobDB.completed_at.desc()).limit(limit))
            return [row.to_domain_model() for row in result.scalars().all()]
