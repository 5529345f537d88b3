"""
Named job queue.

Wrapper around a JobStore: applies the queue's default options on enqueue
and exposes the inspection and maintenance calls used by the API and the
worker supervisor.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from fpl_refresh.queues.config import JobOptions, get_queue_options
from fpl_refresh.queues.jobs import Job, JobStatus
from fpl_refresh.queues.store import JobStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobQueue:
    """One named queue; several queues may share a store."""

    def __init__(self, name: str, store: JobStore, clock: Optional[Callable[[], datetime]] = None):
        self.name = name
        self.store = store
        self.clock = clock or _utcnow
        self.default_options = get_queue_options(name)

    async def enqueue(self, data: Optional[Dict[str, Any]] = None, options: Optional[Dict[str, Any]] = None) -> Job:
        """
        Add a job to the queue.

        Args:
            data: Job payload handed to the processor
            options: Overrides of the queue defaults (priority, attempts, delay, job_id, ...)

        Returns:
            The stored job. With an explicit job_id that is still pending, the existing job.
        """
        opts: JobOptions = self.default_options.merge(options)
        now = self.clock()
        job = Job(
            id=opts.job_id or str(uuid.uuid4()),
            queue_name=self.name,
            data=dict(data or {}),
            options=opts,
            created_at=now,
            run_at=now + timedelta(seconds=opts.delay),
            status=JobStatus.DELAYED if opts.delay > 0 else JobStatus.WAITING,
        )
        stored = await self.store.add(job)
        if stored is not job:
            logger.debug("Job already queued", extra={"queue": self.name, "job_id": stored.id})
        else:
            logger.info("Job enqueued", extra={
                "queue": self.name,
                "job_id": job.id,
                "priority": opts.priority,
                "delay": opts.delay
            })
        return stored

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = await self.store.get(job_id)
        return job if job and job.queue_name == self.name else None

    async def get_jobs(self, statuses: Iterable[JobStatus], start: int = 0, end: int = -1) -> List[Job]:
        return await self.store.list_jobs(self.name, statuses, start, end)

    async def get_job_counts(self) -> Dict[str, int]:
        return await self.store.counts(self.name)

    async def retry_job(self, job_id: str) -> Optional[Job]:
        """Put a failed job back in the queue with its attempts reset."""
        job = await self.get_job(job_id)
        if job is None or job.status != JobStatus.FAILED:
            return None
        job.status = JobStatus.WAITING
        job.attempts_made = 0
        job.failed_reason = None
        job.finished_at = None
        job.run_at = self.clock()
        await self.store.save(job)
        logger.info("Job retried", extra={"queue": self.name, "job_id": job_id})
        return job

    async def remove_job(self, job_id: str) -> bool:
        job = await self.get_job(job_id)
        if job is None or job.status == JobStatus.ACTIVE:
            return False
        return await self.store.remove([job_id]) > 0

    async def clean(self, status: JobStatus, grace_seconds: float) -> int:
        """Remove jobs in `status` created more than `grace_seconds` ago."""
        cutoff = self.clock() - timedelta(seconds=grace_seconds)
        jobs = await self.get_jobs([status])
        old = [j.id for j in jobs if (j.finished_at or j.created_at) < cutoff]
        return await self.store.remove(old)

    async def trim(self, status: JobStatus, keep: int) -> int:
        """Keep only the newest `keep` jobs in `status`."""
        jobs = await self.get_jobs([status])
        return await self.store.remove(j.id for j in jobs[keep:])
