"""
Job stores backing the queues.

MemoryJobStore keeps jobs in process (single-process deployments and tests);
SupabaseJobStore persists them in the refresh_jobs table so jobs survive
restarts and can be enqueued from the API process.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from fpl_refresh.queues.jobs import (
    RUNNABLE_STATUSES,
    TERMINAL_STATUSES,
    Job,
    JobStatus,
)

logger = logging.getLogger(__name__)

JOBS_TABLE = "refresh_jobs"


def _claim_order(job: Job):
    return (job.priority, job.run_at, job.created_at)


class JobStore:
    """Storage interface used by JobQueue and WorkerSupervisor."""

    async def add(self, job: Job) -> Job:
        """Insert a job. If a non-terminal job with the same id exists, return it instead."""
        raise NotImplementedError

    async def claim_next(self, queue_name: str, now: datetime) -> Optional[Job]:
        """Move the most urgent runnable job to active and return it."""
        raise NotImplementedError

    async def save(self, job: Job) -> None:
        raise NotImplementedError

    async def get(self, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    async def list_jobs(
        self,
        queue_name: str,
        statuses: Iterable[JobStatus],
        start: int = 0,
        end: int = -1
    ) -> List[Job]:
        """Jobs in the given statuses, newest first; `end` is inclusive, -1 for all."""
        raise NotImplementedError

    async def counts(self, queue_name: str) -> Dict[str, int]:
        raise NotImplementedError

    async def remove(self, job_ids: Iterable[str]) -> int:
        raise NotImplementedError


def _slice(jobs: List[Job], start: int, end: int) -> List[Job]:
    return jobs[start:] if end < 0 else jobs[start:end + 1]


class MemoryJobStore(JobStore):

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def add(self, job: Job) -> Job:
        async with self._lock:
            existing = self._jobs.get(job.id)
            if existing is not None and existing.status not in TERMINAL_STATUSES:
                return existing
            self._jobs[job.id] = job
            return job

    async def claim_next(self, queue_name: str, now: datetime) -> Optional[Job]:
        async with self._lock:
            runnable = [
                j for j in self._jobs.values()
                if j.queue_name == queue_name and j.status in RUNNABLE_STATUSES and j.run_at <= now
            ]
            if not runnable:
                return None
            job = min(runnable, key=_claim_order)
            job.status = JobStatus.ACTIVE
            job.processed_at = now
            job.heartbeat_at = now
            return job

    async def save(self, job: Job) -> None:
        async with self._lock:
            self._jobs[job.id] = job

    async def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    async def list_jobs(self, queue_name, statuses, start=0, end=-1) -> List[Job]:
        wanted = set(statuses)
        jobs = [j for j in self._jobs.values() if j.queue_name == queue_name and j.status in wanted]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return _slice(jobs, start, end)

    async def counts(self, queue_name: str) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            if job.queue_name == queue_name:
                counts[job.status.value] += 1
        return counts

    async def remove(self, job_ids: Iterable[str]) -> int:
        removed = 0
        async with self._lock:
            for job_id in job_ids:
                if self._jobs.pop(job_id, None) is not None:
                    removed += 1
        return removed


class SupabaseJobStore(JobStore):
    """Durable job store on the refresh_jobs table."""

    def __init__(self, db_client):
        self.db_client = db_client

    @property
    def _table(self):
        return self.db_client.client.table(JOBS_TABLE)

    async def add(self, job: Job) -> Job:
        existing = await self.get(job.id)
        if existing is not None and existing.status not in TERMINAL_STATUSES:
            return existing
        self._table.upsert(job.to_dict(), on_conflict="id").execute()
        return job

    async def claim_next(self, queue_name: str, now: datetime) -> Optional[Job]:
        result = (
            self._table.select("*")
            .eq("queue_name", queue_name)
            .in_("status", [s.value for s in RUNNABLE_STATUSES])
            .lte("run_at", now.isoformat())
            .order("priority")
            .order("run_at")
            .order("created_at")
            .limit(1)
            .execute()
        )
        if not result.data:
            return None

        job = Job.from_dict(result.data[0])
        # Compare-and-set on the previous status so two workers cannot claim the same job
        claimed = (
            self._table.update({
                "status": JobStatus.ACTIVE.value,
                "processed_at": now.isoformat(),
                "heartbeat_at": now.isoformat(),
            })
            .eq("id", job.id)
            .eq("status", job.status.value)
            .execute()
        )
        if not claimed.data:
            logger.debug("Job claimed by another worker", extra={"job_id": job.id, "queue": queue_name})
            return None

        job.status = JobStatus.ACTIVE
        job.processed_at = now
        job.heartbeat_at = now
        return job

    async def save(self, job: Job) -> None:
        self._table.upsert(job.to_dict(), on_conflict="id").execute()

    async def get(self, job_id: str) -> Optional[Job]:
        result = self._table.select("*").eq("id", job_id).limit(1).execute()
        return Job.from_dict(result.data[0]) if result.data else None

    async def list_jobs(self, queue_name, statuses, start=0, end=-1) -> List[Job]:
        query = (
            self._table.select("*")
            .eq("queue_name", queue_name)
            .in_("status", [JobStatus(s).value for s in statuses])
            .order("created_at", desc=True)
        )
        if end >= 0:
            query = query.range(start, end)
        elif start:
            query = query.offset(start)
        result = query.execute()
        return [Job.from_dict(row) for row in result.data or []]

    async def counts(self, queue_name: str) -> Dict[str, int]:
        result = self._table.select("status").eq("queue_name", queue_name).execute()
        counts = {status.value: 0 for status in JobStatus}
        for row in result.data or []:
            counts[row["status"]] = counts.get(row["status"], 0) + 1
        return counts

    async def remove(self, job_ids: Iterable[str]) -> int:
        ids = list(job_ids)
        if not ids:
            return 0
        result = self._table.delete().in_("id", ids).execute()
        return len(result.data or [])
