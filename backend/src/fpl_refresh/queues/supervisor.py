"""
Worker supervisor.

Runs one worker loop per enabled queue (one in-flight job each) and owns the
APScheduler ticker that enqueues scheduled jobs, sweeps stalled jobs and
cleans old job records. Everything it starts is stopped together by stop().
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from fpl_refresh.config import Config
from fpl_refresh.queues.config import QueueName
from fpl_refresh.queues.jobs import Job, JobStatus, JobTimeoutError, UnrecoverableJobError
from fpl_refresh.queues.processors import Processor
from fpl_refresh.queues.queue import JobQueue

logger = logging.getLogger(__name__)

# Config attribute holding the enqueue interval (seconds) of each interval-driven queue
SCHEDULE_INTERVALS = {
    QueueName.LIVE_REFRESH.value: "live_refresh_interval",
    QueueName.POST_MATCH_REFRESH.value: "post_match_refresh_interval",
    QueueName.PRE_DEADLINE_REFRESH.value: "pre_deadline_refresh_interval",
    QueueName.HOURLY_REFRESH.value: "hourly_refresh_interval",
    QueueName.SCHEDULE_UPDATE.value: "schedule_update_interval",
}

PayloadFactory = Callable[[], Optional[Dict[str, Any]]]
# Resolves the priority of a job about to be enqueued from its queue name and payload
PriorityResolver = Callable[[str, Dict[str, Any]], Awaitable[int]]


class WorkerSupervisor:
    """Worker loops, retries, stall detection and cleanup for a set of queues."""

    def __init__(
        self,
        queues: Dict[str, JobQueue],
        processors: Dict[str, Processor],
        config: Config,
        clock: Optional[Callable[[], datetime]] = None,
        payload_factories: Optional[Dict[str, PayloadFactory]] = None,
        priority_for: Optional[PriorityResolver] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.queues = queues
        self.processors = processors
        self.config = config
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.payload_factories = payload_factories or {}
        self.priority_for = priority_for
        self._sleep = sleep or asyncio.sleep

        self.scheduler: Optional[AsyncIOScheduler] = None
        self._tasks: List[asyncio.Task] = []
        self._stopping = False

    @property
    def enabled_queues(self) -> List[str]:
        return [
            name for name in self.queues
            if name in self.processors and name not in self.config.disabled_queues
        ]

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping

    async def start(self):
        """Start worker loops and, when enabled, the scheduler."""
        self._stopping = False
        for name in self.enabled_queues:
            task = asyncio.create_task(self._worker_loop(self.queues[name]), name=f"worker:{name}")
            self._tasks.append(task)

        if self.config.scheduler_enabled:
            self.scheduler = self.build_scheduler()
            self.scheduler.start()

        logger.info("Worker supervisor started", extra={
            "queues": self.enabled_queues,
            "disabled_queues": self.config.disabled_queues,
            "scheduler_enabled": self.config.scheduler_enabled
        })

    async def stop(self):
        """Cancel worker loops and shut the scheduler down."""
        self._stopping = True
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.scheduler = None

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Worker supervisor stopped")

    def build_scheduler(self) -> AsyncIOScheduler:
        """Scheduler with the enqueue triggers plus the stalled-check and cleanup jobs."""
        scheduler = AsyncIOScheduler(timezone=timezone.utc)

        for name in self.enabled_queues:
            if name == QueueName.DAILY_REFRESH.value:
                trigger = CronTrigger.from_crontab(self.config.daily_refresh_cron, timezone=timezone.utc)
            elif name in SCHEDULE_INTERVALS:
                trigger = IntervalTrigger(seconds=getattr(self.config, SCHEDULE_INTERVALS[name]))
            else:
                continue
            scheduler.add_job(
                self.enqueue_scheduled,
                trigger,
                args=[name],
                id=f"enqueue:{name}",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=60,
            )

        scheduler.add_job(
            self.check_stalled,
            IntervalTrigger(seconds=self.config.stalled_check_interval_seconds),
            id="stalled-check",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
        )
        scheduler.add_job(
            self.cleanup,
            IntervalTrigger(
                hours=self.config.cleanup_interval_hours,
                start_date=self.clock() + timedelta(seconds=self.config.cleanup_initial_delay_seconds),
            ),
            id="cleanup",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )
        return scheduler

    async def enqueue_scheduled(self, queue_name: str) -> Optional[Job]:
        """Enqueue the scheduled job of a queue; a no-op while the previous one is pending."""
        payload: Dict[str, Any] = {"triggered_by": "scheduler"}
        try:
            factory = self.payload_factories.get(queue_name)
            if factory is not None:
                extra = factory()
                if extra is None:
                    logger.debug("Scheduled job skipped, nothing to enqueue", extra={"queue": queue_name})
                    return None
                payload.update(extra)
            options: Dict[str, Any] = {"job_id": f"{queue_name}:scheduled"}
            if self.priority_for is not None:
                options["priority"] = await self.priority_for(queue_name, payload)
            return await self.queues[queue_name].enqueue(payload, options)
        except Exception as e:
            logger.error("Failed to enqueue scheduled job", extra={
                "queue": queue_name,
                "error": str(e)
            }, exc_info=True)
            return None

    async def _worker_loop(self, queue: JobQueue):
        while not self._stopping:
            try:
                job = await self.process_next(queue)
            except Exception as e:
                logger.error("Worker loop error", extra={"queue": queue.name, "error": str(e)}, exc_info=True)
                job = None
            if job is None:
                await self._sleep(self.config.worker_poll_interval)

    async def _heartbeat(self, queue: JobQueue, job: Job):
        interval = max(1.0, self.config.stalled_job_timeout_seconds / 3)
        while True:
            await asyncio.sleep(interval)
            job.heartbeat_at = self.clock()
            try:
                await queue.store.save(job)
            except Exception as e:
                logger.warning("Heartbeat write failed", extra={"job_id": job.id, "error": str(e)})

    async def process_next(self, queue: JobQueue) -> Optional[Job]:
        """
        Claim and run the most urgent runnable job of `queue`.

        Returns:
            The processed job, or None when nothing was runnable
        """
        job = await queue.store.claim_next(queue.name, self.clock())
        if job is None:
            return None

        processor = self.processors[queue.name]
        heartbeat = asyncio.create_task(self._heartbeat(queue, job))
        try:
            result = await asyncio.wait_for(processor(job), timeout=job.options.timeout)
        except asyncio.TimeoutError:
            await self._fail_attempt(queue, job, JobTimeoutError(
                f"Job exceeded timeout of {job.options.timeout}s"
            ))
        except UnrecoverableJobError as e:
            await self._fail_attempt(queue, job, e, retry=False)
        except Exception as e:
            await self._fail_attempt(queue, job, e)
        else:
            await self._complete(queue, job, result)
        finally:
            heartbeat.cancel()
        return job

    async def _complete(self, queue: JobQueue, job: Job, result: Dict[str, Any]):
        job.status = JobStatus.COMPLETED
        job.finished_at = self.clock()
        job.result = result
        job.failed_reason = None
        await queue.store.save(job)
        await queue.trim(JobStatus.COMPLETED, self.config.keep_completed_jobs)

    async def _fail_attempt(self, queue: JobQueue, job: Job, error: Exception, retry: bool = True):
        job.attempts_made += 1
        job.failed_reason = str(error)
        now = self.clock()

        if retry and job.attempts_left > 0:
            delay = job.options.backoff_for(job.attempts_made)
            job.status = JobStatus.DELAYED
            job.run_at = now + timedelta(seconds=delay)
            await queue.store.save(job)
            logger.warning("Job retry scheduled", extra={
                "queue": queue.name,
                "job_id": job.id,
                "attempts_made": job.attempts_made,
                "retry_in": delay,
                "error": str(error),
                "error_type": type(error).__name__
            })
            return

        job.status = JobStatus.FAILED
        job.finished_at = now
        await queue.store.save(job)
        await queue.trim(JobStatus.FAILED, self.config.keep_failed_jobs)
        logger.error("Job failed", extra={
            "queue": queue.name,
            "job_id": job.id,
            "attempts_made": job.attempts_made,
            "error": str(error),
            "error_type": type(error).__name__
        })

    async def check_stalled(self) -> int:
        """Re-queue active jobs whose heartbeat is older than the stalled timeout."""
        now = self.clock()
        cutoff = now - timedelta(seconds=self.config.stalled_job_timeout_seconds)
        stalled = 0

        for name in self.enabled_queues:
            queue = self.queues[name]
            for job in await queue.get_jobs([JobStatus.ACTIVE]):
                last_seen = job.heartbeat_at or job.processed_at or job.created_at
                if last_seen >= cutoff:
                    continue

                stalled += 1
                job.status = JobStatus.STALLED
                job.stalled_count += 1
                job.attempts_made += 1
                await queue.store.save(job)
                logger.warning("Job stalled", extra={
                    "queue": name,
                    "job_id": job.id,
                    "last_heartbeat": last_seen,
                    "stalled_count": job.stalled_count
                })

                if job.attempts_left > 0:
                    job.status = JobStatus.WAITING
                    job.run_at = now
                else:
                    job.status = JobStatus.FAILED
                    job.finished_at = now
                    job.failed_reason = "job stalled more than allowable limit"
                await queue.store.save(job)

        return stalled

    async def cleanup(self) -> Dict[str, Dict[str, Any]]:
        """Remove old completed/failed jobs and stuck delayed jobs, then log queue counts."""
        retention = self.config.job_retention_hours * 3600
        delayed_max_age = self.config.delayed_job_max_age_hours * 3600
        summary: Dict[str, Dict[str, Any]] = {}

        for name, queue in self.queues.items():
            try:
                removed = {
                    "completed": await queue.clean(JobStatus.COMPLETED, retention),
                    "failed": await queue.clean(JobStatus.FAILED, retention),
                    "delayed": await queue.clean(JobStatus.DELAYED, delayed_max_age),
                }
                counts = await queue.get_job_counts()
            except Exception as e:
                logger.error("Queue cleanup failed", extra={"queue": name, "error": str(e)}, exc_info=True)
                continue
            summary[name] = {"removed": removed, "counts": counts}
            logger.info("Queue cleaned", extra={"queue": name, "removed": removed, "counts": counts})

        return summary
