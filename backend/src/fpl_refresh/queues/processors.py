"""
Queue processors - one per job type.

Every processor builds a fresh JobContext, runs the matching refresh
operation and logs start, completion and failure with that context. A
refresh that ends in state 'error' raises RefreshFailedError so the queue's
retry and backoff apply.
"""

import logging
import time
from typing import Any, Awaitable, Callable, Dict

from fpl_refresh.queues.config import QueueName
from fpl_refresh.queues.jobs import Job, UnrecoverableJobError
from fpl_refresh.refresh.context import JobContext, JobContextEnricher
from fpl_refresh.refresh.manager import ERROR, RefreshManager, RefreshOutcome
from fpl_refresh.refresh.schedule import InvalidScheduleError

logger = logging.getLogger(__name__)

Processor = Callable[[Job], Awaitable[Dict[str, Any]]]


class RefreshFailedError(Exception):
    """Raised when a refresh operation reports state 'error'."""

    def __init__(self, queue_name: str, outcome: RefreshOutcome):
        self.queue_name = queue_name
        self.outcome = outcome
        error = outcome.details.get("error") or outcome.details.get("errors")
        super().__init__(f"{queue_name} refresh failed: {error}")


def build_processors(manager: RefreshManager, enricher: JobContextEnricher) -> Dict[str, Processor]:
    """Map every queue name to its processor."""

    async def run(job: Job, operation: Callable[[JobContext], Awaitable[RefreshOutcome]]) -> Dict[str, Any]:
        triggered_by = job.data.get("triggered_by", "scheduler")
        context = await enricher.build_context(job.queue_name, triggered_by, overrides=job.data)
        job_context = context.to_dict()

        logger.info("Job started", extra={
            "queue": job.queue_name,
            "job_id": job.id,
            "attempt": job.attempts_made + 1,
            "job_context": job_context
        })
        started = time.monotonic()

        try:
            outcome = await operation(context)
        except Exception as e:
            logger.error("Job error", extra={
                "queue": job.queue_name,
                "job_id": job.id,
                "error": str(e),
                "job_context": job_context
            }, exc_info=True)
            raise

        if outcome.state == ERROR:
            logger.error("Job error", extra={
                "queue": job.queue_name,
                "job_id": job.id,
                "details": outcome.details,
                "job_context": job_context
            })
            raise RefreshFailedError(job.queue_name, outcome)

        duration = round(time.monotonic() - started, 3)
        logger.info("Job completed", extra={
            "queue": job.queue_name,
            "job_id": job.id,
            "refreshed": outcome.refreshed,
            "state": outcome.state,
            "reason": outcome.reason,
            "duration": duration,
            "job_context": job_context
        })

        result = outcome.to_dict()
        result["job_context"] = job_context
        result["timing"] = {
            "queued_at": job.created_at.isoformat(),
            "processed_at": job.processed_at.isoformat() if job.processed_at else None,
            "processing_duration": duration,
        }
        return result

    async def live(job: Job) -> Dict[str, Any]:
        return await run(job, lambda ctx: manager.perform_live_refresh())

    async def post_match(job: Job) -> Dict[str, Any]:
        return await run(job, lambda ctx: manager.perform_post_match_refresh())

    async def pre_deadline(job: Job) -> Dict[str, Any]:
        return await run(job, lambda ctx: manager.perform_pre_deadline_refresh())

    async def daily(job: Job) -> Dict[str, Any]:
        admin_id = job.data.get("admin_id")
        if admin_id:
            return await run(job, lambda ctx: manager.perform_manual_refresh(admin_id))
        return await run(job, lambda ctx: manager.perform_full_refresh())

    async def hourly(job: Job) -> Dict[str, Any]:
        async def operation(ctx: JobContext) -> RefreshOutcome:
            if ctx.is_match_day:
                return await manager.perform_live_refresh()
            return await manager.perform_incremental_refresh()
        return await run(job, operation)

    async def schedule_update(job: Job) -> Dict[str, Any]:
        async def operation(ctx: JobContext) -> RefreshOutcome:
            try:
                return await manager.perform_schedule_update(job.data.get("windows"))
            except InvalidScheduleError as e:
                raise UnrecoverableJobError(str(e)) from e
        return await run(job, operation)

    return {
        QueueName.LIVE_REFRESH.value: live,
        QueueName.POST_MATCH_REFRESH.value: post_match,
        QueueName.PRE_DEADLINE_REFRESH.value: pre_deadline,
        QueueName.DAILY_REFRESH.value: daily,
        QueueName.HOURLY_REFRESH.value: hourly,
        QueueName.SCHEDULE_UPDATE.value: schedule_update,
    }
