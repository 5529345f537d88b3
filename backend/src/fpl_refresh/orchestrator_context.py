"""
Orchestrator context.

Builds and owns every collaborator of the refresh engine: the FPL API
client, the Supabase client, the cache, the state detector, the diff sync
engine, the refresh manager, the job queues and the worker supervisor.
Entry points construct one context and pass it around explicitly.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fpl_refresh.cache.store import CacheStore
from fpl_refresh.config import Config
from fpl_refresh.database.supabase_client import SupabaseClient
from fpl_refresh.fpl_api.client import FPLAPIClient
from fpl_refresh.queues.config import QUEUE_NAMES, QueueName
from fpl_refresh.queues.jobs import Job
from fpl_refresh.queues.processors import build_processors
from fpl_refresh.queues.queue import JobQueue
from fpl_refresh.queues.store import JobStore, MemoryJobStore, SupabaseJobStore
from fpl_refresh.queues.supervisor import WorkerSupervisor
from fpl_refresh.refresh.context import JobContext, JobContextEnricher
from fpl_refresh.refresh.manager import RefreshManager
from fpl_refresh.refresh.state_detector import RegimeWindows, StateDetector
from fpl_refresh.refresh.sync import DiffSyncEngine

logger = logging.getLogger(__name__)


class UnknownQueueError(KeyError):
    """Raised for a queue name that is not configured."""
    pass


class OrchestratorContext:
    """Explicitly constructed engine; tests build one around fakes."""

    def __init__(
        self,
        config: Config,
        fpl_client,
        db_client,
        cache: Optional[CacheStore] = None,
        job_store: Optional[JobStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.fpl_client = fpl_client
        self.db_client = db_client
        self.cache = cache or CacheStore(clock=self.clock)

        self.detector = StateDetector(db_client, RegimeWindows.from_config(config), clock=self.clock)
        self.sync_engine = DiffSyncEngine(fpl_client, self.cache, db_client, self.detector, config)
        self.refresh_manager = RefreshManager(self.detector, self.sync_engine, self.cache, db_client)
        self.enricher = JobContextEnricher(db_client, self.detector)

        self.job_store = job_store or MemoryJobStore()
        self.queues: Dict[str, JobQueue] = {
            name: JobQueue(name, self.job_store, clock=self.clock) for name in QUEUE_NAMES
        }
        self.supervisor = WorkerSupervisor(
            self.queues,
            build_processors(self.refresh_manager, self.enricher),
            config,
            clock=self.clock,
            payload_factories={QueueName.SCHEDULE_UPDATE.value: self._schedule_payload},
            priority_for=self._job_priority,
        )

    @classmethod
    def from_config(cls, config: Config) -> "OrchestratorContext":
        """Production wiring: real FPL API and Supabase clients."""
        db_client = SupabaseClient(config)
        job_store = SupabaseJobStore(db_client) if config.queue_backend == "supabase" else MemoryJobStore()
        return cls(config, FPLAPIClient(config), db_client, job_store=job_store)

    def _schedule_payload(self) -> Optional[Dict[str, Any]]:
        windows = self.refresh_manager.generate_schedule_windows()
        return {"windows": windows} if windows else None

    async def _job_priority(self, queue_name: str, data: Dict[str, Any]) -> int:
        context = await self.enricher.build_context(queue_name, data.get("triggered_by", "api"), overrides=data)
        return context.priority

    def get_queue(self, queue_name: str) -> JobQueue:
        queue = self.queues.get(queue_name)
        if queue is None:
            raise UnknownQueueError(queue_name)
        return queue

    async def enqueue(
        self,
        queue_name: str,
        data: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """Enqueue a job at the priority its context derives; explicit options win."""
        queue = self.get_queue(queue_name)
        data = data or {}
        explicit = {k: v for k, v in (options or {}).items() if v is not None}
        options = {"priority": await self._job_priority(queue_name, data), **explicit}
        return await queue.enqueue(data, options)

    async def get_job_context(self, queue_name: str, source: str = "api") -> JobContext:
        self.get_queue(queue_name)
        return await self.enricher.build_context(queue_name, source)

    async def initialize(self):
        """Re-establish scheduled cache invalidations lost with the last process."""
        await self.refresh_manager.initialize()

    async def start(self):
        await self.supervisor.start()

    async def shutdown(self):
        """Stop workers and the ticker, cancel scheduled invalidations, close the HTTP client."""
        await self.supervisor.stop()
        cancelled = await self.cache.cancel_scheduled_invalidations()
        try:
            await self.fpl_client.close()
        except Exception as e:
            logger.warning("Error closing FPL API client", extra={"error": str(e)})
        logger.info("Orchestrator shut down", extra={"cancelled_invalidations": cancelled})
