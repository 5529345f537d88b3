"""
Job context enricher.

Builds the metadata attached to every queued job: priority, regime, target
gameweek and the time the same job type last succeeded. The context is
re-derived for each dispatch, never persisted, so an operator can inject a
job at any time without supplying consistent context by hand.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from fpl_refresh.queues.config import REFRESH_TYPES, QueueName, get_job_priority
from fpl_refresh.refresh.state_detector import (
    Regime,
    StateDetector,
    classify,
    current_gameweek,
    is_match_day,
    latest_started_gameweek,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

# Terminal states that count as success; each job type reports its own names
SUCCESS_STATES = (
    "completed",
    "regular",
    "live-match",
    "post-match",
    "pre-deadline",
    "off-season",
    "full_success",
    "manual_success",
    "incremental",
    "schedule_updated",
)

# Job types that get more urgent in the regime they serve
_URGENT_IN = {
    QueueName.LIVE_REFRESH.value: Regime.LIVE_MATCH,
    QueueName.POST_MATCH_REFRESH.value: Regime.POST_MATCH,
}


@dataclass
class JobContext:
    refresh_type: str
    queue_name: str
    gameweek: Optional[int]
    last_refresh_time: Optional[datetime]
    triggered_by: str
    priority: int
    regime: Optional[Regime]
    is_match_day: bool
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["regime"] = self.regime.value if self.regime else None
        data["last_refresh_time"] = self.last_refresh_time.isoformat() if self.last_refresh_time else None
        data["timestamp"] = self.timestamp.isoformat()
        return data


def compute_priority(queue_name: str, regime: Optional[Regime]) -> int:
    """Static base priority, one step more urgent when the regime matches the job type."""
    priority = get_job_priority(queue_name)
    if regime is not None and _URGENT_IN.get(queue_name) == regime:
        priority = max(1, priority - 1)
    return priority


class JobContextEnricher:
    """Derives a JobContext from the current fixture, gameweek and refresh-log state."""

    def __init__(self, db_client, detector: StateDetector):
        self.db_client = db_client
        self.detector = detector

    def get_last_refresh_time(self, refresh_type: str) -> Optional[datetime]:
        record = self.db_client.get_last_refresh_log(refresh_type, SUCCESS_STATES)
        return parse_timestamp(record.get("timestamp")) if record else None

    async def build_context(
        self,
        queue_name: str,
        triggered_by: str = "scheduler",
        overrides: Optional[Dict[str, Any]] = None,
    ) -> JobContext:
        """
        Build a fresh context for a job.

        Args:
            queue_name: Queue (job type) the job belongs to
            triggered_by: Source of the job (scheduler, api, manual:<admin>)
            overrides: Explicit values (gameweek, is_match_day) that win over derived ones

        Returns:
            JobContext; on lookup failure a fallback context with base priority
        """
        overrides = overrides or {}
        refresh_type = REFRESH_TYPES.get(queue_name, queue_name)
        now = self.detector.now()

        try:
            gameweeks, fixtures = await self.detector.load()
            regime = classify(gameweeks, fixtures, now, self.detector.windows)
            current = current_gameweek(gameweeks) or latest_started_gameweek(gameweeks, now)
            context = JobContext(
                refresh_type=refresh_type,
                queue_name=queue_name,
                gameweek=current.id if current else None,
                last_refresh_time=self.get_last_refresh_time(refresh_type),
                triggered_by=triggered_by,
                priority=compute_priority(queue_name, regime),
                regime=regime,
                is_match_day=is_match_day(fixtures, now),
                timestamp=now,
            )
        except Exception as e:
            logger.error("Failed to build job context, using fallback", extra={
                "queue": queue_name,
                "error": str(e)
            }, exc_info=True)
            context = JobContext(
                refresh_type=refresh_type,
                queue_name=queue_name,
                gameweek=None,
                last_refresh_time=None,
                triggered_by=triggered_by,
                priority=get_job_priority(queue_name),
                regime=None,
                is_match_day=False,
                timestamp=now,
            )

        if overrides.get("gameweek") is not None:
            context.gameweek = int(overrides["gameweek"])
        if overrides.get("is_match_day") is not None:
            context.is_match_day = bool(overrides["is_match_day"])

        return context
