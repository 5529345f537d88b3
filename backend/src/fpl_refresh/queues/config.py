"""
Queue names, per-queue job options and job priorities.

Each job type has its own named queue so a slow or failing type cannot starve another.
"""

from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional


class QueueName(str, Enum):
    """Named queues, one per job type."""
    LIVE_REFRESH = "live-refresh"
    POST_MATCH_REFRESH = "post-match-refresh"
    PRE_DEADLINE_REFRESH = "pre-deadline-refresh"
    DAILY_REFRESH = "daily-refresh"
    HOURLY_REFRESH = "hourly-refresh"
    SCHEDULE_UPDATE = "schedule-update"


QUEUE_NAMES = tuple(q.value for q in QueueName)

# Lower number = more urgent
DEFAULT_PRIORITY = 10
JOB_PRIORITIES: Dict[str, int] = {
    QueueName.LIVE_REFRESH.value: 1,
    QueueName.POST_MATCH_REFRESH.value: 2,
    QueueName.PRE_DEADLINE_REFRESH.value: 3,
    QueueName.DAILY_REFRESH.value: 5,
    QueueName.HOURLY_REFRESH.value: 10,
    QueueName.SCHEDULE_UPDATE.value: 15,
}

# Refresh type recorded in refresh_logs for each queue
REFRESH_TYPES: Dict[str, str] = {
    QueueName.LIVE_REFRESH.value: "live",
    QueueName.POST_MATCH_REFRESH.value: "post-match",
    QueueName.PRE_DEADLINE_REFRESH.value: "pre-deadline",
    QueueName.DAILY_REFRESH.value: "full",
    QueueName.HOURLY_REFRESH.value: "incremental",
    QueueName.SCHEDULE_UPDATE.value: "schedule",
}


@dataclass(frozen=True)
class JobOptions:
    """Options attached to an enqueued job."""
    priority: int = DEFAULT_PRIORITY
    attempts: int = 3
    backoff_delay: float = 5.0  # seconds; doubles on every failed attempt
    timeout: float = 180.0  # seconds
    delay: float = 0.0  # seconds before the job becomes runnable
    job_id: Optional[str] = None  # explicit id makes enqueue idempotent

    def backoff_for(self, attempts_made: int) -> float:
        """Exponential backoff before retry number `attempts_made`."""
        return self.backoff_delay * (2 ** max(0, attempts_made - 1))

    def merge(self, overrides: Optional[Dict[str, Any]]) -> "JobOptions":
        """Return a copy with known keys from `overrides` applied."""
        if not overrides:
            return self
        known = {k: v for k, v in overrides.items() if k in asdict(self) and v is not None}
        return replace(self, **known)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_JOB_OPTIONS = JobOptions()

QUEUE_SETTINGS: Dict[str, JobOptions] = {
    QueueName.LIVE_REFRESH.value: JobOptions(priority=1, attempts=3, timeout=120.0),
    QueueName.POST_MATCH_REFRESH.value: JobOptions(priority=2, attempts=3, timeout=180.0),
    QueueName.PRE_DEADLINE_REFRESH.value: JobOptions(priority=3, attempts=3, timeout=180.0),
    QueueName.DAILY_REFRESH.value: JobOptions(priority=5, attempts=5, timeout=300.0),
    QueueName.HOURLY_REFRESH.value: JobOptions(priority=10, attempts=3, timeout=180.0),
    QueueName.SCHEDULE_UPDATE.value: JobOptions(priority=15, attempts=3, timeout=120.0),
}


def get_queue_options(queue_name: str) -> JobOptions:
    """Default options for a queue, falling back to the global defaults."""
    return QUEUE_SETTINGS.get(queue_name, DEFAULT_JOB_OPTIONS)


def get_job_priority(queue_name: str) -> int:
    return JOB_PRIORITIES.get(queue_name, DEFAULT_PRIORITY)
