"""
Job records and their lifecycle.

waiting/delayed -> active -> completed | failed, with failed attempts going
back to delayed until no attempts remain. stalled marks an active
job whose worker stopped heart-beating; it is re-queued.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from fpl_refresh.queues.config import JobOptions
from fpl_refresh.refresh.state_detector import parse_timestamp


class JobStatus(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})
RUNNABLE_STATUSES = frozenset({JobStatus.WAITING, JobStatus.DELAYED})


class JobTimeoutError(Exception):
    """Raised when a job exceeds its timeout."""
    pass


class UnrecoverableJobError(Exception):
    """Raised by a processor for a job that must not be retried."""
    pass


@dataclass
class Job:
    id: str
    queue_name: str
    data: Dict[str, Any]
    options: JobOptions
    created_at: datetime
    run_at: datetime
    status: JobStatus = JobStatus.WAITING
    attempts_made: int = 0
    stalled_count: int = 0
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    result: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @property
    def priority(self) -> int:
        return self.options.priority

    @property
    def attempts_left(self) -> int:
        return max(0, self.options.attempts - self.attempts_made)

    def to_dict(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "queue_name": self.queue_name,
            "data": self.data,
            "options": self.options.to_dict(),
            "status": self.status.value,
            "priority": self.priority,
            "attempts_made": self.attempts_made,
            "stalled_count": self.stalled_count,
            "created_at": iso(self.created_at),
            "run_at": iso(self.run_at),
            "processed_at": iso(self.processed_at),
            "finished_at": iso(self.finished_at),
            "heartbeat_at": iso(self.heartbeat_at),
            "failed_reason": self.failed_reason,
            "result": self.result,
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "Job":
        return cls(
            id=row["id"],
            queue_name=row["queue_name"],
            data=row.get("data") or {},
            options=JobOptions(**(row.get("options") or {})),
            created_at=parse_timestamp(row["created_at"]),
            run_at=parse_timestamp(row["run_at"]),
            status=JobStatus(row["status"]),
            attempts_made=row.get("attempts_made") or 0,
            stalled_count=row.get("stalled_count") or 0,
            processed_at=parse_timestamp(row.get("processed_at")),
            finished_at=parse_timestamp(row.get("finished_at")),
            heartbeat_at=parse_timestamp(row.get("heartbeat_at")),
            failed_reason=row.get("failed_reason"),
            result=row.get("result"),
        )
