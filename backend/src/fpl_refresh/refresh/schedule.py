"""
Fixture schedule windows.

Turns upcoming kickoffs into live-update and post-match windows, stored so
that external cron triggers can follow the real match calendar.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Sequence

from fpl_refresh.refresh.state_detector import FixtureState, parse_timestamp

WINDOW_JOB_TYPES = ("live-update", "post-match")

LIVE_LEAD = timedelta(minutes=15)
LIVE_END = timedelta(minutes=120)
POST_MATCH_END = timedelta(minutes=360)
LOOKBACK = timedelta(hours=24)


class InvalidScheduleError(ValueError):
    """Raised when schedule windows are missing or malformed."""
    pass


def generate_schedule_windows(fixtures: Sequence[FixtureState], now: datetime) -> List[Dict[str, Any]]:
    """
    Build windows for fixtures kicking off after now - 24h.

    Fixtures sharing a kickoff share a window. Windows are ordered by start time.
    """
    by_kickoff: Dict[datetime, List[int]] = defaultdict(list)
    for f in fixtures:
        if f.kickoff_time is not None and f.kickoff_time > now - LOOKBACK:
            by_kickoff[f.kickoff_time].append(f.id)

    windows: List[Dict[str, Any]] = []
    for kickoff in sorted(by_kickoff):
        match_ids = sorted(by_kickoff[kickoff])
        windows.append({
            "job_type": "live-update",
            "start_time": (kickoff - LIVE_LEAD).isoformat(),
            "end_time": (kickoff + LIVE_END).isoformat(),
            "match_ids": match_ids,
        })
        windows.append({
            "job_type": "post-match",
            "start_time": (kickoff + LIVE_END).isoformat(),
            "end_time": (kickoff + POST_MATCH_END).isoformat(),
            "match_ids": match_ids,
        })
    windows.sort(key=lambda w: (w["start_time"], w["job_type"]))
    return windows


def validate_windows(windows: Any) -> List[Dict[str, Any]]:
    """Check a window list received from a job or the API; returns normalised rows."""
    if not isinstance(windows, list) or not windows:
        raise InvalidScheduleError("Invalid schedule windows data")

    rows = []
    for window in windows:
        if not isinstance(window, dict) or window.get("job_type") not in WINDOW_JOB_TYPES:
            raise InvalidScheduleError(f"Invalid schedule window: {window!r}")
        start = parse_timestamp(window.get("start_time"))
        end = parse_timestamp(window.get("end_time"))
        if start is None or end is None or end <= start:
            raise InvalidScheduleError(f"Invalid schedule window times: {window!r}")
        rows.append({
            "job_type": window["job_type"],
            "start_time": start.isoformat(),
            "end_time": end.isoformat(),
            "match_ids": [int(m) for m in window.get("match_ids") or []],
        })
    return rows
