"""
State detector: classifies "now" into an operating regime.

Everything below the StateDetector class is a pure function of the current
time and the fixture/gameweek rows, so the regime is always re-derivable.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

MATCH_DURATION = timedelta(minutes=120)
POST_MATCH_WINDOW = timedelta(hours=4)
PRE_DEADLINE_WINDOW = timedelta(hours=24)


class Regime(str, Enum):
    """Temporal operating regime. Exactly one holds at any instant."""
    LIVE_MATCH = "live-match"
    POST_MATCH = "post-match"
    PRE_DEADLINE = "pre-deadline"
    REGULAR = "regular"
    OFF_SEASON = "off-season"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (or pass a datetime through) as an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class FixtureState:
    id: int
    gameweek_id: Optional[int]
    kickoff_time: Optional[datetime]
    finished: bool = False
    home_team_id: Optional[int] = None
    away_team_id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "FixtureState":
        return cls(
            id=int(row["id"]),
            gameweek_id=row.get("gameweek_id"),
            kickoff_time=parse_timestamp(row.get("kickoff_time")),
            finished=bool(row.get("finished")),
            home_team_id=row.get("home_team_id"),
            away_team_id=row.get("away_team_id"),
        )


@dataclass(frozen=True)
class GameweekState:
    id: int
    deadline_time: Optional[datetime]
    is_current: bool = False
    is_next: bool = False
    finished: bool = False
    is_player_stats_synced: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "GameweekState":
        return cls(
            id=int(row["id"]),
            deadline_time=parse_timestamp(row.get("deadline_time")),
            is_current=bool(row.get("is_current")),
            is_next=bool(row.get("is_next")),
            finished=bool(row.get("finished")),
            is_player_stats_synced=bool(row.get("is_player_stats_synced")),
        )


@dataclass
class RegimeWindows:
    """Durations that bound the heuristic windows."""
    match_duration: timedelta = MATCH_DURATION
    post_match_window: timedelta = POST_MATCH_WINDOW
    pre_deadline_window: timedelta = PRE_DEADLINE_WINDOW

    @classmethod
    def from_config(cls, config) -> "RegimeWindows":
        return cls(
            match_duration=timedelta(minutes=config.match_duration_minutes),
            post_match_window=timedelta(hours=config.post_match_window_hours),
            pre_deadline_window=timedelta(hours=config.pre_deadline_window_hours),
        )


@dataclass
class StateSnapshot:
    regime: Regime
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"state": self.regime.value, "details": self.details}


def current_gameweek(gameweeks: Sequence[GameweekState]) -> Optional[GameweekState]:
    return next((gw for gw in gameweeks if gw.is_current), None)


def next_gameweek(gameweeks: Sequence[GameweekState]) -> Optional[GameweekState]:
    return next((gw for gw in gameweeks if gw.is_next), None)


def latest_started_gameweek(gameweeks: Sequence[GameweekState], now: datetime) -> Optional[GameweekState]:
    """The latest gameweek whose deadline has passed."""
    started = [gw for gw in gameweeks if gw.deadline_time is not None and gw.deadline_time <= now]
    return max(started, key=lambda gw: gw.deadline_time) if started else None


def active_fixtures(
    fixtures: Sequence[FixtureState],
    gameweeks: Sequence[GameweekState],
    now: datetime
) -> List[FixtureState]:
    """Fixtures of the current gameweek that have kicked off and are not reported finished."""
    gw = current_gameweek(gameweeks)
    if gw is None:
        return []
    return [
        f for f in fixtures
        if f.gameweek_id == gw.id
        and f.kickoff_time is not None
        and f.kickoff_time <= now
        and not f.finished
    ]


def is_live_match_active(
    fixtures: Sequence[FixtureState],
    gameweeks: Sequence[GameweekState],
    now: datetime
) -> bool:
    """
    True while any current-gameweek fixture has kicked off and is not finished.

    There is no upper bound: a fixture stays live until the upstream reports it
    finished.
    """
    return bool(active_fixtures(fixtures, gameweeks, now))


def recent_finished_fixtures(
    fixtures: Sequence[FixtureState],
    now: datetime,
    windows: Optional[RegimeWindows] = None
) -> List[FixtureState]:
    """
    Finished fixtures whose estimated end falls within the trailing window.

    The estimated end is kickoff + match duration. A fixture reported finished
    before that estimate is treated as having ended now.
    """
    windows = windows or RegimeWindows()
    window_start = now - windows.post_match_window
    recent = []
    for f in fixtures:
        if not f.finished or f.kickoff_time is None:
            continue
        estimated_end = min(f.kickoff_time + windows.match_duration, now)
        if window_start < estimated_end <= now:
            recent.append(f)
    return recent


def is_post_match_window(
    fixtures: Sequence[FixtureState],
    now: datetime,
    windows: Optional[RegimeWindows] = None
) -> bool:
    return bool(recent_finished_fixtures(fixtures, now, windows))


def is_pre_deadline_window(
    gameweeks: Sequence[GameweekState],
    now: datetime,
    windows: Optional[RegimeWindows] = None
) -> bool:
    """True if the next gameweek's deadline is between now and the pre-deadline window."""
    windows = windows or RegimeWindows()
    gw = next_gameweek(gameweeks)
    if gw is None or gw.deadline_time is None:
        return False
    return now <= gw.deadline_time <= now + windows.pre_deadline_window


def classify(
    gameweeks: Sequence[GameweekState],
    fixtures: Sequence[FixtureState],
    now: datetime,
    windows: Optional[RegimeWindows] = None
) -> Regime:
    """Regime precedence: live-match > post-match > pre-deadline > regular > off-season."""
    if is_live_match_active(fixtures, gameweeks, now):
        return Regime.LIVE_MATCH
    if is_post_match_window(fixtures, now, windows):
        return Regime.POST_MATCH
    if is_pre_deadline_window(gameweeks, now, windows):
        return Regime.PRE_DEADLINE
    if current_gameweek(gameweeks) or next_gameweek(gameweeks):
        return Regime.REGULAR
    return Regime.OFF_SEASON


def is_match_day(fixtures: Sequence[FixtureState], now: datetime) -> bool:
    """True if any fixture kicks off on now's UTC date."""
    today = now.astimezone(timezone.utc).date()
    return any(
        f.kickoff_time is not None and f.kickoff_time.astimezone(timezone.utc).date() == today
        for f in fixtures
    )


def _match_summary(f: FixtureState) -> Dict[str, Any]:
    return {
        "id": f.id,
        "home_team": f.home_team_id,
        "away_team": f.away_team_id,
        "kickoff": f.kickoff_time.isoformat() if f.kickoff_time else None,
    }


def describe(
    gameweeks: Sequence[GameweekState],
    fixtures: Sequence[FixtureState],
    now: datetime,
    windows: Optional[RegimeWindows] = None
) -> StateSnapshot:
    """Classify and attach the facts that drove the decision."""
    regime = classify(gameweeks, fixtures, now, windows)
    current = current_gameweek(gameweeks)
    upcoming = next_gameweek(gameweeks)
    details: Dict[str, Any] = {
        "current_gameweek": current.id if current else None,
        "next_deadline": (
            upcoming.deadline_time.isoformat() if upcoming and upcoming.deadline_time else None
        ),
    }

    if regime == Regime.LIVE_MATCH:
        live = active_fixtures(fixtures, gameweeks, now)
        details["active_since"] = min(f.kickoff_time for f in live).isoformat()
        details["live_matches"] = [_match_summary(f) for f in live]
    elif regime == Regime.POST_MATCH:
        details["recent_matches"] = [
            _match_summary(f) for f in recent_finished_fixtures(fixtures, now, windows)
        ]

    return StateSnapshot(regime=regime, details=details)


class StateDetector:
    """Loads fixture/gameweek rows from the store and classifies them."""

    def __init__(
        self,
        db_client,
        windows: Optional[RegimeWindows] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db_client = db_client
        self.windows = windows or RegimeWindows()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    async def load(self) -> Tuple[List[GameweekState], List[FixtureState]]:
        """Read gameweeks and fixtures; fixtures of the current and next gameweeks only."""
        gameweeks = [GameweekState.from_row(r) for r in self.db_client.get_gameweeks()]
        fixtures: List[FixtureState] = []
        for gw in gameweeks:
            if gw.is_current or gw.is_next:
                fixtures.extend(
                    FixtureState.from_row(r) for r in self.db_client.get_fixtures(gameweek_id=gw.id)
                )
        return gameweeks, fixtures

    async def classify(self, now: Optional[datetime] = None) -> Regime:
        gameweeks, fixtures = await self.load()
        return classify(gameweeks, fixtures, now or self.now(), self.windows)

    async def get_current_state(self, now: Optional[datetime] = None) -> StateSnapshot:
        gameweeks, fixtures = await self.load()
        return describe(gameweeks, fixtures, now or self.now(), self.windows)

    async def is_live_match_active(self, now: Optional[datetime] = None) -> bool:
        gameweeks, fixtures = await self.load()
        return is_live_match_active(fixtures, gameweeks, now or self.now())

    async def is_post_match_window(self, now: Optional[datetime] = None) -> bool:
        _, fixtures = await self.load()
        return is_post_match_window(fixtures, now or self.now(), self.windows)

    async def is_pre_deadline_window(self, now: Optional[datetime] = None) -> bool:
        gameweeks, _ = await self.load()
        return is_pre_deadline_window(gameweeks, now or self.now(), self.windows)
