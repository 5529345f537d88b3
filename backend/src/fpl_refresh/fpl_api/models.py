"""
Typed records for upstream FPL snapshots.

Raw JSON is validated here, at the boundary, so the diff and transform code
works on typed data. Unknown upstream fields are ignored.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field


class ResourceKind(str, Enum):
    """Named upstream resources (and the bootstrap slices cached on their own)."""
    BOOTSTRAP_STATIC = "bootstrap_static"
    FIXTURES = "fixtures"
    LIVE_GAMEWEEK = "live_gameweek"
    PLAYER_DETAIL = "player_detail"
    TEAMS = "teams"
    GAMEWEEKS = "gameweeks"
    PLAYERS = "players"


STATIC_RESOURCES = frozenset({
    ResourceKind.BOOTSTRAP_STATIC,
    ResourceKind.TEAMS,
    ResourceKind.GAMEWEEKS,
    ResourceKind.PLAYERS,
})


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TeamRecord(_Record):
    id: int
    name: str
    short_name: Optional[str] = None
    code: Optional[int] = None
    strength: Optional[int] = None


class ElementRecord(_Record):
    """A player as listed in bootstrap-static."""
    id: int
    web_name: str
    first_name: Optional[str] = None
    second_name: Optional[str] = None
    team: int
    element_type: int
    now_cost: Optional[int] = None
    total_points: Optional[int] = None
    form: Optional[str] = None
    selected_by_percent: Optional[str] = None
    status: Optional[str] = None


class EventRecord(_Record):
    """A gameweek as listed in bootstrap-static."""
    id: int
    name: Optional[str] = None
    deadline_time: Optional[datetime] = None
    is_current: bool = False
    is_next: bool = False
    is_previous: bool = False
    finished: bool = False
    data_checked: bool = False


class FixtureRecord(_Record):
    id: int
    event: Optional[int] = None
    team_h: int
    team_a: int
    kickoff_time: Optional[datetime] = None
    started: Optional[bool] = None
    finished: bool = False
    finished_provisional: bool = False
    team_h_score: Optional[int] = None
    team_a_score: Optional[int] = None
    minutes: int = 0

    @property
    def has_result(self) -> bool:
        """Finished with both scores reported."""
        return self.finished and self.team_h_score is not None and self.team_a_score is not None


class LiveElementStats(_Record):
    minutes: int = 0
    goals_scored: int = 0
    assists: int = 0
    clean_sheets: int = 0
    goals_conceded: int = 0
    own_goals: int = 0
    penalties_saved: int = 0
    penalties_missed: int = 0
    yellow_cards: int = 0
    red_cards: int = 0
    saves: int = 0
    bonus: int = 0
    bps: int = 0
    influence: Optional[str] = None
    creativity: Optional[str] = None
    threat: Optional[str] = None
    ict_index: Optional[str] = None
    total_points: int = 0


class LiveElement(_Record):
    id: int
    stats: LiveElementStats = Field(default_factory=LiveElementStats)


class BootstrapSnapshot(_Record):
    events: List[EventRecord]
    teams: List[TeamRecord]
    elements: List[ElementRecord]
    element_types: List[Dict[str, Any]] = Field(default_factory=list)

    def current_event(self) -> Optional[EventRecord]:
        return next((e for e in self.events if e.is_current), None)


class FixtureSnapshot(_Record):
    fixtures: List[FixtureRecord]

    @classmethod
    def from_payload(cls, payload: Any) -> "FixtureSnapshot":
        # The fixtures endpoint returns a bare list
        if isinstance(payload, list):
            payload = {"fixtures": payload}
        return cls.model_validate(payload)


class LiveGameweekSnapshot(_Record):
    # None means the upstream omitted elements; an empty list means no data for the gameweek
    elements: Optional[List[LiveElement]] = None


class PlayerHistory(_Record):
    """One gameweek row from a player's current-season history."""
    round: int
    total_points: int = 0
    minutes: int = 0
    goals_scored: int = 0
    assists: int = 0
    clean_sheets: int = 0
    goals_conceded: int = 0
    own_goals: int = 0
    penalties_saved: int = 0
    penalties_missed: int = 0
    yellow_cards: int = 0
    red_cards: int = 0
    saves: int = 0
    bonus: int = 0
    bps: int = 0
    influence: Optional[str] = None
    creativity: Optional[str] = None
    threat: Optional[str] = None
    ict_index: Optional[str] = None


class PlayerSeason(_Record):
    """One past-season summary from a player's history_past."""
    season_name: str
    element_code: Optional[int] = None
    start_cost: Optional[int] = None
    end_cost: Optional[int] = None
    total_points: int = 0
    minutes: int = 0
    goals_scored: int = 0
    assists: int = 0
    clean_sheets: int = 0
    bonus: int = 0
    bps: int = 0


class PlayerDetailSnapshot(_Record):
    fixtures: List[Dict[str, Any]] = Field(default_factory=list)
    history: List[PlayerHistory] = Field(default_factory=list)
    history_past: List[PlayerSeason] = Field(default_factory=list)


SNAPSHOT_MODELS: Dict[ResourceKind, Type[BaseModel]] = {
    ResourceKind.BOOTSTRAP_STATIC: BootstrapSnapshot,
    ResourceKind.FIXTURES: FixtureSnapshot,
    ResourceKind.LIVE_GAMEWEEK: LiveGameweekSnapshot,
    ResourceKind.PLAYER_DETAIL: PlayerDetailSnapshot,
}


def parse_snapshot(kind: ResourceKind, payload: Any) -> BaseModel:
    """
    Validate a raw payload into the record type for `kind`.

    Raises:
        pydantic.ValidationError: If the payload does not match the expected structure
    """
    if kind == ResourceKind.FIXTURES:
        return FixtureSnapshot.from_payload(payload)
    model = SNAPSHOT_MODELS.get(kind)
    if model is None:
        raise ValueError(f"No snapshot record for resource kind {kind.value}")
    return model.model_validate(payload)
