"""Cache key namespace: `fpl:<resource>[:<identifier>][:<qualifier>]`."""

from typing import Optional

BOOTSTRAP_STATIC = "fpl:bootstrap-static"
TEAMS = "fpl:teams"
GAMEWEEKS = "fpl:gameweeks"
PLAYERS_BASIC = "fpl:players:basic"
PLAYERS_ENRICHED_PATTERN = "fpl:players:enriched*"
FIXTURES_ALL = "fpl:fixtures:all"
FIXTURES_GW_PATTERN = "fpl:fixtures:gw:*"
LAST_LIVE_REFRESH = "fpl:last_live_refresh"


def fixtures_key(gameweek: Optional[int] = None) -> str:
    return f"fpl:fixtures:gw:{gameweek}" if gameweek else FIXTURES_ALL


def live_gameweek_key(gameweek: int) -> str:
    return f"fpl:gameweek:{gameweek}:live"


def player_detail_key(player_id: int) -> str:
    return f"fpl:player:{player_id}:detail:raw"


def players_enriched_key(team_id: Optional[int] = None, position: Optional[str] = None) -> str:
    key = "fpl:players:enriched"
    if team_id:
        key += f":team:{team_id}"
    if position:
        key += f":pos:{position}"
    return key


def deadline_invalidation_keys(gameweek: int):
    """Keys whose contents describe the period up to a gameweek's deadline."""
    return [
        BOOTSTRAP_STATIC,
        GAMEWEEKS,
        fixtures_key(gameweek),
        PLAYERS_ENRICHED_PATTERN,
    ]
