"""
TTL policy per resource kind and regime.

Live-oriented resources drop to minutes while a match is live; static
bootstrap data is always the longest tier and only moderately shortened
during live play.
"""

from typing import Dict

from fpl_refresh.fpl_api.models import ResourceKind, STATIC_RESOURCES
from fpl_refresh.refresh.state_detector import Regime

MINUTE = 60
HOUR = 60 * MINUTE

STATIC_TTL: Dict[Regime, int] = {
    Regime.LIVE_MATCH: 2 * HOUR,
    Regime.POST_MATCH: 4 * HOUR,
    Regime.PRE_DEADLINE: 4 * HOUR,
    Regime.REGULAR: 6 * HOUR,
    Regime.OFF_SEASON: 24 * HOUR,
}

# TTL configuration by resource kind (in seconds)
TTL_CONFIG: Dict[ResourceKind, Dict[Regime, int]] = {
    ResourceKind.FIXTURES: {
        Regime.LIVE_MATCH: 15 * MINUTE,
        Regime.POST_MATCH: 1 * HOUR,
        Regime.PRE_DEADLINE: 4 * HOUR,
        Regime.REGULAR: 4 * HOUR,
        Regime.OFF_SEASON: 12 * HOUR,
    },
    ResourceKind.LIVE_GAMEWEEK: {
        Regime.LIVE_MATCH: 15 * MINUTE,
        Regime.POST_MATCH: 1 * HOUR,
        Regime.PRE_DEADLINE: 4 * HOUR,
        Regime.REGULAR: 4 * HOUR,
        Regime.OFF_SEASON: 12 * HOUR,
    },
    ResourceKind.PLAYER_DETAIL: {
        Regime.LIVE_MATCH: 15 * MINUTE,
        Regime.POST_MATCH: 2 * HOUR,
        Regime.PRE_DEADLINE: 2 * HOUR,
        Regime.REGULAR: 4 * HOUR,
        Regime.OFF_SEASON: 12 * HOUR,
    },
}
for _kind in STATIC_RESOURCES:
    TTL_CONFIG[_kind] = STATIC_TTL

# Marker set after each live refresh
LAST_LIVE_REFRESH_TTL = 30 * MINUTE


def ttl(kind: ResourceKind, regime: Regime, scale: float = 1.0) -> int:
    """
    Get the TTL in seconds for a resource under a regime.

    Args:
        kind: Resource kind
        regime: Current regime
        scale: Multiplier applied to the table value (CACHE_TTL_SCALE)

    Returns:
        TTL in whole seconds, never below 1
    """
    seconds = TTL_CONFIG[kind][regime]
    return max(1, int(seconds * scale))
