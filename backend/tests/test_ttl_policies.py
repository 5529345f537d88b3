from fpl_refresh.cache.ttl_policies import ttl
from fpl_refresh.fpl_api.models import ResourceKind
from fpl_refresh.refresh.state_detector import Regime


def test_live_gameweek_ttl_shorter_while_live():
    assert ttl(ResourceKind.LIVE_GAMEWEEK, Regime.LIVE_MATCH) < ttl(ResourceKind.LIVE_GAMEWEEK, Regime.REGULAR)
    assert ttl(ResourceKind.LIVE_GAMEWEEK, Regime.LIVE_MATCH) == 15 * 60


def test_bootstrap_is_always_the_longest_tier():
    for regime in Regime:
        bootstrap = ttl(ResourceKind.BOOTSTRAP_STATIC, regime)
        for kind in (ResourceKind.FIXTURES, ResourceKind.LIVE_GAMEWEEK, ResourceKind.PLAYER_DETAIL):
            assert bootstrap >= ttl(kind, regime), (kind, regime)


def test_bootstrap_slices_share_the_bootstrap_ttl():
    for kind in (ResourceKind.TEAMS, ResourceKind.GAMEWEEKS, ResourceKind.PLAYERS):
        assert ttl(kind, Regime.REGULAR) == ttl(ResourceKind.BOOTSTRAP_STATIC, Regime.REGULAR)


def test_scale_is_applied_with_a_floor_of_one_second():
    assert ttl(ResourceKind.FIXTURES, Regime.REGULAR, scale=0.5) == 2 * 60 * 60
    assert ttl(ResourceKind.FIXTURES, Regime.LIVE_MATCH, scale=0.0001) == 1
