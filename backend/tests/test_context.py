import asyncio
from datetime import timedelta

from fakes import NOW
from fpl_refresh.refresh.context import compute_priority
from fpl_refresh.refresh.state_detector import Regime


def _seed_live(db):
    db.add_gameweek(4, NOW - timedelta(days=1), is_current=True)
    db.add_gameweek(5, NOW + timedelta(days=6), is_next=True)
    db.add_fixture(100, 4, NOW - timedelta(minutes=30))


def test_priority_is_raised_in_the_matching_regime():
    assert compute_priority("post-match-refresh", Regime.POST_MATCH) == 1
    assert compute_priority("post-match-refresh", Regime.REGULAR) == 2
    assert compute_priority("live-refresh", Regime.LIVE_MATCH) == 1
    assert compute_priority("hourly-refresh", Regime.LIVE_MATCH) == 10
    assert compute_priority("unknown-queue", None) == 10


def test_context_is_derived_from_current_state(make_context, db):
    _seed_live(db)
    db.insert_refresh_log("live", "live-match", {}, NOW - timedelta(minutes=2))
    db.insert_refresh_log("live", "error", {}, NOW - timedelta(minutes=1))
    ctx = make_context()

    context = asyncio.run(ctx.enricher.build_context("live-refresh", "scheduler"))

    assert context.refresh_type == "live"
    assert context.regime == Regime.LIVE_MATCH
    assert context.gameweek == 4
    assert context.is_match_day
    assert context.priority == 1
    # The later error run does not count as a success
    assert context.last_refresh_time == NOW - timedelta(minutes=2)
    assert context.to_dict()["regime"] == "live-match"


def test_explicit_overrides_win(make_context, db):
    _seed_live(db)
    ctx = make_context()

    context = asyncio.run(ctx.enricher.build_context(
        "daily-refresh", "manual:admin", overrides={"gameweek": 2, "is_match_day": False}
    ))

    assert context.gameweek == 2
    assert not context.is_match_day
    assert context.triggered_by == "manual:admin"
    assert context.refresh_type == "full"


def test_lookup_failure_falls_back_to_base_context(make_context, db):
    db.fail_reads = True
    ctx = make_context()

    context = asyncio.run(ctx.enricher.build_context("post-match-refresh", "api"))

    assert context.regime is None
    assert context.priority == 2
    assert context.gameweek is None
    assert context.last_refresh_time is None


def test_off_season_runs_count_as_successful_refreshes(make_context, db):
    db.insert_refresh_log("regular", "off-season", {}, NOW - timedelta(hours=1))
    db.insert_refresh_log("regular", "error", {}, NOW - timedelta(minutes=5))
    ctx = make_context()

    assert ctx.enricher.get_last_refresh_time("regular") == NOW - timedelta(hours=1)
