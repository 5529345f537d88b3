import asyncio
from datetime import timedelta

from fakes import NOW, bootstrap_payload, fixture_payload, live_payload, player_detail_payload
from fpl_refresh.cache import keys
from fpl_refresh.fpl_api.client import FPLAPIError
from fpl_refresh.fpl_api.models import ResourceKind
from fpl_refresh.refresh.state_detector import Regime


def _upserts_into(db, table):
    return [rows for t, rows in db.upsert_calls if t == table]


def test_unchanged_bootstrap_performs_no_writes(make_context, db, fetcher):
    fetcher.set(ResourceKind.BOOTSTRAP_STATIC, bootstrap_payload())
    ctx = make_context()

    async def _run():
        first = await ctx.sync_engine.sync_bootstrap(regime=Regime.REGULAR)
        writes_after_first = len(db.upsert_calls)
        second = await ctx.sync_engine.sync_bootstrap(regime=Regime.REGULAR)
        return first, writes_after_first, second

    first, writes_after_first, second = asyncio.run(_run())

    assert first.changed
    assert first.write_result["teams_updated"] == 2
    assert first.write_result["players_updated"] == 3
    assert first.write_result["gameweeks_updated"] == 3
    assert not second.changed
    assert second.reason == "unchanged"
    assert len(db.upsert_calls) == writes_after_first


def test_unchanged_bootstrap_keeps_the_cached_entry(make_context, clock, fetcher):
    fetcher.set(ResourceKind.BOOTSTRAP_STATIC, bootstrap_payload())
    ctx = make_context()

    async def _run():
        await ctx.sync_engine.sync_bootstrap(regime=Regime.REGULAR)
        before = await ctx.cache.get_entry(keys.BOOTSTRAP_STATIC)
        clock.advance(minutes=30)
        second = await ctx.sync_engine.sync_bootstrap(regime=Regime.REGULAR)
        return before, second, await ctx.cache.get_entry(keys.BOOTSTRAP_STATIC)

    before, second, after = asyncio.run(_run())

    assert second.reason == "unchanged"
    assert before.stored_at == NOW
    assert after.stored_at == NOW


def test_partially_written_bootstrap_is_rewritten_next_cycle(make_context, db, fetcher):
    fetcher.set(ResourceKind.BOOTSTRAP_STATIC, bootstrap_payload())
    db.fail_upsert = lambda table, rows: table == "players"
    ctx = make_context()

    async def _run():
        first = await ctx.sync_engine.sync_bootstrap(regime=Regime.REGULAR)
        cached = await ctx.cache.get(keys.BOOTSTRAP_STATIC)
        db.fail_upsert = None
        second = await ctx.sync_engine.sync_bootstrap(regime=Regime.REGULAR)
        return first, cached, second

    first, cached, second = asyncio.run(_run())

    assert first.reason == "partial-write"
    assert first.failed_batches == 2
    assert db.rows("players") == []
    assert cached is None
    assert second.changed
    assert second.reason is None
    assert second.failed_batches == 0
    assert set(db.tables["players"]) == {10, 11, 20}


def test_bootstrap_sync_caches_slices_and_never_sends_the_synced_flag(make_context, db, fetcher):
    fetcher.set(ResourceKind.BOOTSTRAP_STATIC, bootstrap_payload())
    db.add_gameweek(3, NOW - timedelta(days=8), finished=True, synced=True)
    ctx = make_context()

    async def _run():
        await ctx.cache.set(keys.players_enriched_key(team_id=1), ["stale"], 600)
        await ctx.sync_engine.sync_bootstrap(regime=Regime.REGULAR)
        return (
            await ctx.cache.get(keys.TEAMS),
            await ctx.cache.get(keys.PLAYERS_BASIC),
            await ctx.cache.get(keys.players_enriched_key(team_id=1)),
        )

    teams, players, enriched = asyncio.run(_run())

    assert [t["id"] for t in teams] == [1, 2]
    assert len(players) == 3
    assert enriched is None
    for batch in _upserts_into(db, "gameweeks"):
        assert all("is_player_stats_synced" not in row for row in batch)
    assert db.tables["gameweeks"][3]["is_player_stats_synced"] is True
    assert db.tables["players"][10]["position"] == "MID"


def test_force_writes_even_when_unchanged(make_context, db, fetcher):
    fetcher.set(ResourceKind.BOOTSTRAP_STATIC, bootstrap_payload())
    ctx = make_context()

    async def _run():
        await ctx.sync_engine.sync_bootstrap(regime=Regime.REGULAR)
        return await ctx.sync_engine.sync_bootstrap(force=True, regime=Regime.REGULAR)

    result = asyncio.run(_run())
    assert result.changed
    assert len(_upserts_into(db, "teams")) == 2


def test_invalid_snapshot_is_skipped_without_writes(make_context, db, fetcher):
    fetcher.set(ResourceKind.BOOTSTRAP_STATIC, {"teams": [], "elements": []})
    ctx = make_context()

    async def _run():
        result = await ctx.sync_engine.sync_bootstrap(regime=Regime.REGULAR)
        return result, await ctx.cache.get(keys.BOOTSTRAP_STATIC)

    result, cached = asyncio.run(_run())
    assert not result.changed
    assert result.reason == "invalid-structure"
    assert cached is None
    assert db.upsert_calls == []


def test_fixture_rows_record_finished_only_with_scores(make_context, db, fetcher):
    kickoff = NOW - timedelta(hours=2)
    fetcher.set(ResourceKind.FIXTURES, [
        fixture_payload(1, 4, kickoff, finished=True, home_score=2, away_score=1),
        fixture_payload(2, 4, kickoff, finished=True),
        fixture_payload(3, 4, NOW + timedelta(hours=3)),
    ], gameweek=4)
    ctx = make_context()

    result = asyncio.run(ctx.sync_engine.sync_fixtures(4, regime=Regime.LIVE_MATCH))

    assert result.write_result["fixtures_updated"] == 3
    assert db.tables["fixtures"][1]["finished"] is True
    assert db.tables["fixtures"][1]["home_score"] == 2
    assert db.tables["fixtures"][2]["finished"] is False
    assert db.tables["fixtures"][3]["finished"] is False


def test_live_gameweek_sync_caches_with_short_ttl(make_context, db, fetcher):
    fetcher.set(ResourceKind.LIVE_GAMEWEEK, live_payload([10, 11]), gameweek=4)
    ctx = make_context()

    async def _run():
        result = await ctx.sync_engine.sync_live_gameweek(4, regime=Regime.LIVE_MATCH)
        return result, await ctx.cache.get_entry(keys.live_gameweek_key(4))

    result, entry = asyncio.run(_run())
    assert result.changed
    assert result.write_result["elements"] == 2
    assert entry.ttl_seconds == 15 * 60
    assert db.upsert_calls == []


def test_player_detail_sync_writes_history_and_seasons(make_context, db, fetcher):
    fetcher.set(ResourceKind.PLAYER_DETAIL, player_detail_payload(), player_id=10)
    ctx = make_context()

    result = asyncio.run(ctx.sync_engine.sync_player_detail(10))

    assert result.write_result["season_stats_updated"] == 1
    assert result.write_result["gameweek_stats_updated"] == 2
    assert db.tables["player_season_stats"][(10, "2022/23")]["total_points"] == 202
    assert db.tables["player_gameweek_stats"][(10, 1)]["goals_scored"] == 1


def test_finished_gameweek_stats_are_written_once(make_context, db, fetcher):
    db.add_gameweek(3, NOW - timedelta(days=8), finished=True)
    fetcher.set(ResourceKind.LIVE_GAMEWEEK, live_payload([10, 11, 20]), gameweek=3)
    ctx = make_context()

    first = asyncio.run(ctx.sync_engine.sync_finished_gameweek_stats())
    rows_after_first = dict(db.tables["player_gameweek_stats"])
    second = asyncio.run(ctx.sync_engine.sync_finished_gameweek_stats())

    assert first["gameweeks_synced"] == [3]
    assert first["rows_upserted"] == 3
    # Batch size 2: two batches
    assert len(_upserts_into(db, "player_gameweek_stats")) == 2
    assert db.tables["gameweeks"][3]["is_player_stats_synced"] is True
    assert second["gameweeks_synced"] == []
    assert fetcher.count(ResourceKind.LIVE_GAMEWEEK, gameweek=3) == 1

    # Clearing the flag and re-running reproduces identical rows
    db.mark_gameweek_player_stats_synced(3, False)
    third = asyncio.run(ctx.sync_engine.sync_finished_gameweek_stats())
    assert third["gameweeks_synced"] == [3]
    assert db.tables["player_gameweek_stats"] == rows_after_first


def test_failed_batch_leaves_gameweek_unsynced(make_context, db, fetcher):
    db.add_gameweek(3, NOW - timedelta(days=8), finished=True)
    fetcher.set(ResourceKind.LIVE_GAMEWEEK, live_payload([10, 11, 20]), gameweek=3)
    db.fail_upsert = lambda table, rows: any(r.get("player_id") == 20 for r in rows)
    ctx = make_context()

    summary = asyncio.run(ctx.sync_engine.sync_finished_gameweek_stats())

    assert summary["gameweeks_failed"] == [3]
    assert summary["rows_upserted"] == 2
    assert set(db.tables["player_gameweek_stats"]) == {(10, 3), (11, 3)}
    assert db.tables["gameweeks"][3]["is_player_stats_synced"] is False


def test_missing_elements_are_retried_later_and_empty_lists_are_synced(make_context, db, fetcher):
    db.add_gameweek(2, NOW - timedelta(days=15), finished=True)
    db.add_gameweek(3, NOW - timedelta(days=8), finished=True)
    fetcher.set(ResourceKind.LIVE_GAMEWEEK, {"elements": []}, gameweek=2)
    fetcher.set(ResourceKind.LIVE_GAMEWEEK, {}, gameweek=3)
    ctx = make_context()

    summary = asyncio.run(ctx.sync_engine.sync_finished_gameweek_stats())

    assert summary["gameweeks_synced"] == [2]
    assert summary["gameweeks_skipped"] == [3]
    assert db.tables["gameweeks"][2]["is_player_stats_synced"] is True
    assert db.tables["gameweeks"][3]["is_player_stats_synced"] is False


def test_one_failing_gameweek_does_not_stop_the_others(make_context, db, fetcher):
    db.add_gameweek(2, NOW - timedelta(days=15), finished=True)
    db.add_gameweek(3, NOW - timedelta(days=8), finished=True)
    fetcher.fail(ResourceKind.LIVE_GAMEWEEK, FPLAPIError("503"), gameweek=2)
    fetcher.set(ResourceKind.LIVE_GAMEWEEK, live_payload([10]), gameweek=3)
    ctx = make_context()

    summary = asyncio.run(ctx.sync_engine.sync_finished_gameweek_stats())

    assert summary["gameweeks_failed"] == [2]
    assert summary["gameweeks_synced"] == [3]


def test_deadline_invalidations_cover_future_deadlines(make_context, fetcher):
    fetcher.set(ResourceKind.BOOTSTRAP_STATIC, bootstrap_payload())
    ctx = make_context()

    async def _run():
        scheduled = await ctx.sync_engine.reestablish_deadline_invalidations()
        pending = ctx.cache.pending_invalidations()
        # Re-establishing replaces rather than duplicates
        await ctx.sync_engine.reestablish_deadline_invalidations()
        again = ctx.cache.pending_invalidations()
        await ctx.cache.cancel_scheduled_invalidations()
        return scheduled, pending, again

    scheduled, pending, again = asyncio.run(_run())

    deadline = NOW + timedelta(days=6)
    assert scheduled == 1
    assert sorted(key for key, _ in pending) == sorted(keys.deadline_invalidation_keys(5))
    assert all(at == deadline for _, at in pending)
    assert again == pending


def test_update_all_data_runs_every_step(make_context, db, fetcher):
    db.add_gameweek(3, NOW - timedelta(days=8), finished=True)
    fetcher.set(ResourceKind.BOOTSTRAP_STATIC, bootstrap_payload())
    fetcher.set(ResourceKind.FIXTURES, [fixture_payload(1, 4, NOW + timedelta(hours=3))])
    fetcher.set(ResourceKind.LIVE_GAMEWEEK, live_payload([10]), gameweek=4)
    fetcher.set(ResourceKind.LIVE_GAMEWEEK, live_payload([10, 11]), gameweek=3)
    ctx = make_context()

    async def _run():
        summary = await ctx.sync_engine.update_all_data(Regime.REGULAR)
        await ctx.cache.cancel_scheduled_invalidations()
        return summary

    summary = asyncio.run(_run())

    assert summary["errors"] == []
    assert summary["bootstrap"]["changed"]
    assert summary["fixtures"]["changed"]
    assert summary["live_gameweek"]["changed"]
    assert summary["player_stats"]["gameweeks_synced"] == [3]
    assert summary["deadline_invalidations"] == 1


def test_update_all_data_records_failed_steps_and_continues(make_context, fetcher):
    fetcher.set(ResourceKind.BOOTSTRAP_STATIC, bootstrap_payload())
    fetcher.fail(ResourceKind.FIXTURES, FPLAPIError("boom"))
    fetcher.set(ResourceKind.LIVE_GAMEWEEK, live_payload([10]), gameweek=4)
    ctx = make_context()

    async def _run():
        summary = await ctx.sync_engine.update_all_data(Regime.REGULAR)
        await ctx.cache.cancel_scheduled_invalidations()
        return summary

    summary = asyncio.run(_run())

    assert [e["step"] for e in summary["errors"]] == ["fixtures"]
    assert summary["live_gameweek"]["changed"]


def test_update_all_data_reports_partially_written_steps(make_context, db, fetcher):
    fetcher.set(ResourceKind.BOOTSTRAP_STATIC, bootstrap_payload())
    fetcher.set(ResourceKind.FIXTURES, [fixture_payload(1, 4, NOW + timedelta(hours=3))])
    fetcher.set(ResourceKind.LIVE_GAMEWEEK, live_payload([10]), gameweek=4)
    db.fail_upsert = lambda table, rows: table == "players"
    ctx = make_context()

    async def _run():
        summary = await ctx.sync_engine.update_all_data(Regime.REGULAR)
        await ctx.cache.cancel_scheduled_invalidations()
        return summary

    summary = asyncio.run(_run())

    assert summary["errors"] == [{"step": "bootstrap", "error": "2 batch(es) failed to write"}]
    assert summary["bootstrap"]["reason"] == "partial-write"
    assert summary["fixtures"]["changed"]
