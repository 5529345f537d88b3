"""
Diff sync engine.

Fetches an upstream snapshot, compares it with the cached copy and only writes
to the persistent store (and invalidates dependent cache entries) when the
snapshot changed. The bootstrap resource is large and fetched every cycle but
rarely changes, so the comparison is what keeps refreshes cheap.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ValidationError

from fpl_refresh.cache import keys
from fpl_refresh.cache.store import CacheStore
from fpl_refresh.cache.ttl_policies import ttl
from fpl_refresh.config import Config
from fpl_refresh.fpl_api.client import FPLAPIClient
from fpl_refresh.fpl_api.models import (
    BootstrapSnapshot,
    ElementRecord,
    EventRecord,
    FixtureRecord,
    LiveElement,
    LiveGameweekSnapshot,
    PlayerHistory,
    PlayerSeason,
    ResourceKind,
    TeamRecord,
    parse_snapshot,
)
from fpl_refresh.refresh.state_detector import Regime, StateDetector

logger = logging.getLogger(__name__)

POSITION_MAP = {1: "GKP", 2: "DEF", 3: "MID", 4: "FWD"}

PLAYER_GAMEWEEK_STATS_CONFLICT = "player_id,gameweek_id"
PLAYER_SEASON_STATS_CONFLICT = "player_id,season_name"

_STAT_FIELDS = (
    "minutes", "goals_scored", "assists", "clean_sheets", "goals_conceded",
    "own_goals", "penalties_saved", "penalties_missed", "yellow_cards",
    "red_cards", "saves", "bonus", "bps", "influence", "creativity", "threat",
    "ict_index", "total_points",
)


@dataclass
class SyncResult:
    """Outcome of one diff-then-write pass over a resource."""
    resource: str
    changed: bool
    write_result: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    # Validated snapshot from this pass (also set when unchanged)
    snapshot: Optional[BaseModel] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "resource": self.resource,
            "changed": self.changed,
            "write_result": self.write_result,
        }
        if self.reason:
            data["reason"] = self.reason
        return data

    @property
    def failed_batches(self) -> int:
        return self.write_result.get("failed_batches", 0)


def chunked(rows: Sequence[Dict[str, Any]], size: int) -> Iterator[List[Dict[str, Any]]]:
    for start in range(0, len(rows), size):
        yield list(rows[start:start + size])


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def transform_team(team: TeamRecord) -> Dict[str, Any]:
    return {
        "id": team.id,
        "name": team.name,
        "short_name": team.short_name,
        "code": team.code,
        "strength": team.strength,
    }


def transform_player(element: ElementRecord) -> Dict[str, Any]:
    return {
        "id": element.id,
        "web_name": element.web_name,
        "first_name": element.first_name,
        "second_name": element.second_name,
        "team_id": element.team,
        "position": POSITION_MAP.get(element.element_type),
        "now_cost": element.now_cost,
        "total_points": element.total_points,
        "form": element.form,
        "selected_by_percent": element.selected_by_percent,
        "status": element.status,
    }


def transform_gameweek(event: EventRecord) -> Dict[str, Any]:
    # is_player_stats_synced is owned by the stats sync and never sent here
    return {
        "id": event.id,
        "name": event.name,
        "deadline_time": _iso(event.deadline_time),
        "is_current": event.is_current,
        "is_next": event.is_next,
        "is_previous": event.is_previous,
        "finished": event.finished,
        "data_checked": event.data_checked,
    }


def transform_fixture(fixture: FixtureRecord) -> Dict[str, Any]:
    # finished is only recorded together with both scores; until then the
    # fixture keeps counting as live
    return {
        "id": fixture.id,
        "gameweek_id": fixture.event,
        "home_team_id": fixture.team_h,
        "away_team_id": fixture.team_a,
        "kickoff_time": _iso(fixture.kickoff_time),
        "started": fixture.started,
        "finished": fixture.has_result,
        "home_score": fixture.team_h_score,
        "away_score": fixture.team_a_score,
    }


def transform_live_element(gameweek_id: int, element: LiveElement) -> Dict[str, Any]:
    row = {"player_id": element.id, "gameweek_id": gameweek_id}
    for name in _STAT_FIELDS:
        row[name] = getattr(element.stats, name)
    return row


def transform_player_history(player_id: int, history: PlayerHistory) -> Dict[str, Any]:
    row = {"player_id": player_id, "gameweek_id": history.round}
    for name in _STAT_FIELDS:
        row[name] = getattr(history, name)
    return row


def transform_player_season(player_id: int, season: PlayerSeason) -> Dict[str, Any]:
    return {
        "player_id": player_id,
        "season_name": season.season_name,
        "element_code": season.element_code,
        "start_cost": season.start_cost,
        "end_cost": season.end_cost,
        "total_points": season.total_points,
        "minutes": season.minutes,
        "goals_scored": season.goals_scored,
        "assists": season.assists,
        "clean_sheets": season.clean_sheets,
        "bonus": season.bonus,
        "bps": season.bps,
    }


class DiffSyncEngine:
    """Diff-then-write synchronization between the FPL API, the cache and Supabase."""

    def __init__(
        self,
        fpl_client: FPLAPIClient,
        cache: CacheStore,
        db_client,
        detector: StateDetector,
        config: Config,
    ):
        self.fpl_client = fpl_client
        self.cache = cache
        self.db_client = db_client
        self.detector = detector
        self.batch_size = config.sync_batch_size
        self.ttl_scale = config.cache_ttl_scale

    def _ttl(self, kind: ResourceKind, regime: Regime) -> int:
        return ttl(kind, regime, self.ttl_scale)

    @staticmethod
    def cache_key(
        kind: ResourceKind,
        gameweek: Optional[int] = None,
        player_id: Optional[int] = None
    ) -> str:
        if kind == ResourceKind.BOOTSTRAP_STATIC:
            return keys.BOOTSTRAP_STATIC
        if kind == ResourceKind.FIXTURES:
            return keys.fixtures_key(gameweek)
        if kind == ResourceKind.LIVE_GAMEWEEK:
            return keys.live_gameweek_key(gameweek)
        if kind == ResourceKind.PLAYER_DETAIL:
            return keys.player_detail_key(player_id)
        raise ValueError(f"{kind.value} has no snapshot cache key")

    @staticmethod
    def _fetch_params(gameweek: Optional[int], player_id: Optional[int]) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if gameweek is not None:
            params["gameweek"] = gameweek
        if player_id is not None:
            params["player_id"] = player_id
        return params

    async def _regime(self, regime: Optional[Regime]) -> Regime:
        return regime if regime is not None else await self.detector.classify()

    # Read-through accessors

    async def get_resource(
        self,
        kind: ResourceKind,
        gameweek: Optional[int] = None,
        player_id: Optional[int] = None,
        regime: Optional[Regime] = None,
    ) -> BaseModel:
        """
        Cached snapshot of a resource, fetched and stored on a miss.

        Raises:
            FPLAPIError: When the resource is not cached and the fetch fails
        """
        key = self.cache_key(kind, gameweek, player_id)
        regime = await self._regime(regime)
        params = self._fetch_params(gameweek, player_id)
        payload = await self.cache.get_or_fetch(
            key,
            lambda: self.fpl_client.fetch(kind, **params),
            self._ttl(kind, regime),
        )
        return parse_snapshot(kind, payload)

    async def get_bootstrap(self, regime: Optional[Regime] = None) -> BootstrapSnapshot:
        return await self.get_resource(ResourceKind.BOOTSTRAP_STATIC, regime=regime)

    # Diff then write

    async def sync_resource(
        self,
        kind: ResourceKind,
        gameweek: Optional[int] = None,
        player_id: Optional[int] = None,
        force: bool = False,
        regime: Optional[Regime] = None,
    ) -> SyncResult:
        """
        Fetch a snapshot and write it through only if it differs from the cached copy.

        Args:
            kind: Resource to sync
            gameweek: Gameweek for fixtures / live gameweek
            player_id: Player for player detail
            force: Write even when the snapshot is unchanged
            regime: Regime used for the TTL (classified when omitted)

        Returns:
            SyncResult with changed=False and no writes when nothing changed
        """
        key = self.cache_key(kind, gameweek, player_id)

        # Single-flight per resource key: a concurrent sync of the same
        # resource waits and then sees no diff
        async with self.cache.lock(key):
            payload = await self.fpl_client.fetch(kind, **self._fetch_params(gameweek, player_id))

            try:
                snapshot = parse_snapshot(kind, payload)
            except ValidationError as e:
                logger.warning("Snapshot failed validation, skipping sync", extra={
                    "resource": kind.value,
                    "key": key,
                    "errors": e.error_count()
                })
                return SyncResult(kind.value, False, reason="invalid-structure")

            if not force:
                cached = await self.cache.get(key)
                if cached is not None and cached == payload:
                    logger.debug("Snapshot unchanged", extra={"resource": kind.value, "key": key})
                    return SyncResult(kind.value, False, reason="unchanged", snapshot=snapshot)

            regime = await self._regime(regime)
            await self.cache.set(key, payload, self._ttl(kind, regime))
            write_result = await self._persist(kind, snapshot, payload, regime, gameweek, player_id)
            write_result["invalidated"] = await self._invalidate_dependents(kind, gameweek)

            if write_result.get("failed_batches"):
                # Rows missing from the database must not be masked by a cached copy
                await self.cache.invalidate(key)
                logger.error("Snapshot partially written, cache entry dropped", extra={
                    "resource": kind.value,
                    "key": key,
                    "regime": regime.value,
                    "write_result": write_result
                })
                return SyncResult(kind.value, True, write_result, reason="partial-write", snapshot=snapshot)

        logger.info("Snapshot changed, synced", extra={
            "resource": kind.value,
            "key": key,
            "forced": force,
            "regime": regime.value,
            "write_result": write_result
        })
        return SyncResult(kind.value, True, write_result, snapshot=snapshot)

    async def sync_bootstrap(self, force: bool = False, regime: Optional[Regime] = None) -> SyncResult:
        return await self.sync_resource(ResourceKind.BOOTSTRAP_STATIC, force=force, regime=regime)

    async def sync_fixtures(
        self,
        gameweek: Optional[int] = None,
        force: bool = False,
        regime: Optional[Regime] = None
    ) -> SyncResult:
        return await self.sync_resource(ResourceKind.FIXTURES, gameweek=gameweek, force=force, regime=regime)

    async def sync_live_gameweek(
        self,
        gameweek: int,
        force: bool = False,
        regime: Optional[Regime] = None
    ) -> SyncResult:
        return await self.sync_resource(ResourceKind.LIVE_GAMEWEEK, gameweek=gameweek, force=force, regime=regime)

    async def sync_player_detail(self, player_id: int, force: bool = False) -> SyncResult:
        return await self.sync_resource(ResourceKind.PLAYER_DETAIL, player_id=player_id, force=force)

    async def _persist(
        self,
        kind: ResourceKind,
        snapshot: BaseModel,
        payload: Any,
        regime: Regime,
        gameweek: Optional[int],
        player_id: Optional[int],
    ) -> Dict[str, Any]:
        if kind == ResourceKind.BOOTSTRAP_STATIC:
            return await self._persist_bootstrap(snapshot, payload, regime)

        if kind == ResourceKind.FIXTURES:
            rows = [transform_fixture(f) for f in snapshot.fixtures]
            written, failed = self._upsert_batches("fixtures", rows)
            return {"fixtures_updated": written, "failed_batches": failed}

        if kind == ResourceKind.LIVE_GAMEWEEK:
            # Live stats are served from the cache; rows are written once the gameweek finishes
            return {"elements": len(snapshot.elements or [])}

        if kind == ResourceKind.PLAYER_DETAIL:
            season_rows = [transform_player_season(player_id, s) for s in snapshot.history_past]
            history_rows = [transform_player_history(player_id, h) for h in snapshot.history]
            seasons, failed_seasons = self._upsert_batches(
                "player_season_stats", season_rows, PLAYER_SEASON_STATS_CONFLICT
            )
            history, failed_history = self._upsert_batches(
                "player_gameweek_stats", history_rows, PLAYER_GAMEWEEK_STATS_CONFLICT
            )
            return {
                "season_stats_updated": seasons,
                "gameweek_stats_updated": history,
                "failed_batches": failed_seasons + failed_history,
            }

        return {}

    async def _persist_bootstrap(
        self,
        snapshot: BootstrapSnapshot,
        payload: Dict[str, Any],
        regime: Regime,
    ) -> Dict[str, Any]:
        teams, failed_teams = self._upsert_batches("teams", [transform_team(t) for t in snapshot.teams])
        players, failed_players = self._upsert_batches("players", [transform_player(e) for e in snapshot.elements])
        gameweeks, failed_gameweeks = self._upsert_batches(
            "gameweeks", [transform_gameweek(e) for e in snapshot.events]
        )

        await self.cache.set_many([
            (keys.TEAMS, payload.get("teams", []), self._ttl(ResourceKind.TEAMS, regime)),
            (keys.GAMEWEEKS, payload.get("events", []), self._ttl(ResourceKind.GAMEWEEKS, regime)),
            (keys.PLAYERS_BASIC, payload.get("elements", []), self._ttl(ResourceKind.PLAYERS, regime)),
        ])

        return {
            "teams_updated": teams,
            "players_updated": players,
            "gameweeks_updated": gameweeks,
            "failed_batches": failed_teams + failed_players + failed_gameweeks,
        }

    async def _invalidate_dependents(self, kind: ResourceKind, gameweek: Optional[int]) -> int:
        if kind == ResourceKind.FIXTURES:
            if gameweek is None:
                return await self.cache.invalidate_pattern(keys.FIXTURES_GW_PATTERN)
            return 0
        return await self.cache.invalidate_pattern(keys.PLAYERS_ENRICHED_PATTERN)

    def _upsert_batches(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        on_conflict: str = "id"
    ) -> Tuple[int, int]:
        """
        Upsert rows in fixed-size batches.

        A failed batch is logged and does not stop the others.

        Returns:
            (rows written, failed batch count)
        """
        written = 0
        failed = 0
        for index, batch in enumerate(chunked(rows, self.batch_size)):
            try:
                written += self.db_client.upsert_rows(table, batch, on_conflict=on_conflict)
            except Exception as e:
                failed += 1
                logger.error("Batch upsert failed", extra={
                    "table": table,
                    "batch_index": index,
                    "batch_size": len(batch),
                    "error": str(e)
                }, exc_info=True)
        return written, failed

    # Finished gameweeks

    async def sync_finished_gameweek_stats(self) -> Dict[str, Any]:
        """
        Write per-player stats once for every finished, not yet synced gameweek.

        The synced flag is set only after every batch of a gameweek succeeded;
        otherwise it stays false and the whole gameweek is retried next time.
        A failure in one gameweek does not stop the others.
        """
        summary: Dict[str, Any] = {
            "gameweeks_synced": [],
            "gameweeks_skipped": [],
            "gameweeks_failed": [],
            "rows_upserted": 0,
        }
        pending = self.db_client.get_gameweeks(finished=True, is_player_stats_synced=False)

        for row in pending:
            gameweek_id = int(row["id"])
            try:
                payload = await self.fpl_client.fetch(ResourceKind.LIVE_GAMEWEEK, gameweek=gameweek_id)
                try:
                    snapshot = LiveGameweekSnapshot.model_validate(payload)
                except ValidationError as e:
                    logger.warning("Live gameweek data invalid, will retry later", extra={
                        "gameweek": gameweek_id,
                        "errors": e.error_count()
                    })
                    summary["gameweeks_skipped"].append(gameweek_id)
                    continue

                if snapshot.elements is None:
                    logger.warning("Live gameweek data has no elements, will retry later", extra={
                        "gameweek": gameweek_id
                    })
                    summary["gameweeks_skipped"].append(gameweek_id)
                    continue

                if not snapshot.elements:
                    # Nothing to write for this gameweek
                    self.db_client.mark_gameweek_player_stats_synced(gameweek_id)
                    summary["gameweeks_synced"].append(gameweek_id)
                    continue

                rows = [transform_live_element(gameweek_id, e) for e in snapshot.elements]
                written, failed = self._upsert_batches(
                    "player_gameweek_stats", rows, PLAYER_GAMEWEEK_STATS_CONFLICT
                )
                summary["rows_upserted"] += written

                if failed:
                    logger.warning("Gameweek stats partially written, leaving unsynced", extra={
                        "gameweek": gameweek_id,
                        "failed_batches": failed,
                        "rows_written": written
                    })
                    summary["gameweeks_failed"].append(gameweek_id)
                    continue

                self.db_client.mark_gameweek_player_stats_synced(gameweek_id)
                await self.cache.invalidate_pattern(keys.PLAYERS_ENRICHED_PATTERN)
                summary["gameweeks_synced"].append(gameweek_id)

                logger.info("Gameweek player stats synced", extra={
                    "gameweek": gameweek_id,
                    "rows": written
                })

            except Exception as e:
                logger.error("Gameweek player stats sync failed", extra={
                    "gameweek": gameweek_id,
                    "error": str(e)
                }, exc_info=True)
                summary["gameweeks_failed"].append(gameweek_id)

        return summary

    # Deadline invalidation

    async def schedule_deadline_invalidations(
        self,
        events: Sequence[EventRecord],
        now: Optional[datetime] = None
    ) -> int:
        """
        Re-establish invalidations at every future gameweek deadline.

        Existing schedules are replaced, so this can run on every full refresh
        and on startup.

        Returns:
            Number of gameweeks scheduled
        """
        now = now or self.detector.now()
        await self.cache.cancel_scheduled_invalidations()
        scheduled = 0
        for event in events:
            if event.deadline_time is None or event.deadline_time <= now:
                continue
            for key in keys.deadline_invalidation_keys(event.id):
                await self.cache.schedule_invalidation(key, event.deadline_time)
            scheduled += 1

        logger.info("Deadline invalidations scheduled", extra={"gameweeks": scheduled})
        return scheduled

    async def reestablish_deadline_invalidations(self) -> int:
        """Startup path: schedules are not durable across restarts."""
        bootstrap = await self.get_bootstrap()
        return await self.schedule_deadline_invalidations(bootstrap.events)

    # Full pass

    async def update_all_data(self, regime: Optional[Regime] = None, force: bool = False) -> Dict[str, Any]:
        """
        Full bootstrap refresh. With force, bootstrap and fixtures are written
        even when unchanged.

        Steps run independently; an upstream failure in one is recorded under
        "errors" and the remaining steps still run where they can.
        """
        regime = await self._regime(regime)
        summary: Dict[str, Any] = {"regime": regime.value, "errors": []}

        bootstrap: Optional[BootstrapSnapshot] = None
        try:
            result = await self.sync_bootstrap(force=force, regime=regime)
            summary["bootstrap"] = result.to_dict()
            self._record_partial_write(summary, "bootstrap", result)
            bootstrap = result.snapshot
        except Exception as e:
            self._record_step_error(summary, "bootstrap", e)

        try:
            result = await self.sync_fixtures(force=force, regime=regime)
            summary["fixtures"] = result.to_dict()
            self._record_partial_write(summary, "fixtures", result)
        except Exception as e:
            self._record_step_error(summary, "fixtures", e)

        current = bootstrap.current_event() if bootstrap else None
        if current is not None:
            try:
                result = await self.sync_live_gameweek(current.id, regime=regime)
                summary["live_gameweek"] = result.to_dict()
                self._record_partial_write(summary, "live_gameweek", result)
            except Exception as e:
                self._record_step_error(summary, "live_gameweek", e)

        summary["player_stats"] = await self.sync_finished_gameweek_stats()

        if bootstrap is not None:
            summary["deadline_invalidations"] = await self.schedule_deadline_invalidations(bootstrap.events)

        return summary

    @staticmethod
    def _record_step_error(summary: Dict[str, Any], step: str, error: Exception):
        logger.error("Refresh step failed", extra={
            "step": step,
            "error": str(error),
            "error_type": type(error).__name__
        }, exc_info=True)
        summary["errors"].append({"step": step, "error": str(error)})

    @staticmethod
    def _record_partial_write(summary: Dict[str, Any], step: str, result: SyncResult):
        if result.failed_batches:
            summary["errors"].append({
                "step": step,
                "error": f"{result.failed_batches} batch(es) failed to write"
            })
