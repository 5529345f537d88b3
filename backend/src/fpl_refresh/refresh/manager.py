"""
Refresh manager - the operations exposed to queue processors and HTTP triggers.

Each perform_* operation re-checks the regime before doing any work, runs the
diff sync steps it needs and appends a refresh log record.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fpl_refresh.cache import keys
from fpl_refresh.cache.store import CacheStore
from fpl_refresh.cache.ttl_policies import LAST_LIVE_REFRESH_TTL
from fpl_refresh.refresh.schedule import generate_schedule_windows, validate_windows
from fpl_refresh.refresh.state_detector import (
    FixtureState,
    Regime,
    StateDetector,
    classify,
    current_gameweek,
    is_live_match_active,
    is_post_match_window,
    is_pre_deadline_window,
    latest_started_gameweek,
)
from fpl_refresh.refresh.sync import DiffSyncEngine, SyncResult

logger = logging.getLogger(__name__)

SKIPPED = "skipped"
ERROR = "error"


@dataclass
class RefreshOutcome:
    refreshed: bool
    state: str
    details: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"refreshed": self.refreshed, "state": self.state, "details": self.details}
        if self.reason:
            data["reason"] = self.reason
        return data


class RefreshManager:
    """Regime-aware refresh operations."""

    def __init__(
        self,
        detector: StateDetector,
        sync_engine: DiffSyncEngine,
        cache: CacheStore,
        db_client,
    ):
        self.detector = detector
        self.sync = sync_engine
        self.cache = cache
        self.db_client = db_client

    async def initialize(self) -> int:
        """Re-establish deadline invalidations; schedules do not survive restarts."""
        try:
            scheduled = await self.sync.reestablish_deadline_invalidations()
        except Exception as e:
            logger.error("Could not re-establish deadline invalidations", extra={
                "error": str(e)
            }, exc_info=True)
            return 0
        logger.info("Refresh manager initialized", extra={"deadline_invalidations": scheduled})
        return scheduled

    async def get_current_state(self) -> Dict[str, Any]:
        """Diagnostic: current regime plus the facts behind it."""
        try:
            snapshot = await self.detector.get_current_state()
        except Exception as e:
            logger.error("Failed to determine current state", extra={"error": str(e)}, exc_info=True)
            return {"state": ERROR, "details": {"error": str(e)}}
        return snapshot.to_dict()

    def log_refresh(self, refresh_type: str, state: str, details: Optional[Dict[str, Any]] = None):
        """Append a refresh log record; a failed write is logged, not raised."""
        try:
            self.db_client.insert_refresh_log(refresh_type, state, details or {}, self.detector.now())
        except Exception as e:
            logger.error("Failed to write refresh log", extra={
                "refresh_type": refresh_type,
                "state": state,
                "error": str(e)
            })

    def _skipped(self, refresh_type: str, reason: str, regime: Regime) -> RefreshOutcome:
        logger.info("Refresh skipped", extra={
            "refresh_type": refresh_type,
            "reason": reason,
            "regime": regime.value
        })
        return RefreshOutcome(False, SKIPPED, {"regime": regime.value}, reason)

    def _failed(self, refresh_type: str, error: Exception) -> RefreshOutcome:
        logger.error("Refresh failed", extra={
            "refresh_type": refresh_type,
            "error": str(error),
            "error_type": type(error).__name__
        }, exc_info=True)
        details = {"error": str(error), "error_type": type(error).__name__}
        self.log_refresh(refresh_type, ERROR, details)
        return RefreshOutcome(False, ERROR, details)

    def _partial_write(
        self,
        refresh_type: str,
        details: Dict[str, Any],
        *results: SyncResult
    ) -> Optional[RefreshOutcome]:
        """Failed outcome when any sync left batches unwritten, so the job is retried."""
        failed = sum(r.failed_batches for r in results)
        if not failed:
            return None
        details["error"] = f"{failed} batch(es) failed to write"
        logger.error("Refresh partially written", extra={
            "refresh_type": refresh_type,
            "failed_batches": failed
        })
        self.log_refresh(refresh_type, "partial_error", details)
        return RefreshOutcome(False, ERROR, details, "partial-write")

    async def perform_live_refresh(self) -> RefreshOutcome:
        """Refresh live gameweek data and current fixtures while a match is live."""
        try:
            now = self.detector.now()
            gameweeks, fixtures = await self.detector.load()
            regime = classify(gameweeks, fixtures, now, self.detector.windows)
            current = current_gameweek(gameweeks)
            if current is None:
                return self._skipped("live", "no-current-gameweek", regime)
            if not is_live_match_active(fixtures, gameweeks, now):
                return self._skipped("live", "not-live", regime)

            live = await self.sync.sync_live_gameweek(current.id, regime=Regime.LIVE_MATCH)
            fixture_sync = await self.sync.sync_fixtures(current.id, regime=Regime.LIVE_MATCH)
            await self.cache.set(keys.LAST_LIVE_REFRESH, now.isoformat(), LAST_LIVE_REFRESH_TTL)

            details = {
                "gameweek": current.id,
                "live_gameweek": live.to_dict(),
                "fixtures": fixture_sync.to_dict(),
            }
            partial = self._partial_write("live", details, live, fixture_sync)
            if partial is not None:
                return partial
            self.log_refresh("live", Regime.LIVE_MATCH.value, details)
            return RefreshOutcome(True, Regime.LIVE_MATCH.value, details)
        except Exception as e:
            return self._failed("live", e)

    async def perform_post_match_refresh(self) -> RefreshOutcome:
        """Pick up final scores and finished-gameweek stats after matches end."""
        try:
            now = self.detector.now()
            gameweeks, fixtures = await self.detector.load()
            regime = classify(gameweeks, fixtures, now, self.detector.windows)
            if is_live_match_active(fixtures, gameweeks, now):
                return self._skipped("post-match", "live-matches-active", regime)
            if not is_post_match_window(fixtures, now, self.detector.windows):
                return self._skipped("post-match", "outside-post-match-window", regime)

            gameweek = current_gameweek(gameweeks) or latest_started_gameweek(gameweeks, now)
            gameweek_id = gameweek.id if gameweek else None
            details: Dict[str, Any] = {"gameweek": gameweek_id}

            if gameweek_id is not None:
                await self.cache.invalidate(keys.fixtures_key(gameweek_id))
                await self.cache.invalidate(keys.live_gameweek_key(gameweek_id))
                live = await self.sync.sync_live_gameweek(gameweek_id, force=True, regime=Regime.POST_MATCH)
                details["live_gameweek"] = live.to_dict()

            fixture_sync = await self.sync.sync_fixtures(gameweek_id, force=True, regime=Regime.POST_MATCH)
            details["fixtures"] = fixture_sync.to_dict()
            details["player_stats"] = await self.sync.sync_finished_gameweek_stats()

            partial = self._partial_write("post-match", details, fixture_sync)
            if partial is not None:
                return partial
            self.log_refresh("post-match", Regime.POST_MATCH.value, details)
            return RefreshOutcome(True, Regime.POST_MATCH.value, details)
        except Exception as e:
            return self._failed("post-match", e)

    async def perform_pre_deadline_refresh(self) -> RefreshOutcome:
        """Diff-sync bootstrap data (prices, availability, gameweeks) ahead of a deadline."""
        try:
            now = self.detector.now()
            gameweeks, fixtures = await self.detector.load()
            regime = classify(gameweeks, fixtures, now, self.detector.windows)
            if not is_pre_deadline_window(gameweeks, now, self.detector.windows):
                return self._skipped("pre-deadline", "outside-pre-deadline-window", regime)

            result = await self.sync.sync_bootstrap(regime=regime)
            details = {"bootstrap": result.to_dict()}
            partial = self._partial_write("pre-deadline", details, result)
            if partial is not None:
                return partial
            self.log_refresh("pre-deadline", Regime.PRE_DEADLINE.value, details)
            return RefreshOutcome(True, Regime.PRE_DEADLINE.value, details)
        except Exception as e:
            return self._failed("pre-deadline", e)

    async def perform_regular_refresh(self) -> RefreshOutcome:
        try:
            regime = await self.detector.classify()
            summary = await self.sync.update_all_data(regime)
        except Exception as e:
            return self._failed("regular", e)

        if summary["errors"]:
            self.log_refresh("regular", ERROR, summary)
            return RefreshOutcome(False, ERROR, summary)
        self.log_refresh("regular", regime.value, summary)
        return RefreshOutcome(True, regime.value, summary)

    async def _run_full(self, refresh_type: str, success_state: str, extra: Dict[str, Any]) -> RefreshOutcome:
        try:
            regime = await self.detector.classify()
            summary = await self.sync.update_all_data(regime, force=True)
        except Exception as e:
            return self._failed(refresh_type, e)

        summary.update(extra)
        if summary["errors"]:
            self.log_refresh(refresh_type, "partial_error", summary)
            return RefreshOutcome(False, ERROR, summary)
        self.log_refresh(refresh_type, success_state, summary)
        return RefreshOutcome(True, regime.value, summary)

    async def perform_full_refresh(self) -> RefreshOutcome:
        """Full pass with forced writes of bootstrap and fixtures."""
        return await self._run_full("full", "full_success", {})

    async def perform_manual_refresh(self, admin_id: Optional[str] = None) -> RefreshOutcome:
        return await self._run_full("manual", "manual_success", {"admin_id": admin_id})

    async def perform_incremental_refresh(self) -> RefreshOutcome:
        """Bootstrap diff only; the cheapest refresh."""
        try:
            regime = await self.detector.classify()
            result = await self.sync.sync_bootstrap(regime=regime)
        except Exception as e:
            return self._failed("incremental", e)

        details = {"bootstrap": result.to_dict()}
        partial = self._partial_write("incremental", details, result)
        if partial is not None:
            return partial
        if not result.changed:
            return RefreshOutcome(False, regime.value, details, result.reason)
        self.log_refresh("incremental", "incremental", details)
        return RefreshOutcome(True, regime.value, details)

    def generate_schedule_windows(self) -> List[Dict[str, Any]]:
        """Windows for every fixture kicking off after now - 24h."""
        fixtures = [FixtureState.from_row(r) for r in self.db_client.get_fixtures()]
        return generate_schedule_windows(fixtures, self.detector.now())

    async def perform_schedule_update(self, windows: Any) -> RefreshOutcome:
        """
        Replace the stored schedule with `windows`.

        Raises:
            InvalidScheduleError: If windows is empty or malformed
        """
        rows = validate_windows(windows)
        try:
            regime = await self.detector.classify()
            inserted = self.db_client.replace_schedule_windows(rows)
        except Exception as e:
            return self._failed("schedule", e)

        details = {"windows": len(rows), "inserted": inserted}
        self.log_refresh("schedule", "schedule_updated", details)
        return RefreshOutcome(True, regime.value, details)
