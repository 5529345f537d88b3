"""
Supabase client for database operations.

Upserts are keyed by natural id so every write is safe to repeat. Selects
name their columns and filter server-side to keep egress small.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from supabase import create_client, Client

from fpl_refresh.config import Config

logger = logging.getLogger(__name__)

GAMEWEEK_COLUMNS = "id, name, deadline_time, is_current, is_next, is_previous, finished, is_player_stats_synced"
FIXTURE_COLUMNS = "id, gameweek_id, home_team_id, away_team_id, kickoff_time, finished, home_score, away_score"


class SupabaseClient:
    """Client for interacting with Supabase database."""

    def __init__(self, config: Config):
        self.config = config
        self.client: Optional[Client] = None
        self._initialize_client()

    def _initialize_client(self):
        """Initialize Supabase client."""
        if not self.config.supabase_url or not self.config.supabase_key:
            raise ValueError("Supabase URL and key are required")

        # Use service key if available for admin operations, otherwise use anon key
        key = self.config.supabase_service_key or self.config.supabase_key

        self.client = create_client(
            self.config.supabase_url,
            key
        )

        logger.info("Initialized Supabase client", extra={
            "url": self.config.supabase_url,
            "using_service_key": bool(self.config.supabase_service_key)
        })

    # Generic writes

    def upsert_rows(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        on_conflict: str = "id"
    ) -> int:
        """
        Upsert one batch of rows.

        Args:
            table: Table name
            rows: Row dictionaries (caller chunks large sets)
            on_conflict: Comma-separated natural key columns

        Returns:
            Number of rows sent
        """
        if not rows:
            return 0
        self.client.table(table).upsert(rows, on_conflict=on_conflict).execute()
        return len(rows)

    # Gameweeks and fixtures

    def get_gameweeks(
        self,
        gameweek_id: Optional[int] = None,
        is_current: Optional[bool] = None,
        is_next: Optional[bool] = None,
        finished: Optional[bool] = None,
        is_player_stats_synced: Optional[bool] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Get gameweeks with optional filtering, ordered by id.

        Args:
            gameweek_id: Filter by gameweek id
            is_current: Filter by is_current flag
            is_next: Filter by is_next flag (next gameweek)
            finished: Filter by finished flag
            is_player_stats_synced: Filter by the per-gameweek stats sync flag
            limit: Limit number of results

        Returns:
            List of gameweek dictionaries
        """
        query = self.client.table("gameweeks").select(GAMEWEEK_COLUMNS)

        if gameweek_id is not None:
            query = query.eq("id", gameweek_id)
        if is_current is not None:
            query = query.eq("is_current", is_current)
        if is_next is not None:
            query = query.eq("is_next", is_next)
        if finished is not None:
            query = query.eq("finished", finished)
        if is_player_stats_synced is not None:
            query = query.eq("is_player_stats_synced", is_player_stats_synced)

        query = query.order("id")
        if limit:
            query = query.limit(limit)

        result = query.execute()
        return result.data or []

    def get_fixtures(
        self,
        gameweek_id: Optional[int] = None,
        finished: Optional[bool] = None
    ) -> List[Dict[str, Any]]:
        """Get fixtures, optionally for one gameweek and/or by finished flag."""
        query = self.client.table("fixtures").select(FIXTURE_COLUMNS)
        if gameweek_id is not None:
            query = query.eq("gameweek_id", gameweek_id)
        if finished is not None:
            query = query.eq("finished", finished)
        result = query.order("kickoff_time").execute()
        return result.data or []

    def mark_gameweek_player_stats_synced(self, gameweek_id: int, value: bool = True):
        """Set is_player_stats_synced once a gameweek's player stats are durably written."""
        self.client.table("gameweeks").update(
            {"is_player_stats_synced": value, "updated_at": datetime.now(timezone.utc).isoformat()}
        ).eq("id", gameweek_id).execute()

    # Refresh logs and system meta

    def insert_refresh_log(
        self,
        refresh_type: str,
        state: str,
        details: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Append a refresh log record and update the last_refresh marker."""
        occurred_at = (timestamp or datetime.now(timezone.utc)).isoformat()
        record = {
            "type": refresh_type,
            "state": state,
            "details": details or {},
            "timestamp": occurred_at,
        }
        self.client.table("refresh_logs").insert(record).execute()
        self.client.table("system_meta").upsert({
            "key": "last_refresh",
            "value": occurred_at,
            "updated_at": occurred_at,
        }, on_conflict="key").execute()
        return record

    def get_last_refresh_log(
        self,
        refresh_type: str,
        states: Iterable[str]
    ) -> Optional[Dict[str, Any]]:
        """Most recent refresh log for a type whose state is in `states`."""
        result = (
            self.client.table("refresh_logs")
            .select("type, state, details, timestamp")
            .eq("type", refresh_type)
            .in_("state", list(states))
            .order("timestamp", desc=True)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def replace_schedule_windows(self, windows: List[Dict[str, Any]]) -> int:
        """Replace the dynamic cron schedule with `windows`."""
        self.client.table("dynamic_cron_schedule").delete().neq("id", 0).execute()
        if not windows:
            return 0
        result = self.client.table("dynamic_cron_schedule").insert(windows).execute()
        return len(result.data or [])
