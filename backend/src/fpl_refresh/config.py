"""
Configuration management for the FPL refresh orchestration service.

Loads configuration from environment variables with sensible defaults.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from fpl_refresh.queues.config import QUEUE_NAMES

QUEUE_BACKENDS = ("memory", "supabase")


@dataclass
class Config:
    """Application configuration."""

    # Environment
    environment: str = os.getenv("ENVIRONMENT", "development")

    # Supabase Configuration
    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_key: str = os.getenv("SUPABASE_KEY", "")
    supabase_service_key: Optional[str] = os.getenv("SUPABASE_SERVICE_KEY", None)

    # FPL API Configuration
    fpl_api_base_url: str = os.getenv("FPL_API_BASE_URL", "https://fantasy.premierleague.com/api")
    request_timeout: float = float(os.getenv("REQUEST_TIMEOUT", "30.0"))

    # Rate Limiting
    max_requests_per_minute: int = int(os.getenv("MAX_REQUESTS_PER_MINUTE", "30"))
    min_request_interval: float = float(os.getenv("MIN_REQUEST_INTERVAL", "1.0"))

    # Retry Configuration
    max_retries: int = int(os.getenv("MAX_RETRIES", "3"))
    retry_backoff_base: float = float(os.getenv("RETRY_BACKOFF_BASE", "1.0"))
    max_retry_delay: int = int(os.getenv("MAX_RETRY_DELAY", "60"))
    # Used when a 429 carries no usable Retry-After header
    default_retry_after: int = int(os.getenv("DEFAULT_RETRY_AFTER", "60"))

    # Sync engine
    sync_batch_size: int = int(os.getenv("SYNC_BATCH_SIZE", "50"))
    # Multiplies every TTL from the policy table (e.g. 0.2 for a short-lived dev cache)
    cache_ttl_scale: float = float(os.getenv("CACHE_TTL_SCALE", "1.0"))

    # Regime windows
    # Estimated match length; only a heuristic, the fixture's finished flag is authoritative
    match_duration_minutes: int = int(os.getenv("MATCH_DURATION_MINUTES", "120"))
    post_match_window_hours: int = int(os.getenv("POST_MATCH_WINDOW_HOURS", "4"))
    pre_deadline_window_hours: int = int(os.getenv("PRE_DEADLINE_WINDOW_HOURS", "24"))

    # Queue Configuration
    queue_backend: str = os.getenv("QUEUE_BACKEND", "memory")  # memory or supabase
    worker_poll_interval: float = float(os.getenv("WORKER_POLL_INTERVAL", "1.0"))
    # Active jobs without a heartbeat for this long are treated as stalled
    stalled_job_timeout_seconds: int = int(os.getenv("STALLED_JOB_TIMEOUT_SECONDS", "600"))
    stalled_check_interval_seconds: int = int(os.getenv("STALLED_CHECK_INTERVAL_SECONDS", "60"))
    keep_completed_jobs: int = int(os.getenv("KEEP_COMPLETED_JOBS", "100"))
    keep_failed_jobs: int = int(os.getenv("KEEP_FAILED_JOBS", "100"))
    job_retention_hours: int = int(os.getenv("JOB_RETENTION_HOURS", "24"))
    delayed_job_max_age_hours: int = int(os.getenv("DELAYED_JOB_MAX_AGE_HOURS", "48"))
    cleanup_initial_delay_seconds: int = int(os.getenv("CLEANUP_INITIAL_DELAY_SECONDS", "120"))
    cleanup_interval_hours: int = int(os.getenv("CLEANUP_INTERVAL_HOURS", "24"))

    # Scheduler (enqueues jobs; the workers decide whether the work is still warranted)
    scheduler_enabled: bool = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
    live_refresh_interval: int = int(os.getenv("LIVE_REFRESH_INTERVAL", "120"))
    post_match_refresh_interval: int = int(os.getenv("POST_MATCH_REFRESH_INTERVAL", "900"))
    pre_deadline_refresh_interval: int = int(os.getenv("PRE_DEADLINE_REFRESH_INTERVAL", "3600"))
    hourly_refresh_interval: int = int(os.getenv("HOURLY_REFRESH_INTERVAL", "3600"))
    schedule_update_interval: int = int(os.getenv("SCHEDULE_UPDATE_INTERVAL", "21600"))
    daily_refresh_cron: str = os.getenv("DAILY_REFRESH_CRON", "0 5 * * *")
    # Queue names whose workers and scheduled triggers are not started
    disabled_queues: List[str] = field(default_factory=list)

    # HTTP trigger surface
    cron_secret: str = os.getenv("CRON_SECRET", "")
    api_enabled: bool = os.getenv("API_ENABLED", "false").lower() == "true"
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_format: str = os.getenv("LOG_FORMAT", "json")  # json or text

    def validate(self):
        """Validate configuration."""
        errors = []

        if not self.supabase_url:
            errors.append("SUPABASE_URL is required")
        if not self.supabase_key:
            errors.append("SUPABASE_KEY is required")
        if self.environment == "production" and not self.cron_secret:
            errors.append("CRON_SECRET is required in production")
        if self.sync_batch_size <= 0:
            errors.append("SYNC_BATCH_SIZE must be positive")
        if self.max_retries < 0:
            errors.append("MAX_RETRIES must not be negative")
        if self.cache_ttl_scale <= 0:
            errors.append("CACHE_TTL_SCALE must be positive")
        if self.queue_backend not in QUEUE_BACKENDS:
            errors.append(f"QUEUE_BACKEND must be one of {', '.join(QUEUE_BACKENDS)}")

        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")

        return True

    def __post_init__(self):
        """Validate after initialization."""
        if not self.disabled_queues:
            names: List[str] = []
            raw_list = os.getenv("DISABLED_QUEUES")
            if raw_list:
                for s in raw_list.split(","):
                    s = s.strip()
                    if s in QUEUE_NAMES and s not in names:
                        names.append(s)
            self.disabled_queues = names
        self.validate()
