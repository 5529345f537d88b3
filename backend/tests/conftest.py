import os
import sys
from pathlib import Path

import pytest

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_KEY", "test")
os.environ.setdefault("CRON_SECRET", "secret")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from fakes import Clock, FakeDB, FakeFetcher  # noqa: E402


@pytest.fixture()
def config():
    from fpl_refresh.config import Config

    return Config(
        supabase_url="http://localhost:54321",
        supabase_key="test",
        cron_secret="secret",
        min_request_interval=0,
        max_retries=2,
        retry_backoff_base=1.0,
        sync_batch_size=2,
        scheduler_enabled=False,
        worker_poll_interval=0.01,
        keep_completed_jobs=100,
        keep_failed_jobs=100,
    )


@pytest.fixture()
def clock():
    return Clock()


@pytest.fixture()
def db():
    return FakeDB()


@pytest.fixture()
def fetcher():
    return FakeFetcher()


@pytest.fixture()
def make_context(config, db, fetcher, clock):
    from fpl_refresh.orchestrator_context import OrchestratorContext

    def _make(**kwargs):
        return OrchestratorContext(config, fetcher, db, clock=clock, **kwargs)

    return _make
