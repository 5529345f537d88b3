import pytest

from fpl_refresh.config import Config


def _config(**overrides):
    values = {"supabase_url": "http://localhost:54321", "supabase_key": "test"}
    values.update(overrides)
    return Config(**values)


def test_valid_config():
    config = _config()
    assert config.validate() is True
    assert config.queue_backend in ("memory", "supabase")


def test_missing_supabase_settings_are_reported_together():
    with pytest.raises(ValueError) as excinfo:
        Config(supabase_url="", supabase_key="")

    message = str(excinfo.value)
    assert message.startswith("Configuration errors:")
    assert "SUPABASE_URL is required" in message
    assert "SUPABASE_KEY is required" in message


def test_production_requires_cron_secret():
    with pytest.raises(ValueError, match="CRON_SECRET"):
        _config(environment="production", cron_secret="")

    assert _config(environment="production", cron_secret="s3cret").validate()


@pytest.mark.parametrize("overrides", [
    {"queue_backend": "redis"},
    {"sync_batch_size": 0},
    {"cache_ttl_scale": 0},
    {"max_retries": -1},
])
def test_invalid_values_are_rejected(overrides):
    with pytest.raises(ValueError):
        _config(**overrides)


def test_disabled_queues_are_read_from_the_environment(monkeypatch):
    monkeypatch.setenv("DISABLED_QUEUES", "live-refresh, unknown-queue,daily-refresh,live-refresh")

    config = _config()

    assert config.disabled_queues == ["live-refresh", "daily-refresh"]


def test_explicit_disabled_queues_win_over_the_environment(monkeypatch):
    monkeypatch.setenv("DISABLED_QUEUES", "live-refresh")

    config = _config(disabled_queues=["hourly-refresh"])

    assert config.disabled_queues == ["hourly-refresh"]
