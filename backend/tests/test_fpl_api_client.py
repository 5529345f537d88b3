import asyncio

import httpx
import pytest

from fakes import bootstrap_payload
from fpl_refresh.fpl_api.client import (
    FPLAPIClient,
    FPLAPINonRetryableError,
    FPLAPIRateLimitError,
    FPLAPIStructureError,
)
from fpl_refresh.fpl_api.models import BootstrapSnapshot, ResourceKind, parse_snapshot


def _run_with_client(config, handler, body):
    sleeps = []

    async def _sleep(delay):
        sleeps.append(delay)

    async def _run():
        client = FPLAPIClient(config, transport=httpx.MockTransport(handler), sleep=_sleep)
        async with client:
            return await body(client)

    return asyncio.run(_run()), sleeps


def test_429_waits_for_retry_after_then_retries_once(config):
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(429, headers={"Retry-After": "5"}, request=request)
        return httpx.Response(200, json={"ok": True}, request=request)

    result, sleeps = _run_with_client(config, handler, lambda c: c.fetch(ResourceKind.BOOTSTRAP_STATIC))

    assert result == {"ok": True}
    assert calls["count"] == 2
    assert sleeps == [5.0]


def test_429_without_header_uses_default_retry_after(config):
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(429, request=request)
        return httpx.Response(200, json=[], request=request)

    _, sleeps = _run_with_client(config, handler, lambda c: c.fetch(ResourceKind.FIXTURES))
    assert sleeps == [float(config.default_retry_after)]


def test_persistent_429_raises_rate_limit_error(config):
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        return httpx.Response(429, headers={"Retry-After": "1"}, request=request)

    with pytest.raises(FPLAPIRateLimitError):
        _run_with_client(config, handler, lambda c: c.fetch(ResourceKind.BOOTSTRAP_STATIC))
    assert calls["count"] == config.max_retries + 1


def test_server_errors_are_retried_with_backoff(config):
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        if calls["count"] < 3:
            return httpx.Response(503, request=request)
        return httpx.Response(200, json={"elements": []}, request=request)

    result, sleeps = _run_with_client(config, handler, lambda c: c.fetch(ResourceKind.LIVE_GAMEWEEK, gameweek=4))

    assert result == {"elements": []}
    assert calls["count"] == 3
    assert len(sleeps) == 2
    # base 1s doubling, +-25% jitter
    assert 0.75 <= sleeps[0] <= 1.25
    assert 1.5 <= sleeps[1] <= 2.5


def test_network_errors_are_retried(config):
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        if calls["count"] == 1:
            raise httpx.ConnectError("boom", request=request)
        return httpx.Response(200, json={"ok": True}, request=request)

    result, _ = _run_with_client(config, handler, lambda c: c.fetch(ResourceKind.BOOTSTRAP_STATIC))
    assert result == {"ok": True}
    assert calls["count"] == 2


def test_client_errors_are_not_retried(config):
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        return httpx.Response(404, text="not found", request=request)

    with pytest.raises(FPLAPINonRetryableError):
        _run_with_client(config, handler, lambda c: c.fetch(ResourceKind.PLAYER_DETAIL, player_id=1))
    assert calls["count"] == 1


def test_html_body_is_a_structure_error(config):
    def handler(request):
        return httpx.Response(
            200, text="<html>blocked</html>", headers={"content-type": "text/html"}, request=request
        )

    with pytest.raises(FPLAPIStructureError):
        _run_with_client(config, handler, lambda c: c.fetch(ResourceKind.BOOTSTRAP_STATIC))


def test_endpoints_per_resource_kind(config):
    seen = []

    def handler(request):
        seen.append((request.url.path, dict(request.url.params)))
        return httpx.Response(200, json={}, request=request)

    async def body(client):
        await client.fetch(ResourceKind.BOOTSTRAP_STATIC)
        await client.fetch(ResourceKind.FIXTURES, gameweek=7)
        await client.fetch(ResourceKind.FIXTURES)
        await client.fetch(ResourceKind.LIVE_GAMEWEEK, gameweek=7)
        await client.fetch(ResourceKind.PLAYER_DETAIL, player_id=10)

    _run_with_client(config, handler, body)

    assert seen == [
        ("/api/bootstrap-static/", {}),
        ("/api/fixtures/", {"event": "7"}),
        ("/api/fixtures/", {}),
        ("/api/event/7/live/", {}),
        ("/api/element-summary/10/", {}),
    ]


def test_fetch_returns_the_decoded_payload(config):
    def handler(request):
        return httpx.Response(200, json=bootstrap_payload(), request=request)

    payload, _ = _run_with_client(config, handler, lambda c: c.fetch(ResourceKind.BOOTSTRAP_STATIC))

    assert payload == bootstrap_payload()
    snapshot = parse_snapshot(ResourceKind.BOOTSTRAP_STATIC, payload)
    assert isinstance(snapshot, BootstrapSnapshot)
    assert snapshot.current_event().id == 4
    assert [t.short_name for t in snapshot.teams] == ["ARS", "CHE"]
