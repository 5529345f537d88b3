"""
FPL API client with rate limiting, retry logic, and error handling.

Acts as the snapshot fetcher: every upstream resource is retrieved by kind and
returned either raw (for byte-level diffing) or validated into a typed record.
"""

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from asyncio_throttle import Throttler

from fpl_refresh.config import Config
from fpl_refresh.fpl_api.models import ResourceKind

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "application/json",
    "Accept-Language": "en-US,en;q=0.9",
    "Referer": "https://fantasy.premierleague.com/"
}

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class FPLAPIError(Exception):
    """Base exception for FPL API errors."""
    pass


class FPLAPIRateLimitError(FPLAPIError):
    """Raised when rate limit is exceeded."""
    pass


class FPLAPINonRetryableError(FPLAPIError):
    """Raised for non-retryable errors (4xx except 429)."""
    pass


class FPLAPIStructureError(FPLAPIError):
    """Raised when a response is not the JSON structure we expect."""
    pass


def _endpoint_for(kind: ResourceKind, params: Dict[str, Any]) -> str:
    if kind == ResourceKind.BOOTSTRAP_STATIC:
        return "/bootstrap-static/"
    if kind == ResourceKind.FIXTURES:
        gameweek = params.get("gameweek")
        return f"/fixtures/?event={gameweek}" if gameweek else "/fixtures/"
    if kind == ResourceKind.LIVE_GAMEWEEK:
        return f"/event/{params['gameweek']}/live/"
    if kind == ResourceKind.PLAYER_DETAIL:
        return f"/element-summary/{params['player_id']}/"
    raise ValueError(f"{kind.value} is not fetched from the FPL API directly")


class FPLAPIClient:
    """Client for fetching snapshots from the FPL API."""

    def __init__(
        self,
        config: Config,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.config = config
        self.base_url = config.fpl_api_base_url
        self.max_retries = config.max_retries
        self.retry_backoff_base = config.retry_backoff_base
        self.max_retry_delay = config.max_retry_delay
        self.default_retry_after = config.default_retry_after
        self._sleep = sleep or asyncio.sleep

        # Rate limiting: max N req/min plus a minimum gap between requests
        self.throttler = Throttler(
            rate_limit=config.max_requests_per_minute,
            period=60.0
        )
        self.min_interval = config.min_request_interval
        self.last_request_time = 0.0

        self.client = httpx.AsyncClient(
            timeout=config.request_timeout,
            follow_redirects=True,
            headers=DEFAULT_HEADERS,
            transport=transport,
        )

    async def _wait_for_rate_limit(self):
        """Wait to respect rate limiting."""
        await self.throttler.acquire()

        current_time = time.time()
        time_since_last = current_time - self.last_request_time
        if time_since_last < self.min_interval:
            wait_time = self.min_interval - time_since_last
            # Add jitter (±25%)
            jitter = wait_time * 0.25 * (random.random() * 2 - 1)
            await self._sleep(wait_time + jitter)

        self.last_request_time = time.time()

    def _is_retryable_error(self, status_code: int) -> bool:
        return status_code in RETRYABLE_STATUS_CODES

    def _backoff(self, attempt: int) -> float:
        """Exponential backoff with ±25% jitter, capped at max_retry_delay."""
        backoff = min(
            self.retry_backoff_base * (2 ** attempt),
            self.max_retry_delay
        )
        jitter = backoff * 0.25 * (random.random() * 2 - 1)
        return max(0.0, backoff + jitter)

    def _retry_after(self, response: httpx.Response) -> float:
        raw = response.headers.get("Retry-After")
        if raw is None:
            return float(self.default_retry_after)
        try:
            return max(0.0, float(raw))
        except ValueError:
            return float(self.default_retry_after)

    async def _request_with_retry(
        self,
        method: str,
        endpoint: str,
        **kwargs
    ) -> httpx.Response:
        """
        Make HTTP request with retry logic.

        Args:
            method: HTTP method (GET, POST, etc.)
            endpoint: API endpoint path
            **kwargs: Additional arguments for httpx request

        Returns:
            httpx.Response object

        Raises:
            FPLAPIRateLimitError: If still rate limited after all retries
            FPLAPINonRetryableError: If non-retryable error
            FPLAPIError: For other errors after retries exhausted
        """
        if endpoint.startswith("http"):
            url = endpoint
        else:
            url = f"{self.base_url.rstrip('/')}/{endpoint.lstrip('/')}"
        last_exception = None

        for attempt in range(self.max_retries + 1):
            try:
                await self._wait_for_rate_limit()
                response = await self.client.request(method, url, **kwargs)

                if response.is_success:
                    return response

                status_code = response.status_code

                if status_code == 429:
                    retry_after = self._retry_after(response)
                    logger.warning(
                        "Rate limited by FPL API",
                        extra={
                            "endpoint": endpoint,
                            "retry_after": retry_after,
                            "attempt": attempt + 1
                        }
                    )
                    if attempt < self.max_retries:
                        await self._sleep(retry_after)
                        continue
                    raise FPLAPIRateLimitError(
                        f"Rate limited after {self.max_retries} retries"
                    )

                if not self._is_retryable_error(status_code):
                    error_text = response.text[:500]
                    logger.error(
                        "Non-retryable error from FPL API",
                        extra={
                            "endpoint": endpoint,
                            "status_code": status_code,
                            "error": error_text
                        }
                    )
                    raise FPLAPINonRetryableError(
                        f"Non-retryable error {status_code}: {error_text}"
                    )

                if attempt < self.max_retries:
                    wait_time = self._backoff(attempt)
                    logger.warning(
                        "Retryable error from FPL API, retrying",
                        extra={
                            "endpoint": endpoint,
                            "status_code": status_code,
                            "attempt": attempt + 1,
                            "wait_time": wait_time
                        }
                    )
                    await self._sleep(wait_time)
                    continue

                error_text = response.text[:500]
                raise FPLAPIError(
                    f"Request failed after {self.max_retries} retries: "
                    f"{status_code} - {error_text}"
                )

            except (httpx.TimeoutException, httpx.NetworkError) as e:
                last_exception = e
                kind = "Timeout" if isinstance(e, httpx.TimeoutException) else "Network error"
                if attempt < self.max_retries:
                    wait_time = self._backoff(attempt)
                    logger.warning(
                        f"{kind} from FPL API, retrying",
                        extra={
                            "endpoint": endpoint,
                            "attempt": attempt + 1,
                            "wait_time": wait_time,
                            "error": str(e)
                        }
                    )
                    await self._sleep(wait_time)
                    continue
                raise FPLAPIError(f"{kind} after {self.max_retries} retries") from e

        raise FPLAPIError("Request failed") from last_exception

    def _parse_json(self, response: httpx.Response, endpoint: str) -> Any:
        """Decode a JSON body, rejecting empty and HTML responses."""
        if not response.content:
            logger.error("Empty response from FPL API", extra={
                "endpoint": endpoint,
                "status_code": response.status_code
            })
            raise FPLAPIStructureError(f"Empty response from {endpoint}")

        content_type = response.headers.get("content-type", "").lower()
        if "text/html" in content_type:
            logger.error("API returned HTML (blocking?)", extra={
                "url": str(response.url),
                "status_code": response.status_code,
                "content_type": content_type
            })
            raise FPLAPIStructureError("FPL API returned HTML instead of JSON - request may be blocked")

        try:
            return response.json()
        except ValueError as e:
            logger.error("JSON parse failed", extra={
                "endpoint": endpoint,
                "status_code": response.status_code,
                "content_length": len(response.content),
                "response_preview": response.text[:500],
                "error": str(e)
            })
            raise FPLAPIStructureError(f"Failed to parse JSON: {e}") from e

    async def fetch(self, kind: ResourceKind, **params) -> Any:
        """
        Fetch the raw JSON snapshot of an upstream resource.

        Args:
            kind: Resource to fetch
            **params: gameweek (fixtures, live_gameweek) or player_id (player_detail)

        Returns:
            Decoded JSON payload
        """
        endpoint = _endpoint_for(kind, params)
        response = await self._request_with_retry("GET", endpoint)
        data = self._parse_json(response, endpoint)

        logger.debug("Fetched snapshot", extra={
            "resource": kind.value,
            "endpoint": endpoint,
            "size_bytes": len(response.content)
        })
        return data

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
