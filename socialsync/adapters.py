"""HTTP building blocks for platform adapters.

This module provides:
- HttpPlatformAdapter: an async httpx base class that classifies HTTP failures
  into the pipeline's error taxonomy and tracks platform rate-limit headers
- PlatformRateLimiter: client-side concurrency and spacing limit per platform

Concrete adapters subclass HttpPlatformAdapter and implement whichever
capabilities their platform offers (see :mod:`socialsync.interfaces`).

Example:
    >>> class MastodonAdapter(HttpPlatformAdapter):
    ...     platform = "mastodon"
    ...
    ...     async def fetch_feed(self, credentials, cursor):
    ...         return await self.fetch_page(
    ...             "/api/v1/timelines/home", credentials, cursor, cursor_param="max_id"
    ...         )
    >>>
    >>> async with MastodonAdapter("https://mastodon.social") as adapter:
    ...     page = await adapter.fetch_feed(credentials, None)
"""

import asyncio
from datetime import timedelta
from typing import Any

import httpx
from pydantic import SecretStr

from socialsync.errors import AuthExpiredError, PlatformRequestError, TransientNetworkError
from socialsync.logging import logger
from socialsync.models import Credentials, FetchPage, RefreshedToken
from socialsync.utils import safe_get, utc_now

# =============================================================================
# Rate Limiting
# =============================================================================


class PlatformRateLimiter:
    """Async context manager bounding calls into one platform.

    Args:
        max_concurrent: Maximum simultaneous calls
        min_interval_seconds: Minimum spacing between two call starts

    Example:
        >>> limiter = PlatformRateLimiter(max_concurrent=2, min_interval_seconds=0.5)
        >>> async with limiter:
        ...     await adapter.fetch_feed(credentials, cursor)
    """

    def __init__(self, max_concurrent: int = 4, min_interval_seconds: float = 0.0) -> None:
        self.max_concurrent = max_concurrent
        self.min_interval_seconds = min_interval_seconds
        self._sem = asyncio.Semaphore(max_concurrent)
        self._spacing_lock = asyncio.Lock()
        self._last_start: float | None = None

    async def __aenter__(self) -> "PlatformRateLimiter":
        await self._sem.acquire()
        try:
            if self.min_interval_seconds > 0:
                async with self._spacing_lock:
                    loop = asyncio.get_running_loop()
                    if self._last_start is not None:
                        wait = self._last_start + self.min_interval_seconds - loop.time()
                        if wait > 0:
                            await asyncio.sleep(wait)
                    self._last_start = loop.time()
        except BaseException:
            self._sem.release()
            raise
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self._sem.release()


# =============================================================================
# HTTP Adapter Base
# =============================================================================


RATE_LIMIT_HEADERS = {
    "limit": "X-RateLimit-Limit",
    "remaining": "X-RateLimit-Remaining",
    "reset": "X-RateLimit-Reset",
}


class HttpPlatformAdapter:
    """Async HTTP/2 base class for REST platform adapters.

    Features:
    - Connection pooling with keepalive
    - Status classification: 401 -> AuthExpiredError, 429/5xx/timeouts ->
      TransientNetworkError, other non-2xx -> PlatformRequestError
    - Rate-limit header tracking with a warning when few requests remain

    Retries are not performed here; the schedulers own the retry policy.

    Args:
        base_url: Platform API root
        client: Preconfigured httpx.AsyncClient (tests pass a MockTransport client)
        timeout: Custom httpx timeout configuration
    """

    platform: str = "http"

    def __init__(
        self,
        base_url: str = "",
        client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

        self._limits = httpx.Limits(
            max_connections=50,
            max_keepalive_connections=10,
            keepalive_expiry=30.0,
        )
        self._timeout = timeout or httpx.Timeout(
            timeout=30.0,
            connect=10.0,
            read=20.0,
            write=10.0,
            pool=5.0,
        )

        self._rate_limit: dict[str, str | None] = dict.fromkeys(RATE_LIMIT_HEADERS)

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Lazy initialization of HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                limits=self._limits,
                timeout=self._timeout,
                http2=True,
                follow_redirects=True,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def __aenter__(self) -> "HttpPlatformAdapter":
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying client if this adapter created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def rate_limit_remaining(self) -> int | None:
        """Remaining requests reported by the last response, if known."""
        raw = self._rate_limit["remaining"]
        return int(raw) if raw and raw.isdigit() else None

    def get_rate_limit_status(self) -> dict[str, Any]:
        """Rate limit headers of the last response."""
        return dict(self._rate_limit)

    def _track_rate_limit(self, resp: httpx.Response) -> None:
        for key, header in RATE_LIMIT_HEADERS.items():
            self._rate_limit[key] = resp.headers.get(header)

        remaining = self.rate_limit_remaining
        if remaining is not None and remaining < 10:
            logger.warning(
                f"⚠️ {self.platform} rate limit low: {remaining}/"
                f"{self._rate_limit['limit'] or '?'} remaining "
                f"(resets at {self._rate_limit['reset'] or 'unknown'})"
            )

    @staticmethod
    def _retry_after(resp: httpx.Response) -> float | None:
        value = resp.headers.get("Retry-After")
        if value is None:
            return None
        try:
            return float(value)
        except ValueError:
            return None

    async def request(
        self,
        method: str,
        path: str,
        credentials: Credentials | None = None,
        **kwargs: Any,
    ) -> Any:
        """Perform one HTTP request and return the decoded JSON body.

        Args:
            method: HTTP method
            path: Path relative to ``base_url`` (or an absolute URL)
            credentials: Sent as a Bearer token when given
            **kwargs: Passed through to ``httpx.AsyncClient.request``

        Raises:
            TransientNetworkError: Timeouts, network errors, HTTP 429 and 5xx
            AuthExpiredError: HTTP 401
            PlatformRequestError: Any other non-2xx status
        """
        client = await self._ensure_client()

        headers = dict(kwargs.pop("headers", None) or {})
        if credentials is not None:
            headers["Authorization"] = f"Bearer {credentials.access_token.get_secret_value()}"

        try:
            resp = await client.request(method, path, headers=headers, **kwargs)
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            raise TransientNetworkError(
                f"{self.platform}: network/timeout error: {exc}",
                outcome_unknown=not isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout)),
            ) from exc

        self._track_rate_limit(resp)

        if resp.status_code == 429 or 500 <= resp.status_code < 600:
            reset = self._rate_limit["reset"] if resp.status_code == 429 else None
            reset_info = f" (resets at {reset})" if reset else ""
            raise TransientNetworkError(
                f"{self.platform}: HTTP {resp.status_code}{reset_info}",
                retry_after=self._retry_after(resp),
            )

        if resp.status_code == 401:
            raise AuthExpiredError(f"{self.platform}: HTTP 401 (access token rejected)")

        if not resp.is_success:
            logger.error(
                f"{self.platform}: non-retryable HTTP {resp.status_code}: {resp.text[:200]}"
            )
            raise PlatformRequestError(
                f"{self.platform}: HTTP {resp.status_code}", status_code=resp.status_code
            )

        if resp.status_code == 204 or not resp.content:
            return None

        try:
            return resp.json()
        except ValueError as exc:
            raise TransientNetworkError(
                f"{self.platform}: invalid JSON: {exc}", outcome_unknown=True
            ) from exc

    async def fetch_page(
        self,
        path: str,
        credentials: Credentials,
        cursor: str | None,
        *,
        cursor_param: str = "cursor",
        items_key: str | None = "items",
        cursor_key: str = "next_cursor",
        params: dict[str, Any] | None = None,
    ) -> FetchPage:
        """GET one page of a cursor-paginated collection.

        Args:
            path: Collection path
            credentials: Access credentials
            cursor: Cursor of the previous page (None for the first page)
            cursor_param: Query parameter carrying the cursor
            items_key: Dotted path of the item list in the body (None if the
                body itself is the list)
            cursor_key: Dotted path of the next cursor in the body

        Returns:
            FetchPage with the raw items and the next cursor
        """
        query = dict(params or {})
        if cursor:
            query[cursor_param] = cursor

        body = await self.request("GET", path, credentials, params=query)

        if items_key is None:
            items = body or []
            next_cursor = None
        else:
            items = safe_get(body, items_key, default=[])
            next_cursor = safe_get(body, cursor_key)

        if not isinstance(items, list):
            raise PlatformRequestError(f"{self.platform}: expected a list at '{items_key}'")

        return FetchPage(
            items=items,
            next_cursor=str(next_cursor) if next_cursor is not None else None,
        )

    async def refresh_with_token_endpoint(
        self,
        token_url: str,
        refresh_token: SecretStr,
        extra: dict[str, str] | None = None,
    ) -> RefreshedToken:
        """Exchange a refresh token at an OAuth2 token endpoint.

        A rejected refresh token (HTTP 400/401) is a permanent refusal and is
        raised as PlatformRequestError rather than AuthExpiredError.
        """
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token.get_secret_value()}
        data.update(extra or {})

        try:
            body = await self.request("POST", token_url, data=data)
        except AuthExpiredError as exc:
            raise PlatformRequestError(str(exc), status_code=401) from exc

        if not isinstance(body, dict) or not body.get("access_token"):
            raise PlatformRequestError(f"{self.platform}: token response without access_token")

        expires_at: Any = safe_get(body, "expires_at")
        if expires_in := safe_get(body, "expires_in"):
            expires_at = utc_now() + timedelta(seconds=float(expires_in))

        return RefreshedToken(
            access_token=SecretStr(body["access_token"]),
            expires_at=expires_at,
            refresh_token=SecretStr(body["refresh_token"]) if body.get("refresh_token") else None,
        )


__all__ = ["HttpPlatformAdapter", "PlatformRateLimiter"]
