"""Platform adapter registry.

The registry is an explicit object built once at process start and handed to
the schedulers; adapters are looked up by platform identifier and their
capabilities discovered structurally (see :mod:`socialsync.interfaces`).

Every adapter call made by the pipeline goes through :meth:`AdapterRegistry.invoke`,
which applies the platform's rate limiter and the adapter timeout, records
metrics, and opens a tracing span.

Example:
    >>> registry = AdapterRegistry()
    >>> registry.register("mastodon", MastodonAdapter("https://mastodon.social"))
    >>> registry.capabilities("mastodon")
    frozenset({<Capability.FETCH_FEED: 'fetch_feed'>, ...})
    >>> page = await registry.invoke("mastodon", Capability.FETCH_FEED, credentials, None)
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

from socialsync.adapters import PlatformRateLimiter
from socialsync.config import PlatformRateLimit, settings
from socialsync.errors import (
    AuthExpiredError,
    PermanentCapabilityError,
    PlatformNotSupportedError,
    TransientNetworkError,
)
from socialsync.interfaces import CAPABILITY_PROTOCOLS, Capability
from socialsync.logging import logger
from socialsync.metrics import adapter_call_duration_seconds, adapter_calls_total
from socialsync.telemetry import get_tracer, span_for

tracer = get_tracer(__name__)


class AdapterRegistry:
    """Maps platform identifiers to adapters.

    Args:
        rate_limits: Resolver of the rate limit for a platform
            (defaults to ``settings.rate_limit_for``)
        timeout_seconds: Timeout per adapter call
            (defaults to ``settings.adapter_timeout_seconds``)
    """

    def __init__(
        self,
        rate_limits: Callable[[str], PlatformRateLimit] | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._adapters: dict[str, Any] = {}
        self._limiters: dict[str, PlatformRateLimiter] = {}
        self._rate_limits = rate_limits or settings.rate_limit_for
        self.timeout_seconds = timeout_seconds or settings.adapter_timeout_seconds

    def __contains__(self, platform: object) -> bool:
        return platform in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)

    @property
    def platforms(self) -> list[str]:
        """Registered platform identifiers, sorted."""
        return sorted(self._adapters)

    def register(self, platform: str, adapter: Any, replace: bool = False) -> None:
        """Register an adapter for a platform.

        Raises:
            ValueError: If the platform already has an adapter and ``replace`` is False
            TypeError: If the adapter implements none of the capabilities
        """
        platform = str(platform)
        if platform in self._adapters and not replace:
            raise ValueError(f"Adapter already registered for platform '{platform}'")

        capabilities = self._detect(adapter)
        if not capabilities:
            raise TypeError(
                f"{type(adapter).__name__} implements none of "
                f"{', '.join(c.value for c in Capability)}"
            )

        self._adapters[platform] = adapter
        limit = self._rate_limits(platform)
        self._limiters[platform] = PlatformRateLimiter(
            max_concurrent=limit.max_concurrent,
            min_interval_seconds=limit.min_interval_seconds,
        )
        logger.info(
            f"✅ Registered {type(adapter).__name__} for {platform} "
            f"({', '.join(sorted(c.value for c in capabilities))})"
        )

    def unregister(self, platform: str) -> Any | None:
        """Remove and return the adapter of a platform, if any."""
        self._limiters.pop(platform, None)
        return self._adapters.pop(platform, None)

    def resolve(self, platform: str) -> Any:
        """Return the adapter for a platform.

        Raises:
            PlatformNotSupportedError: If no adapter is registered
        """
        try:
            return self._adapters[platform]
        except KeyError:
            raise PlatformNotSupportedError(platform) from None

    @staticmethod
    def _detect(adapter: Any) -> frozenset[Capability]:
        return frozenset(
            capability
            for capability, protocol in CAPABILITY_PROTOCOLS.items()
            if isinstance(adapter, protocol)
        )

    def capabilities(self, platform: str) -> frozenset[Capability]:
        """Capabilities the platform's adapter implements."""
        return self._detect(self.resolve(platform))

    def supports(self, platform: str, capability: Capability | str) -> bool:
        """Whether the platform has an adapter implementing ``capability``."""
        if platform not in self._adapters:
            return False
        return Capability(capability) in self.capabilities(platform)

    def require(
        self, platform: str, capability: Capability | str
    ) -> Callable[..., Awaitable[Any]]:
        """Return the bound adapter method implementing ``capability``.

        Raises:
            PlatformNotSupportedError: If no adapter is registered
            PermanentCapabilityError: If the adapter lacks the capability
        """
        capability = Capability(capability)
        adapter = self.resolve(platform)
        if not isinstance(adapter, CAPABILITY_PROTOCOLS[capability]):
            raise PermanentCapabilityError(platform, capability.value)
        return getattr(adapter, capability.value)

    def limiter(self, platform: str) -> PlatformRateLimiter:
        """Rate limiter of a registered platform."""
        self.resolve(platform)
        return self._limiters[platform]

    async def invoke(
        self,
        platform: str,
        capability: Capability | str,
        *args: Any,
        timeout: float | None = None,
    ) -> Any:
        """Call an adapter capability under rate limit, timeout and tracing.

        Raises:
            TransientNetworkError: On adapter timeouts and retryable failures
            AuthExpiredError: Propagated from the adapter
            PermanentCapabilityError: If the capability is not supported
        """
        capability = Capability(capability)
        timeout = timeout or self.timeout_seconds
        outcome = "error"
        start = time.perf_counter()

        try:
            with span_for(
                tracer,
                f"adapter.{capability.value}",
                {"platform": platform, "capability": capability.value},
            ):
                fn = self.require(platform, capability)
                async with self.limiter(platform):
                    try:
                        async with asyncio.timeout(timeout):
                            result = await fn(*args)
                    except TimeoutError as exc:
                        raise TransientNetworkError(
                            f"{platform}.{capability.value} timed out after {timeout}s",
                            outcome_unknown=True,
                        ) from exc
            outcome = "success"
            return result
        except TransientNetworkError:
            outcome = "transient"
            raise
        except AuthExpiredError:
            outcome = "auth_expired"
            raise
        except PermanentCapabilityError:
            outcome = "unsupported"
            raise
        finally:
            adapter_calls_total.labels(
                platform=platform, capability=capability.value, outcome=outcome
            ).inc()
            adapter_call_duration_seconds.labels(
                platform=platform, capability=capability.value
            ).observe(time.perf_counter() - start)

    def field_map(self, platform: str, kind: str) -> dict[str, str] | None:
        """Adapter-supplied field map override for ``kind`` ("post" or "notification")."""
        adapter = self._adapters.get(platform)
        if adapter is None:
            return None
        return getattr(adapter, f"{kind}_field_map", None)

    async def aclose(self) -> None:
        """Close adapters that hold network resources."""
        for platform, adapter in list(self._adapters.items()):
            close = getattr(adapter, "close", None)
            if close is None:
                continue
            try:
                result = close()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                logger.warning(f"⚠️ Failed to close adapter for {platform}: {exc}")


__all__ = ["AdapterRegistry"]
