"""Token refresh scheduler.

Keeps OAuth access tokens valid without user intervention. Connection status
follows::

    valid -> refresh_pending -> valid
                             -> refresh_failed -> refresh_pending -> ...
                                               -> needs_reconnect

Every ``refresh_interval_seconds`` a scan selects active connections whose
token expires within ``refresh_lead_seconds`` and refreshes each at most once.
The refresh is claimed with a compare-and-set on ``refresh_epoch``, so two
scans, two processes or a scan racing :meth:`TokenRefreshScheduler.refresh_now`
never refresh the same connection concurrently (idempotency key
``connection_id:epoch``).

After ``refresh_max_attempts`` consecutive failures, or when the platform
refuses the refresh token outright, the connection moves to
``needs_reconnect``: it is deactivated and reconnect listeners (the polling
scheduler) are notified.

Example:
    >>> scheduler = TokenRefreshScheduler(db, vault, registry)
    >>> scheduler.add_reconnect_listener(polling.on_needs_reconnect)
    >>> stats = await scheduler.scan_once()
    >>> stats["refreshed"]
    1
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from socialsync.config import settings
from socialsync.database import DatabaseManager
from socialsync.errors import (
    CredentialsNotFoundError,
    ExhaustedRefreshError,
    PlatformRequestError,
    SyncError,
)
from socialsync.interfaces import Capability
from socialsync.logging import logger, set_run_context
from socialsync.metrics import errors_total, token_refreshes_total
from socialsync.models import Credentials, PlatformConnectionRow, RefreshedToken
from socialsync.registry import AdapterRegistry
from socialsync.repository import ConnectionRepository
from socialsync.scheduler import PeriodicJob, WorkerPool
from socialsync.utils import as_utc, format_iso, new_id, utc_now
from socialsync.vault import TokenVault

ReconnectListener = Callable[[str, str], Any]
"""Called with (connection_id, reason); may return an awaitable."""


@dataclass(frozen=True)
class RefreshCandidate:
    """Snapshot of a connection taken by a scan."""

    connection_id: str
    user_id: str
    platform: str
    epoch: int
    expires_at: datetime | None
    has_refresh_token: bool

    @classmethod
    def from_row(cls, row: PlatformConnectionRow) -> "RefreshCandidate":
        return cls(
            connection_id=row.id,
            user_id=row.user_id,
            platform=row.platform,
            epoch=row.refresh_epoch,
            expires_at=as_utc(row.token_expires_at),
            has_refresh_token=bool(row.refresh_token_encrypted),
        )


class TokenRefreshScheduler:
    """Refreshes tokens ahead of expiry.

    Args:
        db: Store of record
        vault: Token vault
        registry: Adapter registry
        lead: Refresh window before expiry (defaults to settings.refresh_lead)
        max_attempts: Consecutive failures before reconnect is required
        pending_timeout: Age after which a refresh claim may be retaken
        concurrency: Refreshes in flight at once during a scan (defaults to
            settings.worker_pool_size)
        clock: Source of the current time
    """

    def __init__(
        self,
        db: DatabaseManager,
        vault: TokenVault,
        registry: AdapterRegistry,
        lead: timedelta | None = None,
        max_attempts: int | None = None,
        pending_timeout: timedelta | None = None,
        concurrency: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.vault = vault
        self.registry = registry
        self.lead = lead if lead is not None else settings.refresh_lead
        self.max_attempts = max_attempts or settings.refresh_max_attempts
        self.pending_timeout = pending_timeout or settings.refresh_pending_timeout
        self.concurrency = concurrency or settings.worker_pool_size
        self.clock = clock
        self._listeners: list[ReconnectListener] = []
        self._job: PeriodicJob | None = None

    def add_reconnect_listener(self, listener: ReconnectListener) -> None:
        """Register a callback for connections that moved to needs_reconnect."""
        self._listeners.append(listener)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, pool: WorkerPool, interval: float | None = None) -> PeriodicJob:
        """Run :meth:`scan_once` periodically through ``pool``."""
        if self._job is None:
            self._job = PeriodicJob(
                "token-refresh-scan",
                self.scan_once,
                interval=interval or settings.refresh_interval_seconds,
                pool=pool,
            )
        self._job.start()
        return self._job

    async def stop(self) -> None:
        if self._job is not None:
            await self._job.stop()

    # =========================================================================
    # Scanning
    # =========================================================================

    async def scan_once(self, now: datetime | None = None) -> dict[str, int]:
        """Refresh every connection due within the lead window.

        Returns:
            Dictionary of outcome counts (due, refreshed, failed, needs_reconnect, skipped)
        """
        now = now or self.clock()
        set_run_context(run_id=new_id(), operation="refresh")

        with self.db.session_scope() as session:
            rows = ConnectionRepository(session).due_for_refresh(
                refresh_before=now + self.lead,
                stale_claim_before=now - self.pending_timeout,
            )
            candidates = [RefreshCandidate.from_row(row) for row in rows]

        stats = {
            "due":             len(candidates),
            "refreshed":       0,
            "failed":          0,
            "needs_reconnect": 0,
            "skipped":         0,
        }
        if not candidates:
            return stats

        logger.info(f"🔄 {len(candidates)} connection(s) due for token refresh")
        sem = asyncio.Semaphore(self.concurrency)

        async def bounded(candidate: RefreshCandidate) -> str:
            async with sem:
                return await self._refresh(candidate, now)

        outcomes = await asyncio.gather(*(bounded(candidate) for candidate in candidates))
        for outcome in outcomes:
            stats[outcome] += 1

        logger.info(
            f"✅ Refresh scan: {stats['refreshed']} refreshed, {stats['failed']} failed, "
            f"{stats['needs_reconnect']} need reconnect, {stats['skipped']} skipped"
        )
        return stats

    async def refresh_now(self, connection_id: str) -> bool:
        """Refresh one connection immediately, regardless of the lead window.

        Used when a platform rejects an access token (AuthExpiredError).

        Returns:
            True if the token was refreshed
        """
        with self.db.session_scope() as session:
            row = ConnectionRepository(session).get(connection_id)
            if row is None or not row.is_active:
                return False
            candidate = RefreshCandidate.from_row(row)

        outcome = await self._refresh(candidate, self.clock(), force=True)
        return outcome == "refreshed"

    # =========================================================================
    # Single Refresh
    # =========================================================================

    async def _refresh(
        self,
        candidate: RefreshCandidate,
        now: datetime,
        force: bool = False,
    ) -> str:
        set_run_context(
            connection_id=candidate.connection_id,
            user_id=candidate.user_id,
            operation="refresh",
        )
        expired = candidate.expires_at is not None and candidate.expires_at <= now

        if not candidate.has_refresh_token or not self.registry.supports(
            candidate.platform, Capability.REFRESH
        ):
            if expired or force:
                await self._require_reconnect(
                    candidate,
                    "Access token expired and cannot be refreshed; reconnect the account",
                    now,
                )
                return "needs_reconnect"
            return "skipped"

        with self.db.session_scope() as session:
            claimed = ConnectionRepository(session).claim_refresh(
                candidate.connection_id,
                expected_epoch=candidate.epoch,
                now=now,
                stale_claim_before=now - self.pending_timeout,
            )
        if not claimed:
            logger.debug(f"Refresh of {candidate.connection_id} already claimed, skipping")
            return "skipped"

        epoch = candidate.epoch + 1
        try:
            credentials = self.vault.get(candidate.connection_id)
            if credentials.refresh_token is None:
                raise CredentialsNotFoundError(candidate.connection_id)
            result = await self.registry.invoke(
                candidate.platform, Capability.REFRESH, credentials.refresh_token
            )
            refreshed = (
                result if isinstance(result, RefreshedToken) else RefreshedToken.model_validate(result)
            )
        except (PlatformRequestError, CredentialsNotFoundError) as exc:
            errors_total.labels(error_type=type(exc).__name__, component="refresh").inc()
            await self._require_reconnect(candidate, f"Refresh refused: {exc}", now)
            return "needs_reconnect"
        except (SyncError, ValueError) as exc:
            return await self._record_failure(candidate, epoch, exc, now)

        self.vault.rotate(
            candidate.connection_id,
            Credentials(
                access_token=refreshed.access_token,
                refresh_token=refreshed.refresh_token,
                expires_at=refreshed.expires_at,
            ),
            refreshed.expires_at,
        )
        with self.db.session_scope() as session:
            ConnectionRepository(session).complete_refresh(candidate.connection_id, epoch)

        token_refreshes_total.labels(platform=candidate.platform, outcome="success").inc()
        logger.info(
            f"✅ Refreshed {candidate.platform} token for connection {candidate.connection_id} "
            f"(expires {format_iso(refreshed.expires_at) or 'never'})"
        )
        return "refreshed"

    async def _record_failure(
        self,
        candidate: RefreshCandidate,
        epoch: int,
        exc: Exception,
        now: datetime,
    ) -> str:
        errors_total.labels(error_type=type(exc).__name__, component="refresh").inc()
        token_refreshes_total.labels(platform=candidate.platform, outcome="failure").inc()

        with self.db.session_scope() as session:
            failures = ConnectionRepository(session).fail_refresh(
                candidate.connection_id, epoch, f"{type(exc).__name__}: {exc}"
            )

        if failures is None:
            return "skipped"

        logger.warning(
            f"⚠️ Refresh of connection {candidate.connection_id} failed "
            f"({failures}/{self.max_attempts}): {exc}"
        )
        if failures >= self.max_attempts:
            exhausted = ExhaustedRefreshError(candidate.connection_id, failures, str(exc))
            await self._require_reconnect(candidate, str(exhausted), now)
            return "needs_reconnect"
        return "failed"

    async def _require_reconnect(
        self, candidate: RefreshCandidate, reason: str, now: datetime
    ) -> None:
        with self.db.session_scope() as session:
            ConnectionRepository(session).require_reconnect(candidate.connection_id, reason, now)

        token_refreshes_total.labels(platform=candidate.platform, outcome="needs_reconnect").inc()
        logger.warning(f"⚠️ Connection {candidate.connection_id} needs reconnect: {reason}")

        for listener in self._listeners:
            try:
                result = listener(candidate.connection_id, reason)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                logger.error(f"❌ Reconnect listener failed for {candidate.connection_id}: {exc}")


__all__ = ["TokenRefreshScheduler", "RefreshCandidate", "ReconnectListener"]
