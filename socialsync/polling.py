"""Content polling scheduler.

One periodic job per active connection pulls the connection's feed and
notification streams through the adapter registry and hands each page to the
upsert engine. Each stream keeps its own cursor, which only advances after the
page it marks has been ingested.

Failure handling per stream:

- TransientNetworkError: retried with backoff; once retries are exhausted the
  connection is marked ``degraded`` and its cursor left untouched
- AuthExpiredError: an immediate token refresh is requested and the run ends
- PermanentCapabilityError: the stream is skipped (logged once per connection)
- PlatformRequestError: the stream is skipped for this run and the error kept

Example:
    >>> polling = ContentPollingScheduler(db, vault, registry, engine, pool, refresh)
    >>> polling.register(connection_id)
    >>> summary = await polling.poll_once(connection_id)
    >>> summary.result.created
    12
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from socialsync.config import settings
from socialsync.database import DatabaseManager
from socialsync.errors import (
    AuthExpiredError,
    CredentialsNotFoundError,
    PermanentCapabilityError,
    PlatformNotSupportedError,
    PlatformRequestError,
    TransientNetworkError,
)
from socialsync.ingest import IngestResult, UpsertEngine
from socialsync.interfaces import Capability
from socialsync.logging import logger, set_run_context
from socialsync.metrics import errors_total, registered_polling_jobs
from socialsync.models import (
    ConnectionHealth,
    ConnectionStatus,
    Credentials,
    FetchPage,
    ItemKind,
    Stream,
)
from socialsync.refresh import TokenRefreshScheduler
from socialsync.registry import AdapterRegistry
from socialsync.repository import ConnectionRepository
from socialsync.scheduler import PeriodicJob, WorkerPool, transient_retrying
from socialsync.telemetry import get_tracer, span_for
from socialsync.utils import as_utc, new_id, utc_now
from socialsync.vault import TokenVault

tracer = get_tracer(__name__)

STREAMS: dict[Stream, tuple[Capability, ItemKind]] = {
    Stream.FEED:          (Capability.FETCH_FEED, ItemKind.POST),
    Stream.NOTIFICATIONS: (Capability.FETCH_NOTIFICATIONS, ItemKind.NOTIFICATION),
}


@dataclass
class PollSummary:
    """Outcome of one polling run of a connection.

    Attributes:
        connection_id: Polled connection
        status: completed, skipped, busy, degraded or auth_expired
        reason: Why the run was skipped or cut short
        pages: Pages fetched per stream
        result: Combined ingest result of every fetched page
    """

    connection_id: str
    status: str = "completed"
    reason: str | None = None
    pages: dict[str, int] = field(default_factory=dict)
    result: IngestResult = field(default_factory=IngestResult)

    @property
    def skipped(self) -> bool:
        return self.status in ("skipped", "busy")


@dataclass(frozen=True)
class _Target:
    connection_id: str
    user_id: str
    platform: str


class ContentPollingScheduler:
    """Schedules and runs per-connection polling jobs.

    Args:
        db: Store of record
        vault: Token vault
        registry: Adapter registry
        engine: Upsert engine receiving fetched pages
        pool: Worker pool bounding concurrent runs
        refresh: Refresh scheduler consulted on AuthExpiredError
        interval: Seconds between runs of one connection
        max_pages: Pages fetched per stream and run
        clock: Source of the current time
    """

    def __init__(
        self,
        db: DatabaseManager,
        vault: TokenVault,
        registry: AdapterRegistry,
        engine: UpsertEngine,
        pool: WorkerPool,
        refresh: TokenRefreshScheduler | None = None,
        interval: float | None = None,
        max_pages: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.vault = vault
        self.registry = registry
        self.engine = engine
        self.pool = pool
        self.refresh = refresh
        self.interval = interval or settings.poll_interval_seconds
        self.max_pages = max_pages or settings.max_pages_per_run
        self.clock = clock
        self._jobs: dict[str, PeriodicJob] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._unsupported_logged: set[tuple[str, str]] = set()

        if refresh is not None:
            refresh.add_reconnect_listener(self.on_needs_reconnect)

    # =========================================================================
    # Job Registration
    # =========================================================================

    @property
    def registered(self) -> list[str]:
        return list(self._jobs)

    def is_registered(self, connection_id: str) -> bool:
        return connection_id in self._jobs

    def register(self, connection_id: str, initial_delay: float = 0.0) -> PeriodicJob:
        """Start the polling job of a connection (no-op if already registered)."""
        job = self._jobs.get(connection_id)
        if job is None:
            job = PeriodicJob(
                f"poll:{connection_id}",
                lambda: self.poll_once(connection_id),
                interval=self.interval,
                pool=self.pool,
                initial_delay=initial_delay,
            )
            self._jobs[connection_id] = job
            registered_polling_jobs.set(len(self._jobs))
            logger.info(f"✅ Registered polling job for connection {connection_id}")
        job.start()
        return job

    async def deregister(self, connection_id: str) -> bool:
        """Stop the polling job of a connection.

        Returns:
            True if a job was registered
        """
        job = self._jobs.pop(connection_id, None)
        self._discard_idle_lock(connection_id)
        registered_polling_jobs.set(len(self._jobs))
        if job is None:
            return False
        await job.stop()
        logger.info(f"🗑️ Deregistered polling job for connection {connection_id}")
        return True

    async def on_needs_reconnect(self, connection_id: str, reason: str) -> None:
        """Reconnect listener: a connection that needs reconnect is not polled."""
        await self.deregister(connection_id)

    def register_active(self) -> int:
        """Register a job for every active connection (process start).

        Start times are spread over one interval so that connections do not
        all poll at once.

        Returns:
            Number of connections registered
        """
        with self.db.session_scope() as session:
            ids = [row.id for row in ConnectionRepository(session).list_active()]

        for i, connection_id in enumerate(ids):
            self.register(connection_id, initial_delay=self.interval * i / max(len(ids), 1))
        return len(ids)

    async def stop_all(self) -> None:
        for connection_id in list(self._jobs):
            await self.deregister(connection_id)

    # =========================================================================
    # Polling Run
    # =========================================================================

    async def poll_once(self, connection_id: str) -> PollSummary:
        """Poll every supported stream of one connection.

        Runs of the same connection never overlap; a run requested while
        another is in flight returns a ``busy`` summary.
        """
        lock = self._locks.setdefault(connection_id, asyncio.Lock())
        if lock.locked():
            return PollSummary(connection_id, status="busy", reason="Run already in flight")

        try:
            async with lock:
                set_run_context(run_id=new_id(), connection_id=connection_id, operation="poll")
                with span_for(tracer, "poll.connection", {"connection_id": connection_id}):
                    return await self._poll(connection_id)
        finally:
            if connection_id not in self._jobs:
                self._discard_idle_lock(connection_id)

    def _discard_idle_lock(self, connection_id: str) -> None:
        # a held lock stays so a run in flight keeps excluding new ones
        lock = self._locks.get(connection_id)
        if lock is not None and not lock.locked():
            del self._locks[connection_id]

    async def _poll(self, connection_id: str) -> PollSummary:
        summary = PollSummary(connection_id)
        now = self.clock()

        target, reason = self._check_ready(connection_id, now)
        if target is None:
            summary.status, summary.reason = "skipped", reason
            logger.debug(f"Skipping poll of {connection_id}: {reason}")
            return summary

        set_run_context(user_id=target.user_id)
        try:
            credentials = self.vault.get(connection_id)
        except CredentialsNotFoundError as exc:
            summary.status, summary.reason = "skipped", str(exc)
            return summary

        for stream, (capability, kind) in STREAMS.items():
            status = await self._poll_stream(target, stream, capability, kind, credentials, summary)
            if status in ("degraded", "auth_expired"):
                summary.status = status
                break

        if summary.status == "completed":
            with self.db.session_scope() as session:
                ConnectionRepository(session).set_health(
                    connection_id,
                    ConnectionHealth.HEALTHY,
                    error=summary.reason,
                    polled_at=now,
                )

        logger.info(
            f"✅ Polled {target.platform} connection {connection_id}: "
            f"{summary.result.created} created, {summary.result.updated} updated, "
            f"{summary.result.failed} failed ({summary.status})"
        )
        return summary

    def _check_ready(self, connection_id: str, now: datetime) -> tuple[_Target | None, str | None]:
        with self.db.session_scope() as session:
            row = ConnectionRepository(session).get(connection_id)
            if row is None or not row.is_active:
                return None, "Connection is not active"
            if row.status != ConnectionStatus.VALID:
                return None, f"Connection status is {row.status}"
            expires_at = as_utc(row.token_expires_at)
            if expires_at is not None and expires_at <= now:
                return None, "Access token expired"
            if row.platform not in self.registry:
                return None, str(PlatformNotSupportedError(row.platform))
            return _Target(row.id, row.user_id, row.platform), None

    async def _poll_stream(
        self,
        target: _Target,
        stream: Stream,
        capability: Capability,
        kind: ItemKind,
        credentials: Credentials,
        summary: PollSummary,
    ) -> str:
        cursor = self.db.get_cursor(target.connection_id, stream)
        pages = 0

        while pages < self.max_pages:
            try:
                page = await self._fetch(target.platform, capability, credentials, cursor)
            except PermanentCapabilityError as exc:
                key = (target.connection_id, capability.value)
                if key not in self._unsupported_logged:
                    self._unsupported_logged.add(key)
                    logger.info(f"{exc}; skipping {stream} stream of {target.connection_id}")
                return "unsupported"
            except AuthExpiredError:
                logger.warning(f"⚠️ Access token of {target.connection_id} rejected, refreshing")
                if self.refresh is not None:
                    await self.refresh.refresh_now(target.connection_id)
                summary.reason = "Access token rejected by platform"
                return "auth_expired"
            except TransientNetworkError as exc:
                self._mark_degraded(target, stream, exc)
                summary.reason = str(exc)
                return "degraded"
            except PlatformRequestError as exc:
                errors_total.labels(error_type=type(exc).__name__, component="polling").inc()
                logger.error(f"❌ {stream} fetch of {target.connection_id} refused: {exc}")
                summary.reason = str(exc)
                return "refused"
            except Exception as exc:
                # unclassified adapter failures are handled like exhausted transient ones
                self._mark_degraded(target, stream, exc)
                summary.reason = f"{type(exc).__name__}: {exc}"
                return "degraded"

            pages += 1
            summary.pages[stream.value] = pages
            summary.result.merge(
                self.engine.ingest(target.platform, target.user_id, page.items, kind)
            )

            next_cursor = page.next_cursor
            if next_cursor and next_cursor != cursor:
                self.db.update_cursor(target.connection_id, stream, next_cursor)
            if not page.items or not next_cursor or next_cursor == cursor:
                break
            cursor = next_cursor

        return "completed"

    async def _fetch(
        self,
        platform: str,
        capability: Capability,
        credentials: Credentials,
        cursor: str | None,
    ) -> FetchPage:
        async for attempt in transient_retrying():
            with attempt:
                result = await self.registry.invoke(platform, capability, credentials, cursor)
        return result if isinstance(result, FetchPage) else FetchPage.model_validate(result)

    def _mark_degraded(self, target: _Target, stream: Stream, exc: Exception) -> None:
        errors_total.labels(error_type=type(exc).__name__, component="polling").inc()
        logger.warning(
            f"⚠️ {stream} fetch of {target.connection_id} failed after retries, "
            f"marking degraded: {exc}"
        )
        with self.db.session_scope() as session:
            ConnectionRepository(session).set_health(
                target.connection_id, ConnectionHealth.DEGRADED, error=str(exc)
            )


__all__ = ["ContentPollingScheduler", "PollSummary", "STREAMS"]
