"""Synchronization pipeline orchestration for SocialSync.

This module wires the pipeline together:
1. Token Refresh: keep every active connection's credentials valid
2. Content Polling: fetch feeds and notifications through the adapters
3. Upsert: normalize and durably write canonical posts and notifications
4. Propagation: project committed writes into the search index
5. Delivery: push new notifications to connected clients

It is also the surface the request-routing layer talks to: connection
lifecycle events, read-only queries, publishing and read-state changes.

Example:
    >>> registry = AdapterRegistry()
    >>> registry.register("mastodon", MastodonAdapter())
    >>> async with SyncPipeline(registry) as pipeline:
    ...     conn = await pipeline.connect(user_id, "mastodon", "109", "@ann", credentials)
    ...     feed = pipeline.list_feed(user_id)
"""

from collections.abc import Sequence
from typing import Any, Optional

from sqlmodel import col, select

from socialsync.database import DatabaseManager
from socialsync.delivery import InMemoryDeliveryHub, LiveDeliveryChannel
from socialsync.errors import (
    AuthExpiredError,
    ConnectionNotFoundError,
    PlatformRequestError,
)
from socialsync.ingest import UpsertEngine
from socialsync.interfaces import Capability, DeliveryTransport, SearchIndex
from socialsync.logging import logger
from socialsync.models import (
    Credentials,
    NotificationRow,
    PlatformConnectionRow,
    PostRow,
)
from socialsync.normalize import Normalizer
from socialsync.polling import ContentPollingScheduler, PollSummary
from socialsync.propagation import CommitFanout, EntityRef, PropagationQueue, SearchPropagator
from socialsync.refresh import TokenRefreshScheduler
from socialsync.registry import AdapterRegistry
from socialsync.repository import ConnectionRepository, NotificationRepository, PostRepository
from socialsync.scheduler import WorkerPool, transient_retrying
from socialsync.search import POSTS_INDEX, PROFILES_INDEX, InMemorySearchIndex
from socialsync.utils import utc_now
from socialsync.vault import TokenVault


class SyncPipeline:
    """Owns every pipeline component and their lifecycle.

    The pipeline supports:
    - Connection lifecycle (connect, disconnect, user deletion)
    - Background refresh and polling jobs
    - Feed, inbox and search queries
    - Publishing through the connection's adapter

    Example:
        >>> pipeline = SyncPipeline(registry, search_index=MeilisearchIndex(url))
        >>> pipeline.initialize()
        >>> await pipeline.start()
        >>> ...
        >>> await pipeline.stop(grace=10)
        >>> pipeline.close()
    """

    def __init__(
        self,
        registry: Optional[AdapterRegistry] = None,
        db: Optional[DatabaseManager] = None,
        search_index: Optional[SearchIndex] = None,
        transport: Optional[DeliveryTransport] = None,
        vault: Optional[TokenVault] = None,
        pool: Optional[WorkerPool] = None,
    ):
        """Initialize the pipeline.

        Args:
            registry: Adapter registry (empty if None)
            db: Database manager (creates new if None)
            search_index: Search index (in-memory if None)
            transport: Live delivery transport (in-memory hub if None)
            vault: Token vault (creates one over ``db`` if None)
            pool: Worker pool (sized from settings if None)
        """
        self.registry     = registry or AdapterRegistry()
        self.db           = db or DatabaseManager()
        self.vault        = vault or TokenVault(self.db)
        self.pool         = pool or WorkerPool()
        self.search_index = search_index or InMemorySearchIndex()
        self.transport    = transport or InMemoryDeliveryHub()

        self.normalizer = Normalizer(self.registry)
        self.engine     = UpsertEngine(self.db, self.normalizer)
        self.queue      = PropagationQueue()
        self.search     = SearchPropagator(self.db, self.search_index, self.queue)
        self.delivery   = LiveDeliveryChannel(self.transport)
        self.engine.add_commit_listener(CommitFanout(self.queue, self.search, self.delivery))

        self.refresh = TokenRefreshScheduler(
            self.db, self.vault, self.registry, concurrency=self.pool.size
        )
        self.polling = ContentPollingScheduler(
            self.db, self.vault, self.registry, self.engine, self.pool, self.refresh
        )
        self._started = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def initialize(self) -> None:
        """Initialize the store of record."""
        if self.db.engine is None:
            self.db.initialize()
        logger.info("✅ Pipeline initialized")

    async def start(self) -> None:
        """Start propagation workers, the refresh scan and one polling job per connection."""
        if self._started:
            return
        self.initialize()
        await self.queue.start()
        self.refresh.start(self.pool)
        registered = self.polling.register_active()
        self._started = True
        logger.info(
            f"🚀 Pipeline started: {len(self.registry)} platform(s), "
            f"{registered} connection(s) polling"
        )

    async def stop(self, grace: Optional[float] = None) -> dict[str, int]:
        """Stop scheduling, drain in-flight work for up to ``grace`` seconds.

        Returns:
            Dictionary with ``completed`` and ``cancelled`` job counts
        """
        await self.polling.stop_all()
        await self.refresh.stop()
        stats = await self.pool.shutdown(grace)
        await self.queue.stop(grace)
        await self.registry.aclose()
        await self.search_index.close()
        self._started = False
        logger.info(f"✅ Pipeline stopped: {stats}")
        return stats

    def close(self) -> None:
        """Close pipeline resources."""
        self.db.close()
        logger.info("✅ Pipeline closed")

    async def __aenter__(self) -> "SyncPipeline":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
        self.close()

    @property
    def started(self) -> bool:
        return self._started

    # =========================================================================
    # Connection Lifecycle
    # =========================================================================

    async def connect(
        self,
        user_id: str,
        platform: str,
        platform_account_id: str,
        platform_handle: str,
        credentials: Credentials,
    ) -> PlatformConnectionRow:
        """Link a user to a platform account.

        An existing active connection of the same (user, platform) is
        disconnected first, so at most one stays active.

        Raises:
            PlatformNotSupportedError: If no adapter is registered for ``platform``
        """
        self.registry.resolve(platform)
        self.db.create_user(user_id)
        now = utc_now()

        with self.db.session_scope() as session:
            repo = ConnectionRepository(session)
            previous = repo.active_for(user_id, platform)
            previous_id = previous.id if previous else None
            if previous is not None:
                self._deactivate(previous)
                session.flush()

            conn = repo.add(
                PlatformConnectionRow(
                    user_id=user_id,
                    platform=platform,
                    platform_account_id=platform_account_id,
                    platform_handle=platform_handle,
                    token_expires_at=credentials.expires_at,
                    connected_at=now,
                )
            )

        self.vault.store(conn.id, credentials)

        refs = [EntityRef(PROFILES_INDEX, conn.id)]
        if previous_id is not None:
            self.vault.revoke(previous_id)
            await self.polling.deregister(previous_id)
            self.db.clear_cursors(previous_id)
            refs.append(EntityRef(PROFILES_INDEX, previous_id))
            logger.info(f"Replaced {platform} connection {previous_id} of user {user_id}")

        if self._started:
            self.polling.register(conn.id)
        self.search.project_after_commit(refs)

        logger.info(f"✅ Connected {platform} account {platform_handle} for user {user_id}")
        return conn

    async def disconnect(self, connection_id: str) -> None:
        """Unlink a connection: deactivate it, revoke its tokens, stop polling.

        Raises:
            ConnectionNotFoundError: If the connection does not exist
        """
        with self.db.session_scope() as session:
            conn = ConnectionRepository(session).get(connection_id)
            if conn is None:
                raise ConnectionNotFoundError(connection_id)
            self._deactivate(conn)

        self.vault.revoke(connection_id)
        await self.polling.deregister(connection_id)
        self.db.clear_cursors(connection_id)
        self.search.project_after_commit([EntityRef(PROFILES_INDEX, connection_id)])
        logger.info(f"🗑️ Disconnected connection {connection_id}")

    @staticmethod
    def _deactivate(conn: PlatformConnectionRow) -> None:
        conn.is_active = False
        conn.disconnected_at = utc_now()

    async def delete_user(self, user_id: str) -> bool:
        """Delete a user and everything the user owns, including index documents."""
        with self.db.session_scope() as session:
            connection_ids = [
                c.id for c in ConnectionRepository(session).list_for_user(user_id, True)
            ]
            post_ids = list(session.exec(select(PostRow.id).where(PostRow.user_id == user_id)).all())

        for connection_id in connection_ids:
            await self.polling.deregister(connection_id)

        if not self.db.delete_user(user_id):
            return False

        self.search.project_after_commit(
            [EntityRef(PROFILES_INDEX, cid) for cid in connection_ids]
            + [EntityRef(POSTS_INDEX, pid) for pid in post_ids]
        )
        return True

    # =========================================================================
    # Queries
    # =========================================================================

    def list_connections(
        self, user_id: str, include_inactive: bool = False
    ) -> Sequence[PlatformConnectionRow]:
        with self.db.session_scope() as session:
            return ConnectionRepository(session).list_for_user(user_id, include_inactive)

    def list_feed(
        self,
        user_id: str,
        platform: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Sequence[PostRow]:
        """Posts of a user across platforms, newest first."""
        with self.db.session_scope() as session:
            return PostRepository(session).feed(user_id, platform, limit=limit, offset=offset)

    def list_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
        platform: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Sequence[NotificationRow]:
        """Inbox of a user, newest first."""
        with self.db.session_scope() as session:
            return NotificationRepository(session).inbox(
                user_id, unread_only=unread_only, platform=platform, limit=limit, offset=offset
            )

    def get_post(self, user_id: str, post_id: str) -> Optional[PostRow]:
        """A single post, only if it belongs to ``user_id``."""
        with self.db.session_scope() as session:
            post = PostRepository(session).get(post_id)
            if post is None or post.user_id != user_id:
                return None
            return post

    def unread_count(self, user_id: str) -> int:
        with self.db.session_scope() as session:
            return NotificationRepository(session).unread_count(user_id)

    def mark_notifications_read(
        self, user_id: str, notification_ids: Optional[list[str]] = None
    ) -> int:
        """Mark notifications read; all unread ones when no ids are given.

        Returns:
            Number of notifications changed
        """
        with self.db.session_scope() as session:
            return NotificationRepository(session).mark_read(user_id, notification_ids)

    async def search_posts(
        self, user_id: str, query: str, limit: int = 20
    ) -> list[dict[str, Any]]:
        """Full-text search over the user's posts (eventually consistent)."""
        return await self.search_index.search(
            POSTS_INDEX, query, filters={"user_id": user_id}, limit=limit
        )

    async def search_profiles(
        self, user_id: str, query: str, limit: int = 20
    ) -> list[dict[str, Any]]:
        return await self.search_index.search(
            PROFILES_INDEX, query, filters={"user_id": user_id}, limit=limit
        )

    # =========================================================================
    # Actions
    # =========================================================================

    async def publish(self, connection_id: str, content: dict[str, Any]) -> str:
        """Publish content through a connection's adapter.

        A rejected access token triggers one immediate refresh and one retry.
        Transient failures are retried only when the platform cannot have
        acted on the request, so a timed-out publish is never sent twice.

        Returns:
            Remote id of the published content

        Raises:
            ConnectionNotFoundError: If the connection does not exist or is inactive
            PermanentCapabilityError: If the platform cannot publish
            PlatformRequestError: If the platform refused the content
        """
        with self.db.session_scope() as session:
            conn = ConnectionRepository(session).get(connection_id)
            if conn is None or not conn.is_active:
                raise ConnectionNotFoundError(connection_id)
            platform = conn.platform

        self.registry.require(platform, Capability.PUBLISH)

        for attempt in (1, 2):
            credentials = self.vault.get(connection_id)
            try:
                async for retry in transient_retrying(retry_unknown_outcome=False):
                    with retry:
                        remote_id = await self.registry.invoke(
                            platform, Capability.PUBLISH, credentials, content
                        )
                break
            except AuthExpiredError:
                if attempt == 2 or not await self.refresh.refresh_now(connection_id):
                    raise

        if not remote_id:
            raise PlatformRequestError(f"{platform} publish returned no remote id")
        logger.info(f"✅ Published to {platform} via {connection_id}: {remote_id}")
        return str(remote_id)

    async def poll(self, connection_id: str) -> PollSummary:
        """Run one polling pass of a connection now."""
        return await self.polling.poll_once(connection_id)

    async def refresh_tokens(self) -> dict[str, int]:
        """Run one token refresh scan now."""
        return await self.refresh.scan_once()

    async def reindex(self, show_progress: bool = False) -> dict[str, int]:
        """Rebuild the search index from the store of record."""
        return await self.search.full_reindex(show_progress=show_progress)

    def get_statistics(self) -> dict[str, int]:
        """Get current entity counts and scheduler state.

        Example:
            >>> stats = pipeline.get_statistics()
            >>> print(f"Total posts: {stats['posts']}")
        """
        stats = self.db.get_entity_counts()
        stats["polling_jobs"]      = len(self.polling.registered)
        stats["propagation_queue"] = self.queue.depth
        stats["jobs_in_flight"]    = self.pool.in_flight
        return stats

    def connection_states(self) -> list[dict[str, Any]]:
        """Status rows of every connection, for operators."""
        with self.db.session_scope() as session:
            rows = session.exec(
                select(PlatformConnectionRow).order_by(col(PlatformConnectionRow.connected_at))
            ).all()
            return [
                {
                    "id":         row.id,
                    "user_id":    row.user_id,
                    "platform":   row.platform,
                    "handle":     row.platform_handle,
                    "active":     row.is_active,
                    "status":     row.status,
                    "health":     row.health,
                    "expires_at": row.token_expires_at,
                    "polled_at":  row.last_polled_at,
                    "error":      row.reconnect_reason or row.last_error,
                }
                for row in rows
            ]


__all__ = ["SyncPipeline"]
