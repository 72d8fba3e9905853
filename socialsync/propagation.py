"""Propagation of committed writes to the search index and to live clients.

Commit events from the upsert engine are routed onto an internal asyncio queue
and drained by propagation workers:

- search: the store of record is re-read and the matching document upserted
  (or deleted when the entity is gone); transient index failures are retried
  with exponential backoff, then given up and left for a full reindex
- delivery: newly created notifications are pushed once, never retried

Neither path can roll back or fail the durable write that produced it.

Example:
    >>> queue = PropagationQueue(workers=2)
    >>> search = SearchPropagator(db, InMemorySearchIndex(), queue)
    >>> fanout = CommitFanout(queue, search, LiveDeliveryChannel(hub))
    >>> engine.add_commit_listener(fanout)
    >>> await queue.start()
    >>> ...
    >>> await search.full_reindex()
"""

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from sqlmodel import select
from tqdm import tqdm

from socialsync.config import settings
from socialsync.database import DatabaseManager
from socialsync.delivery import LiveDeliveryChannel
from socialsync.ingest import CommitEvent
from socialsync.interfaces import SearchIndex
from socialsync.logging import logger
from socialsync.metrics import errors_total, propagation_queue_depth, propagation_tasks_total
from socialsync.models import ItemKind, PlatformConnectionRow, PostRow
from socialsync.repository import PostRepository
from socialsync.scheduler import JobFactory, transient_retrying
from socialsync.search import POSTS_INDEX, PROFILES_INDEX
from socialsync.utils import as_utc

# =============================================================================
# Documents
# =============================================================================


@dataclass(frozen=True)
class EntityRef:
    """Reference to a store-of-record entity projected into ``index``."""

    index: str
    entity_id: str


def post_document(row: PostRow) -> dict[str, Any]:
    """Search projection of a post."""
    published = as_utc(row.published_at)
    return {
        "id": row.id,
        "user_id": row.user_id,
        "platform": row.platform,
        "content": row.content,
        "author_name": row.author_name,
        "author_handle": row.author_handle,
        "likes": row.likes,
        "reposts": row.reposts,
        "replies": row.replies,
        "published_at": int(published.timestamp()) if published else None,
    }


def profile_document(row: PlatformConnectionRow) -> dict[str, Any]:
    """Search projection of a connected account profile."""
    return {
        "id": row.id,
        "user_id": row.user_id,
        "platform": row.platform,
        "platform_account_id": row.platform_account_id,
        "platform_handle": row.platform_handle,
    }


# =============================================================================
# Queue
# =============================================================================


class PropagationQueue:
    """asyncio queue of propagation tasks drained by a fixed set of workers.

    Tasks submitted before :meth:`start` wait in the queue.

    Args:
        workers: Number of worker tasks (defaults to settings.propagation_workers)
    """

    def __init__(self, workers: int | None = None) -> None:
        self.workers = workers or settings.propagation_workers
        self._queue: asyncio.Queue[tuple[str, JobFactory]] = asyncio.Queue()
        self._worker_tasks: list[asyncio.Task] = []
        self._accepting = True
        self.stats: dict[str, int] = {"processed": 0, "failed": 0, "dropped": 0}

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    @property
    def started(self) -> bool:
        return bool(self._worker_tasks)

    def submit(self, target: str, factory: JobFactory) -> bool:
        """Enqueue one task; returns False once the queue is stopping."""
        if not self._accepting:
            self.stats["dropped"] += 1
            return False
        self._queue.put_nowait((target, factory))
        propagation_queue_depth.set(self._queue.qsize())
        return True

    async def start(self) -> None:
        if self._worker_tasks:
            return
        self._accepting = True
        self._worker_tasks = [
            asyncio.create_task(self._worker(i), name=f"propagation-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info(f"✅ Started {self.workers} propagation worker(s)")

    async def _worker(self, number: int) -> None:
        while True:
            target, factory = await self._queue.get()
            propagation_queue_depth.set(self._queue.qsize())
            try:
                await factory()
                self.stats["processed"] += 1
                propagation_tasks_total.labels(target=target, outcome="success").inc()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.stats["failed"] += 1
                propagation_tasks_total.labels(target=target, outcome="failure").inc()
                errors_total.labels(error_type=type(exc).__name__, component="propagation").inc()
                logger.error(f"❌ Propagation task ({target}) failed in worker {number}: {exc}")
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued task has been processed."""
        await self._queue.join()

    async def stop(self, grace: float | None = None) -> None:
        """Stop accepting tasks, drain for up to ``grace`` seconds, cancel workers."""
        self._accepting = False
        grace = settings.shutdown_grace_seconds if grace is None else grace
        if self._worker_tasks:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=grace)
            except TimeoutError:
                logger.warning(f"⚠️ Propagation queue not drained, {self._queue.qsize()} task(s) left")
        for task in self._worker_tasks:
            task.cancel()
        await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        self._worker_tasks = []


# =============================================================================
# Search Propagator
# =============================================================================


class SearchPropagator:
    """Keeps the search index a projection of the store of record.

    Args:
        db: Store of record
        index: Search index
        queue: Queue drained by propagation workers
    """

    def __init__(
        self,
        db: DatabaseManager,
        index: SearchIndex,
        queue: PropagationQueue | None = None,
    ) -> None:
        self.db = db
        self.index = index
        self.queue = queue

    def project_after_commit(self, entity_refs: Iterable[EntityRef]) -> None:
        """Enqueue projection of entities whose write has committed.

        Without a queue the projection cannot be scheduled and is left to the
        next full reindex.
        """
        refs = list(entity_refs)
        if not refs:
            return
        if self.queue is None:
            logger.warning(f"⚠️ No propagation queue, {len(refs)} projection(s) deferred to reindex")
            return
        self.queue.submit("search", lambda: self.project(refs))

    async def project(self, entity_refs: Iterable[EntityRef]) -> None:
        """Re-read entities and upsert or delete their documents.

        Raises:
            TransientNetworkError: If the index stays unreachable after retries
        """
        upserts: dict[str, list[dict[str, Any]]] = {}
        deletes: dict[str, list[str]] = {}

        with self.db.session_scope() as session:
            for ref in entity_refs:
                if ref.index == POSTS_INDEX:
                    row = session.get(PostRow, ref.entity_id)
                    doc = post_document(row) if row is not None else None
                elif ref.index == PROFILES_INDEX:
                    conn = session.get(PlatformConnectionRow, ref.entity_id)
                    doc = profile_document(conn) if conn is not None and conn.is_active else None
                else:
                    logger.warning(f"⚠️ Unknown search index '{ref.index}'")
                    continue

                if doc is None:
                    deletes.setdefault(ref.index, []).append(ref.entity_id)
                else:
                    upserts.setdefault(ref.index, []).append(doc)

        async for attempt in transient_retrying():
            with attempt:
                for index, docs in upserts.items():
                    await self.index.upsert_documents(index, docs)
                for index, ids in deletes.items():
                    await self.index.delete_documents(index, ids)

    async def full_reindex(
        self,
        batch_size: int | None = None,
        show_progress: bool = False,
    ) -> dict[str, int]:
        """Rebuild every index from the store of record.

        Each index is deleted and re-streamed in ``batch_size`` batches, so
        afterwards it holds exactly the documents the store projects to.

        Returns:
            Dictionary with documents written per index
        """
        batch_size = batch_size or settings.reindex_batch_size
        stats = {POSTS_INDEX: 0, PROFILES_INDEX: 0}

        await self._with_retry(self.index.delete_index, POSTS_INDEX)
        await self._with_retry(self.index.delete_index, PROFILES_INDEX)

        # no session stays open across an index call
        with self.db.session_scope() as session:
            total = PostRepository(session).count()

        last_id: str | None = None
        with tqdm(total=total, desc="Reindexing posts", unit="doc", disable=not show_progress) as pbar:
            while True:
                with self.db.session_scope() as session:
                    batch = PostRepository(session).batch_after(last_id, batch_size)
                    docs = [post_document(row) for row in batch]
                if not docs:
                    break
                last_id = batch[-1].id
                await self._with_retry(self.index.upsert_documents, POSTS_INDEX, docs)
                stats[POSTS_INDEX] += len(docs)
                pbar.update(len(docs))

        with self.db.session_scope() as session:
            profiles = [
                profile_document(row)
                for row in session.exec(
                    select(PlatformConnectionRow).where(
                        PlatformConnectionRow.is_active == True  # noqa: E712
                    )
                ).all()
            ]
        for start in range(0, len(profiles), batch_size):
            docs = profiles[start : start + batch_size]
            await self._with_retry(self.index.upsert_documents, PROFILES_INDEX, docs)
            stats[PROFILES_INDEX] += len(docs)

        logger.info(
            f"✅ Full reindex complete: {stats[POSTS_INDEX]} posts, "
            f"{stats[PROFILES_INDEX]} profiles"
        )
        return stats

    @staticmethod
    async def _with_retry(func: Any, *args: Any) -> None:
        async for attempt in transient_retrying():
            with attempt:
                await func(*args)


# =============================================================================
# Commit Fan-Out
# =============================================================================


class CommitFanout:
    """Commit listener routing upsert events to search and live delivery.

    Posts are projected into the search index; newly created notifications
    are pushed to the user's live sessions. Updates of existing notifications
    are not re-delivered.
    """

    def __init__(
        self,
        queue: PropagationQueue,
        search: SearchPropagator | None = None,
        delivery: LiveDeliveryChannel | None = None,
    ) -> None:
        self.queue = queue
        self.search = search
        self.delivery = delivery

    def __call__(self, event: CommitEvent) -> None:
        if event.kind == ItemKind.POST and self.search is not None:
            self.search.project_after_commit([EntityRef(POSTS_INDEX, event.entity_id)])

        elif event.kind == ItemKind.NOTIFICATION and event.created and self.delivery is not None:
            delivery = self.delivery
            self.queue.submit("delivery", lambda: delivery.deliver(event.user_id, event.payload))


__all__ = [
    "EntityRef",
    "post_document",
    "profile_document",
    "PropagationQueue",
    "SearchPropagator",
    "CommitFanout",
]
