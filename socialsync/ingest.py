"""Normalization & upsert engine.

``UpsertEngine.ingest`` turns a batch of raw adapter items into canonical rows:

1. Each item is normalized (see :mod:`socialsync.normalize`); invalid items are
   skipped, recorded in ``ingest_errors`` and counted as failed.
2. Each valid item is upserted in its own transaction keyed on
   (user, platform, native id). Mutable fields are last-writer-wins; the
   user-owned ``is_read`` flag of notifications is never touched.
3. After the item's transaction commits, commit listeners are called with a
   :class:`CommitEvent`. Nothing is emitted for an item whose write failed.

Example:
    >>> engine = UpsertEngine(db, Normalizer(registry))
    >>> engine.add_commit_listener(propagator.on_commit)
    >>> result = engine.ingest("mastodon", user_id, page.items, ItemKind.POST)
    >>> result.created, result.updated, result.failed
    (3, 0, 0)
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from socialsync.database import DatabaseManager
from socialsync.errors import PayloadValidationError
from socialsync.logging import logger
from socialsync.metrics import errors_total, ingest_batch_size, ingested_items_total
from socialsync.models import (
    CanonicalNotification,
    CanonicalPost,
    IngestErrorRow,
    ItemKind,
    NotificationRow,
    PostRow,
)
from socialsync.normalize import Normalizer
from socialsync.repository import NotificationRepository, PostRepository
from socialsync.utils import format_iso, utc_now

# =============================================================================
# Results and Events
# =============================================================================


@dataclass(frozen=True)
class ItemError:
    """One skipped item of an ingest batch."""

    native_id: str | None
    error_type: str
    message: str


@dataclass
class IngestResult:
    """Outcome of one ``ingest`` call.

    A batch with both failed and stored items is a partial success, not a
    failure: ``ok`` is False only when nothing could be stored.
    """

    created: int = 0
    updated: int = 0
    failed: int = 0
    errors: list[ItemError] = field(default_factory=list)
    entity_ids: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.created + self.updated + self.failed

    @property
    def partial(self) -> bool:
        return self.failed > 0 and (self.created + self.updated) > 0

    @property
    def ok(self) -> bool:
        return self.failed == 0 or (self.created + self.updated) > 0

    def merge(self, other: "IngestResult") -> "IngestResult":
        """Accumulate another result into this one (used across pages)."""
        self.created += other.created
        self.updated += other.updated
        self.failed += other.failed
        self.errors.extend(other.errors)
        self.entity_ids.extend(other.entity_ids)
        return self


@dataclass(frozen=True)
class CommitEvent:
    """A canonical row that was durably written.

    Attributes:
        kind: post or notification
        entity_id: Store-of-record id of the row
        user_id: Owning user
        platform: Source platform
        created: True for an insert, False for an update
        payload: Client-facing snapshot of the row (used for live delivery)
    """

    kind: ItemKind
    entity_id: str
    user_id: str
    platform: str
    created: bool
    payload: dict[str, Any]


CommitListener = Callable[[CommitEvent], None]


def notification_payload(row: NotificationRow) -> dict[str, Any]:
    """Client-facing representation of a notification."""
    return {
        "id": row.id,
        "platform": row.platform,
        "type": row.type,
        "title": row.title,
        "body": row.body,
        "author_name": row.author_name,
        "author_handle": row.author_handle,
        "author_avatar": row.author_avatar,
        "is_read": row.is_read,
        "published_at": format_iso(row.published_at),
        "created_at": format_iso(row.created_at),
    }


def post_payload(row: PostRow) -> dict[str, Any]:
    """Client-facing representation of a post."""
    return {
        "id": row.id,
        "platform": row.platform,
        "platform_post_id": row.platform_post_id,
        "content": row.content,
        "media_urls": list(row.media_urls or []),
        "author_name": row.author_name,
        "author_handle": row.author_handle,
        "author_avatar": row.author_avatar,
        "likes": row.likes,
        "reposts": row.reposts,
        "replies": row.replies,
        "published_at": format_iso(row.published_at),
    }


# =============================================================================
# Upsert Engine
# =============================================================================


class UpsertEngine:
    """Writes canonical entities to the store of record.

    Args:
        db: Store of record
        normalizer: Raw payload mapper
    """

    def __init__(self, db: DatabaseManager, normalizer: Normalizer | None = None) -> None:
        self.db = db
        self.normalizer = normalizer or Normalizer()
        self._listeners: list[CommitListener] = []

    def add_commit_listener(self, listener: CommitListener) -> None:
        """Register a callback invoked after each successful item commit."""
        self._listeners.append(listener)

    def ingest(
        self,
        platform: str,
        user_id: str,
        raw_items: Iterable[Any],
        kind: ItemKind,
    ) -> IngestResult:
        """Normalize and upsert a batch of raw items.

        Args:
            platform: Source platform
            user_id: Owning user
            raw_items: Raw adapter payloads
            kind: post or notification

        Returns:
            IngestResult with created/updated/failed counts and per-item errors
        """
        kind = ItemKind(kind)
        items = list(raw_items)
        result = IngestResult()
        ingest_batch_size.labels(kind=kind.value).observe(len(items))

        for raw in items:
            try:
                canonical = self.normalizer.normalize(platform, kind, raw)
            except PayloadValidationError as exc:
                self._record_failure(result, platform, user_id, kind, exc, exc.native_id, exc.payload)
                continue

            try:
                event = self._write(platform, user_id, kind, canonical)
            except SQLAlchemyError as exc:
                native_id = (
                    canonical.platform_post_id
                    if isinstance(canonical, CanonicalPost)
                    else canonical.platform_notification_id
                )
                self._record_failure(result, platform, user_id, kind, exc, native_id, dict(raw))
                continue

            if event.created:
                result.created += 1
            else:
                result.updated += 1
            result.entity_ids.append(event.entity_id)
            ingested_items_total.labels(
                platform=platform,
                kind=kind.value,
                outcome="created" if event.created else "updated",
            ).inc()

            self._emit(event)

        if result.failed:
            logger.warning(
                f"⚠️ Ingested {kind.value}s from {platform} with {result.failed} skipped item(s): "
                f"{result.created} created, {result.updated} updated"
            )
        else:
            logger.debug(
                f"✅ Ingested {kind.value}s from {platform}: "
                f"{result.created} created, {result.updated} updated"
            )
        return result

    # =========================================================================
    # Internals
    # =========================================================================

    def _write(
        self,
        platform: str,
        user_id: str,
        kind: ItemKind,
        canonical: CanonicalPost | CanonicalNotification,
    ) -> CommitEvent:
        """Upsert one item in its own transaction.

        A unique-key conflict means a concurrent run inserted the same item
        first; the write is retried once and then lands as an update.
        """
        for attempt in (1, 2):
            try:
                with self.db.session_scope() as session:
                    if isinstance(canonical, CanonicalPost):
                        return self._upsert_post(session, platform, user_id, canonical)
                    return self._upsert_notification(session, platform, user_id, canonical)
            except IntegrityError:
                if attempt == 2:
                    raise
                logger.debug(f"Unique conflict on {kind.value} from {platform}, retrying as update")
        raise AssertionError("unreachable")

    @staticmethod
    def _upsert_post(
        session: Session, platform: str, user_id: str, post: CanonicalPost
    ) -> CommitEvent:
        repo = PostRepository(session)
        row = repo.get_by_native(user_id, platform, post.platform_post_id)
        created = row is None
        now = utc_now()

        if row is None:
            row = PostRow(
                user_id=user_id,
                platform=platform,
                platform_post_id=post.platform_post_id,
                author_name=post.author_name,
                author_handle=post.author_handle,
                published_at=post.published_at,
                created_at=now,
            )

        row.content = post.content
        row.media_urls = list(post.media_urls)
        row.author_name = post.author_name
        row.author_handle = post.author_handle
        row.author_avatar = post.author_avatar
        row.likes = post.likes
        row.reposts = post.reposts
        row.replies = post.replies
        row.published_at = post.published_at
        row.raw_data = post.raw_data
        row.updated_at = now
        repo.add(row)

        return CommitEvent(
            kind=ItemKind.POST,
            entity_id=row.id,
            user_id=user_id,
            platform=platform,
            created=created,
            payload=post_payload(row),
        )

    @staticmethod
    def _upsert_notification(
        session: Session, platform: str, user_id: str, notification: CanonicalNotification
    ) -> CommitEvent:
        repo = NotificationRepository(session)
        row = repo.get_by_native(user_id, notification.platform_notification_id)
        created = row is None
        now = utc_now()

        if row is None:
            row = NotificationRow(
                user_id=user_id,
                platform=platform,
                platform_notification_id=notification.platform_notification_id,
                type=notification.type,
                title=notification.title,
                created_at=now,
            )

        # is_read belongs to the user
        row.type = notification.type
        row.title = notification.title
        row.body = notification.body
        row.author_name = notification.author_name
        row.author_handle = notification.author_handle
        row.author_avatar = notification.author_avatar
        row.published_at = notification.published_at
        row.raw_data = notification.raw_data
        row.updated_at = now
        repo.add(row)

        return CommitEvent(
            kind=ItemKind.NOTIFICATION,
            entity_id=row.id,
            user_id=user_id,
            platform=platform,
            created=created,
            payload=notification_payload(row),
        )

    def _record_failure(
        self,
        result: IngestResult,
        platform: str,
        user_id: str,
        kind: ItemKind,
        exc: Exception,
        native_id: str | None,
        payload: Any,
    ) -> None:
        result.failed += 1
        result.errors.append(ItemError(native_id, type(exc).__name__, str(exc)))
        ingested_items_total.labels(platform=platform, kind=kind.value, outcome="failed").inc()
        errors_total.labels(error_type=type(exc).__name__, component="ingest").inc()
        logger.warning(f"⚠️ Skipping {kind.value} {native_id or '<no id>'} from {platform}: {exc}")

        self.db.record_ingest_error(
            IngestErrorRow(
                user_id=user_id,
                platform=platform,
                kind=kind.value,
                native_id=native_id,
                error_type=type(exc).__name__,
                message=str(exc)[:1000],
                payload=payload if isinstance(payload, dict) else None,
            )
        )

    def _emit(self, event: CommitEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as exc:  # noqa: BLE001 - the write is already durable
                errors_total.labels(error_type=type(exc).__name__, component="ingest").inc()
                logger.error(f"❌ Commit listener failed for {event.kind.value} {event.entity_id}: {exc}")


__all__ = [
    "ItemError",
    "IngestResult",
    "CommitEvent",
    "CommitListener",
    "UpsertEngine",
    "notification_payload",
    "post_payload",
]
