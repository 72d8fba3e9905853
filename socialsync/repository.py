"""Typed data access over the store of record.

One repository per row type, used by the pipeline and the query API. Repositories never
commit; the caller's ``DatabaseManager.session_scope()`` owns the transaction.

Example:
    >>> from socialsync.repository import ConnectionRepository, PostRepository
    >>>
    >>> with db.session_scope() as session:
    ...     posts = PostRepository(session).feed(user_id, limit=20)
    ...     conn = ConnectionRepository(session).active_for(user_id, "mastodon")
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Any, Generic, TypeVar

import sqlalchemy as sa
from sqlmodel import Session, SQLModel, col, select

from socialsync.models import (
    ConnectionHealth,
    ConnectionStatus,
    NotificationRow,
    PlatformConnectionRow,
    PostRow,
)

# =============================================================================
# Type Variables
# =============================================================================

T = TypeVar("T", bound=SQLModel)


# =============================================================================
# Generic Repository
# =============================================================================


class Repository(Generic[T]):
    """Primary-key access and filtered counts shared by the row repositories.

    Args:
        session: SQLModel Session instance
        model: SQLModel class (e.g., PostRow, NotificationRow)
    """

    def __init__(self, session: Session, model: type[T]):
        self.session = session
        self.model = model

    def get(self, entity_id: Any) -> T | None:
        """Get entity by primary key, or None if not found."""
        return self.session.get(self.model, entity_id)

    def add(self, entity: T) -> T:
        """Stage a new or modified entity and flush it."""
        self.session.add(entity)
        self.session.flush()
        return entity

    def count(self, **filters: Any) -> int:
        """Count entities matching simple equality filters."""
        stmt = select(sa.func.count()).select_from(self.model)
        for key, value in filters.items():
            if hasattr(self.model, key):
                stmt = stmt.where(getattr(self.model, key) == value)
        return self.session.exec(stmt).one()


# =============================================================================
# Platform Connections
# =============================================================================


class ConnectionRepository(Repository[PlatformConnectionRow]):
    """Queries and state transitions of platform connections.

    Transitions that race with other schedulers (the refresh claim and its
    completion) are conditional UPDATEs keyed on ``refresh_epoch``.
    """

    def __init__(self, session: Session):
        super().__init__(session, PlatformConnectionRow)

    def active_for(self, user_id: str, platform: str) -> PlatformConnectionRow | None:
        stmt = select(PlatformConnectionRow).where(
            PlatformConnectionRow.user_id == user_id,
            PlatformConnectionRow.platform == platform,
            PlatformConnectionRow.is_active == True,  # noqa: E712
        )
        return self.session.exec(stmt).first()

    def list_for_user(
        self, user_id: str, include_inactive: bool = False
    ) -> Sequence[PlatformConnectionRow]:
        stmt = select(PlatformConnectionRow).where(PlatformConnectionRow.user_id == user_id)
        if not include_inactive:
            stmt = stmt.where(PlatformConnectionRow.is_active == True)  # noqa: E712
        return self.session.exec(stmt.order_by(col(PlatformConnectionRow.connected_at))).all()

    def list_active(self) -> Sequence[PlatformConnectionRow]:
        stmt = select(PlatformConnectionRow).where(
            PlatformConnectionRow.is_active == True  # noqa: E712
        )
        return self.session.exec(stmt).all()

    def due_for_refresh(
        self,
        refresh_before: datetime,
        stale_claim_before: datetime,
    ) -> Sequence[PlatformConnectionRow]:
        """Active connections whose token expires before ``refresh_before``.

        Includes connections whose previous refresh failed and connections
        whose ``refresh_pending`` claim started before ``stale_claim_before``.
        """
        stmt = select(PlatformConnectionRow).where(
            PlatformConnectionRow.is_active == True,  # noqa: E712
            col(PlatformConnectionRow.token_expires_at).is_not(None),
            col(PlatformConnectionRow.token_expires_at) <= refresh_before,
            sa.or_(
                col(PlatformConnectionRow.status).in_(
                    [ConnectionStatus.VALID, ConnectionStatus.REFRESH_FAILED]
                ),
                sa.and_(
                    col(PlatformConnectionRow.status) == ConnectionStatus.REFRESH_PENDING,
                    col(PlatformConnectionRow.refresh_started_at) <= stale_claim_before,
                ),
            ),
        )
        return self.session.exec(stmt.order_by(col(PlatformConnectionRow.token_expires_at))).all()

    def claim_refresh(
        self,
        connection_id: str,
        expected_epoch: int,
        now: datetime,
        stale_claim_before: datetime,
    ) -> bool:
        """Compare-and-set the connection into ``refresh_pending``.

        Succeeds only if ``refresh_epoch`` still equals ``expected_epoch`` and
        the connection is claimable; the epoch is incremented on success.

        Returns:
            True if this caller now owns the refresh
        """
        result = self.session.connection().execute(
            sa.update(PlatformConnectionRow)
            .where(
                col(PlatformConnectionRow.id) == connection_id,
                col(PlatformConnectionRow.refresh_epoch) == expected_epoch,
                col(PlatformConnectionRow.is_active) == True,  # noqa: E712
                sa.or_(
                    col(PlatformConnectionRow.status).in_(
                        [ConnectionStatus.VALID, ConnectionStatus.REFRESH_FAILED]
                    ),
                    sa.and_(
                        col(PlatformConnectionRow.status) == ConnectionStatus.REFRESH_PENDING,
                        col(PlatformConnectionRow.refresh_started_at) <= stale_claim_before,
                    ),
                ),
            )
            .values(
                refresh_epoch=expected_epoch + 1,
                status=ConnectionStatus.REFRESH_PENDING,
                refresh_started_at=now,
            )
        )
        return result.rowcount == 1

    def complete_refresh(self, connection_id: str, epoch: int) -> bool:
        """Return a claimed connection to ``valid`` and reset its failure count."""
        result = self.session.connection().execute(
            sa.update(PlatformConnectionRow)
            .where(
                col(PlatformConnectionRow.id) == connection_id,
                col(PlatformConnectionRow.refresh_epoch) == epoch,
            )
            .values(
                status=ConnectionStatus.VALID,
                refresh_failures=0,
                refresh_started_at=None,
                last_error=None,
            )
        )
        return result.rowcount == 1

    def fail_refresh(self, connection_id: str, epoch: int, error: str) -> int | None:
        """Record one failed refresh attempt.

        Returns:
            The new consecutive failure count, or None if the claim was lost
        """
        row = self.get(connection_id)
        if row is None or row.refresh_epoch != epoch:
            return None
        row.refresh_failures += 1
        row.status = ConnectionStatus.REFRESH_FAILED
        row.refresh_started_at = None
        row.last_error = error[:500]
        self.add(row)
        return row.refresh_failures

    def require_reconnect(self, connection_id: str, reason: str, now: datetime) -> bool:
        """Move a connection to ``needs_reconnect`` and clear its active flag."""
        row = self.get(connection_id)
        if row is None:
            return False
        row.status = ConnectionStatus.NEEDS_RECONNECT
        row.is_active = False
        row.refresh_started_at = None
        row.reconnect_reason = reason[:500]
        row.reconnect_required_at = now
        self.add(row)
        return True

    def set_health(
        self,
        connection_id: str,
        health: ConnectionHealth,
        error: str | None = None,
        polled_at: datetime | None = None,
    ) -> None:
        row = self.get(connection_id)
        if row is None:
            return
        row.health = health
        row.last_error = error[:500] if error else None
        if polled_at is not None:
            row.last_polled_at = polled_at
        self.add(row)


# =============================================================================
# Posts and Notifications
# =============================================================================


class PostRepository(Repository[PostRow]):
    """Feed queries over canonical posts."""

    def __init__(self, session: Session):
        super().__init__(session, PostRow)

    def get_by_native(self, user_id: str, platform: str, native_id: str) -> PostRow | None:
        stmt = select(PostRow).where(
            PostRow.user_id == user_id,
            PostRow.platform == platform,
            PostRow.platform_post_id == native_id,
        )
        return self.session.exec(stmt).first()

    def feed(
        self,
        user_id: str,
        platform: str | None = None,
        limit: int = 50,
        offset: int = 0,
        before: datetime | None = None,
    ) -> Sequence[PostRow]:
        """Posts of a user, newest first."""
        stmt = select(PostRow).where(PostRow.user_id == user_id)
        if platform:
            stmt = stmt.where(PostRow.platform == platform)
        if before is not None:
            stmt = stmt.where(col(PostRow.published_at) < before)
        stmt = (
            stmt.order_by(col(PostRow.published_at).desc(), col(PostRow.id))
            .limit(limit)
            .offset(offset)
        )
        return self.session.exec(stmt).all()

    def batch_after(self, last_id: str | None, batch_size: int) -> Sequence[PostRow]:
        """Next ``batch_size`` posts in primary-key order after ``last_id``.

        Keyset paging, so callers can read each batch in its own session.
        """
        stmt = select(PostRow).order_by(col(PostRow.id)).limit(batch_size)
        if last_id is not None:
            stmt = stmt.where(col(PostRow.id) > last_id)
        return self.session.exec(stmt).all()


class NotificationRepository(Repository[NotificationRow]):
    """Inbox queries over canonical notifications."""

    def __init__(self, session: Session):
        super().__init__(session, NotificationRow)

    def get_by_native(self, user_id: str, native_id: str) -> NotificationRow | None:
        stmt = select(NotificationRow).where(
            NotificationRow.user_id == user_id,
            NotificationRow.platform_notification_id == native_id,
        )
        return self.session.exec(stmt).first()

    def inbox(
        self,
        user_id: str,
        unread_only: bool = False,
        platform: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Sequence[NotificationRow]:
        """Notifications of a user, newest first."""
        stmt = select(NotificationRow).where(NotificationRow.user_id == user_id)
        if unread_only:
            stmt = stmt.where(NotificationRow.is_read == False)  # noqa: E712
        if platform:
            stmt = stmt.where(NotificationRow.platform == platform)
        stmt = (
            stmt.order_by(col(NotificationRow.created_at).desc(), col(NotificationRow.id))
            .limit(limit)
            .offset(offset)
        )
        return self.session.exec(stmt).all()

    def mark_read(self, user_id: str, notification_ids: list[str] | None = None) -> int:
        """Mark notifications of a user as read (all unread when ids is None)."""
        stmt = (
            sa.update(NotificationRow)
            .where(
                col(NotificationRow.user_id) == user_id,
                col(NotificationRow.is_read) == False,  # noqa: E712
            )
            .values(is_read=True)
        )
        if notification_ids is not None:
            stmt = stmt.where(col(NotificationRow.id).in_(notification_ids))
        return self.session.connection().execute(stmt).rowcount

    def unread_count(self, user_id: str) -> int:
        return self.count(user_id=user_id, is_read=False)


__all__ = [
    "Repository",
    "ConnectionRepository",
    "PostRepository",
    "NotificationRepository",
]
