"""Store-of-record management for SocialSync.

This module provides the database engine and session handling with:
- Connection management with WAL mode and enforced foreign keys on SQLite
- Transactional session scope (commit on success, rollback on error)
- Index creation for the polling and feed queries
- Sync cursor tracking per (connection, stream)
- Recording of skipped ingest items

Example:
    >>> from socialsync.database import DatabaseManager
    >>>
    >>> db = DatabaseManager()
    >>> db.initialize()
    >>> user = db.create_user()
    >>> db.update_cursor(connection_id, "feed", "cursor-123")
    >>> db.close()
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import event, func, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from socialsync.config import settings
from socialsync.logging import logger
from socialsync.models import (
    IngestErrorRow,
    NotificationRow,
    PlatformConnectionRow,
    PostRow,
    SyncCursorRow,
    UserRow,
)
from socialsync.utils import utc_now


def _enable_sqlite_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
    """Per-connection PRAGMAs; foreign keys are off by default in SQLite."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON;")
    cursor.execute("PRAGMA busy_timeout = 5000;")
    cursor.close()


# =============================================================================
# Database Manager
# =============================================================================


class DatabaseManager:
    """Manages the store of record.

    Features:
    - WAL mode for concurrent readers while a poll writes
    - Foreign keys enforced so user deletion cascades
    - Short-lived sessions per unit of work (one item upsert = one transaction)

    Args:
        database_url: SQLAlchemy URL (defaults to settings.database_url)
    """

    def __init__(self, database_url: str | None = None):
        self.database_url = database_url or settings.database_url
        self.engine: Engine | None = None

    @property
    def is_sqlite(self) -> bool:
        return bool(self.database_url) and self.database_url.startswith("sqlite")

    def initialize(self) -> None:
        """Initialize database engine and create tables.

        This method:
        1. Creates the engine (StaticPool for in-memory SQLite)
        2. Enables foreign keys and WAL mode on SQLite
        3. Creates all tables from SQLModel metadata
        4. Creates indexes for common queries
        """
        if self.engine is not None:
            return

        kwargs: dict[str, Any] = {"echo": False}
        if self.is_sqlite:
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in self.database_url or self.database_url == "sqlite://":
                kwargs["poolclass"] = StaticPool

        self.engine = create_engine(self.database_url, **kwargs)

        if self.is_sqlite:
            event.listen(self.engine, "connect", _enable_sqlite_pragmas)

        SQLModel.metadata.create_all(self.engine)

        if self.is_sqlite:
            with self.engine.connect() as conn:
                conn.exec_driver_sql("PRAGMA journal_mode = WAL;")
                conn.exec_driver_sql("PRAGMA synchronous = NORMAL;")
                conn.commit()

        self.create_indexes()
        logger.info(f"✅ Store of record initialized at {self.database_url}")

    def create_indexes(self) -> None:
        """Create indexes for the scheduler scans and feed queries."""
        if self.engine is None:
            raise RuntimeError("Database not initialized")

        statements = [
            "CREATE INDEX IF NOT EXISTS idx_connection_refresh_scan "
            "ON platform_connections(is_active, status, token_expires_at)",
            "CREATE INDEX IF NOT EXISTS idx_notification_user_platform "
            "ON notifications(user_id, platform, created_at)",
            "CREATE INDEX IF NOT EXISTS idx_post_user_platform "
            "ON posts(user_id, platform, published_at)",
        ]
        with self.engine.connect() as conn:
            for statement in statements:
                conn.execute(text(statement))
            conn.commit()

        logger.debug("✅ Database indexes created")

    def close(self) -> None:
        """Dispose the engine and its pooled connections."""
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Provide a transactional scope around a unit of work.

        Commits when the block exits normally and rolls back on any exception,
        which is re-raised to the caller.
        """
        if self.engine is None:
            raise RuntimeError("Database not initialized")

        session = Session(self.engine, expire_on_commit=False)
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # =========================================================================
    # User Operations
    # =========================================================================

    def create_user(self, user_id: str | None = None) -> UserRow:
        """Insert a user row (idempotent when ``user_id`` already exists)."""
        with self.session_scope() as session:
            if user_id is not None:
                existing = session.get(UserRow, user_id)
                if existing is not None:
                    return existing
                user = UserRow(id=user_id)
            else:
                user = UserRow()
            session.add(user)
        return user

    def delete_user(self, user_id: str) -> bool:
        """Delete a user; connections, posts and notifications cascade."""
        with self.session_scope() as session:
            user = session.get(UserRow, user_id)
            if user is None:
                return False
            session.delete(user)
        logger.info(f"🗑️ Deleted user {user_id} and all owned rows")
        return True

    # =========================================================================
    # Sync Cursor Operations
    # =========================================================================

    def get_cursor(self, connection_id: str, stream: str) -> str | None:
        """Get the last committed cursor for a connection stream.

        Returns:
            Cursor string or None if the stream was never polled
        """
        with self.session_scope() as session:
            state = session.get(SyncCursorRow, (connection_id, stream))
            return state.cursor if state else None

    def update_cursor(self, connection_id: str, stream: str, cursor: str | None) -> None:
        """Advance the cursor for a connection stream."""
        with self.session_scope() as session:
            state = session.get(SyncCursorRow, (connection_id, stream))
            if state:
                state.cursor = cursor
                state.updated_at = utc_now()
            else:
                session.add(
                    SyncCursorRow(
                        connection_id=connection_id,
                        stream=stream,
                        cursor=cursor,
                        updated_at=utc_now(),
                    )
                )

    def clear_cursors(self, connection_id: str) -> int:
        """Forget all cursors of a connection (used on disconnect)."""
        with self.session_scope() as session:
            rows = session.exec(
                select(SyncCursorRow).where(SyncCursorRow.connection_id == connection_id)
            ).all()
            for row in rows:
                session.delete(row)
            return len(rows)

    # =========================================================================
    # Ingest Error Operations
    # =========================================================================

    def record_ingest_error(self, error: IngestErrorRow) -> None:
        """Persist one skipped item; failures here are logged, never raised."""
        try:
            with self.session_scope() as session:
                session.add(error)
        except Exception as exc:  # noqa: BLE001 - error bookkeeping must not abort a batch
            logger.error(f"❌ Could not record ingest error for {error.native_id}: {exc}")

    # =========================================================================
    # Statistics Operations
    # =========================================================================

    def get_entity_counts(self) -> dict[str, int]:
        """Get row counts for the canonical tables."""
        with self.session_scope() as session:
            return {
                "users": session.exec(select(func.count()).select_from(UserRow)).one(),
                "connections": session.exec(
                    select(func.count()).select_from(PlatformConnectionRow)
                ).one(),
                "active_connections": session.exec(
                    select(func.count())
                    .select_from(PlatformConnectionRow)
                    .where(PlatformConnectionRow.is_active == True)  # noqa: E712
                ).one(),
                "posts": session.exec(select(func.count()).select_from(PostRow)).one(),
                "notifications": session.exec(
                    select(func.count()).select_from(NotificationRow)
                ).one(),
                "ingest_errors": session.exec(
                    select(func.count()).select_from(IngestErrorRow)
                ).one(),
            }


__all__ = ["DatabaseManager"]
