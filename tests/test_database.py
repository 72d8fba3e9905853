"""Tests for the store of record, canonical models and repositories."""

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from socialsync.models import (
    CanonicalNotification,
    CanonicalPost,
    ConnectionHealth,
    ConnectionStatus,
    FetchPage,
    IngestErrorRow,
    NotificationRow,
    NotificationType,
    PlatformConnectionRow,
    PostRow,
    RefreshedToken,
)
from socialsync.repository import (
    ConnectionRepository,
    NotificationRepository,
    PostRepository,
)
from socialsync.utils import as_utc, utc_now


def _post(user_id: str, native_id: str, published_at: datetime, platform: str = "mastodon") -> PostRow:
    return PostRow(
        user_id=user_id,
        platform=platform,
        platform_post_id=native_id,
        content=f"post {native_id}",
        author_name="Ann",
        author_handle="ann",
        published_at=published_at,
    )


def _notification(user_id: str, native_id: str, **fields) -> NotificationRow:
    return NotificationRow(
        user_id=user_id,
        platform=fields.pop("platform", "mastodon"),
        platform_notification_id=native_id,
        type="mention",
        title=f"notification {native_id}",
        **fields,
    )


# =============================================================================
# Canonical Models
# =============================================================================


class TestCanonicalModels:
    """Tests for canonical Pydantic models."""

    def test_post_coercions(self):
        """Test id, counter, media and timestamp coercions."""
        post = CanonicalPost(
            platform_post_id=42,
            author_name="Ann",
            author_handle="ann",
            likes=None,
            media_urls=[{"url": "https://cdn.example/a.jpg"}, "https://cdn.example/b.jpg"],
            published_at="2024-01-15T10:30:00Z",
        )

        assert post.platform_post_id == "42"
        assert post.likes == 0
        assert post.media_urls == ["https://cdn.example/a.jpg", "https://cdn.example/b.jpg"]
        assert post.published_at == datetime(2024, 1, 15, 10, 30, tzinfo=UTC)

    def test_post_requires_author_and_timestamp(self):
        """Test required fields are enforced."""
        with pytest.raises(ValidationError):
            CanonicalPost(platform_post_id="1", author_handle="ann", published_at="2024-01-01")
        with pytest.raises(ValidationError):
            CanonicalPost(platform_post_id="1", author_name="Ann", author_handle="ann")

    def test_post_rejects_empty_id_and_negative_counters(self):
        """Test native id and counter constraints."""
        with pytest.raises(ValidationError):
            CanonicalPost(
                platform_post_id="",
                author_name="Ann",
                author_handle="ann",
                published_at="2024-01-01",
            )
        with pytest.raises(ValidationError):
            CanonicalPost(
                platform_post_id="1",
                author_name="Ann",
                author_handle="ann",
                likes=-1,
                published_at="2024-01-01",
            )

    def test_notification_type_coercion(self):
        """Test notification types are normalized."""
        dm = CanonicalNotification(platform_notification_id="1", type="direct_message", title="Hi")
        like = CanonicalNotification(platform_notification_id="2", type="LIKE", title="Liked")

        assert dm.type == NotificationType.DIRECT_MESSAGE
        assert like.type == NotificationType.LIKE

    def test_notification_rejects_unknown_type(self):
        """Test unknown notification types are rejected."""
        with pytest.raises(ValidationError):
            CanonicalNotification(platform_notification_id="1", type="poke", title="Poke")

    def test_refreshed_token_parses_expiry(self):
        """Test refreshed token expiry coercion."""
        token = RefreshedToken(access_token="a", expires_at="2024-01-15T10:30:00Z")

        assert token.expires_at == datetime(2024, 1, 15, 10, 30, tzinfo=UTC)
        assert token.refresh_token is None

    def test_fetch_page_defaults(self):
        """Test empty pages."""
        page = FetchPage()

        assert page.items == []
        assert page.next_cursor is None


# =============================================================================
# Database Manager
# =============================================================================


class TestDatabaseManager:
    """Tests for DatabaseManager."""

    def test_initialize_is_idempotent(self, db):
        """Test repeated initialization keeps the engine."""
        engine = db.engine
        db.initialize()

        assert db.engine is engine

    def test_session_scope_requires_initialize(self, temp_db_path):
        """Test using an uninitialized manager fails."""
        from socialsync.database import DatabaseManager

        manager = DatabaseManager(f"sqlite:///{temp_db_path}")

        with pytest.raises(RuntimeError):
            with manager.session_scope():
                pass

    def test_session_scope_rolls_back(self, db, user_id):
        """Test exceptions roll back the unit of work."""
        with pytest.raises(ValueError):
            with db.session_scope() as session:
                session.add(_post(user_id, "1", utc_now()))
                raise ValueError("boom")

        assert db.get_entity_counts()["posts"] == 0

    def test_create_user_idempotent(self, db):
        """Test creating a known user returns the existing row."""
        first = db.create_user("user-1")
        second = db.create_user("user-1")

        assert first.id == second.id == "user-1"
        assert db.get_entity_counts()["users"] == 1

    def test_delete_user_cascades(self, db, user_id, make_connection):
        """Test user deletion removes every owned row."""
        connection_id = make_connection()
        db.update_cursor(connection_id, "feed", "c1")
        with db.session_scope() as session:
            session.add(_post(user_id, "1", utc_now()))
            session.add(_notification(user_id, "n1"))

        assert db.delete_user(user_id) is True

        counts = db.get_entity_counts()
        assert counts["users"] == 0
        assert counts["connections"] == 0
        assert counts["posts"] == 0
        assert counts["notifications"] == 0
        assert db.get_cursor(connection_id, "feed") is None

    def test_delete_unknown_user(self, db):
        """Test deleting a missing user returns False."""
        assert db.delete_user("missing") is False

    def test_cursor_tracking(self, db, make_connection):
        """Test per-stream cursors."""
        connection_id = make_connection()

        assert db.get_cursor(connection_id, "feed") is None
        db.update_cursor(connection_id, "feed", "c1")
        db.update_cursor(connection_id, "feed", "c2")
        db.update_cursor(connection_id, "notifications", "n1")

        assert db.get_cursor(connection_id, "feed") == "c2"
        assert db.get_cursor(connection_id, "notifications") == "n1"
        assert db.clear_cursors(connection_id) == 2
        assert db.get_cursor(connection_id, "feed") is None

    def test_record_ingest_error(self, db, user_id):
        """Test skipped items are recorded."""
        db.record_ingest_error(
            IngestErrorRow(
                user_id=user_id,
                platform="mastodon",
                kind="post",
                native_id="7",
                error_type="PayloadValidationError",
                message="missing author",
                payload={"id": "7"},
            )
        )

        assert db.get_entity_counts()["ingest_errors"] == 1

    def test_record_ingest_error_never_raises(self, db):
        """Test a failing error write is swallowed."""
        db.record_ingest_error(
            IngestErrorRow(
                user_id="missing-user",
                platform="mastodon",
                kind="post",
                error_type="X",
                message="y",
            )
        )

        assert db.get_entity_counts()["ingest_errors"] == 0

    def test_post_uniqueness(self, db, user_id):
        """Test the (user, platform, native id) constraint."""
        with db.session_scope() as session:
            session.add(_post(user_id, "1", utc_now()))

        with pytest.raises(IntegrityError):
            with db.session_scope() as session:
                session.add(_post(user_id, "1", utc_now()))

    def test_single_active_connection_per_platform(self, make_connection):
        """Test the partial unique index on active connections."""
        make_connection()

        with pytest.raises(IntegrityError):
            make_connection()

    def test_inactive_connections_do_not_conflict(self, make_connection):
        """Test inactive rows are outside the uniqueness constraint."""
        make_connection(is_active=False)
        make_connection()


# =============================================================================
# Repositories
# =============================================================================


class TestConnectionRepository:
    """Tests for ConnectionRepository state transitions."""

    def test_due_for_refresh(self, db, make_connection):
        """Test only connections inside the lead window are due."""
        soon = make_connection(expires_in=timedelta(minutes=4))
        make_connection(platform="bluesky", expires_in=timedelta(hours=2))
        make_connection(platform="linkedin", expires_in=None)
        now = utc_now()

        with db.session_scope() as session:
            due = ConnectionRepository(session).due_for_refresh(
                now + timedelta(minutes=5), now - timedelta(minutes=2)
            )

        assert [row.id for row in due] == [soon]

    def test_claim_is_compare_and_set(self, db, make_connection):
        """Test a claim succeeds once per epoch."""
        connection_id = make_connection(expires_in=timedelta(minutes=1))
        now = utc_now()
        stale = now - timedelta(minutes=2)

        with db.session_scope() as session:
            assert ConnectionRepository(session).claim_refresh(connection_id, 0, now, stale)
        with db.session_scope() as session:
            assert not ConnectionRepository(session).claim_refresh(connection_id, 0, now, stale)
            assert not ConnectionRepository(session).claim_refresh(connection_id, 1, now, stale)

        with db.session_scope() as session:
            row = session.get(PlatformConnectionRow, connection_id)
            assert row.status == ConnectionStatus.REFRESH_PENDING
            assert row.refresh_epoch == 1

    def test_stale_claim_is_reclaimable(self, db, make_connection):
        """Test a claim abandoned past the timeout can be retaken."""
        connection_id = make_connection(expires_in=timedelta(minutes=1))
        now = utc_now()

        with db.session_scope() as session:
            assert ConnectionRepository(session).claim_refresh(
                connection_id, 0, now - timedelta(minutes=10), now - timedelta(minutes=12)
            )
        with db.session_scope() as session:
            due = ConnectionRepository(session).due_for_refresh(
                now + timedelta(minutes=5), now - timedelta(minutes=2)
            )
            assert [row.id for row in due] == [connection_id]
            assert ConnectionRepository(session).claim_refresh(
                connection_id, 1, now, now - timedelta(minutes=2)
            )

    def test_complete_and_fail_refresh(self, db, make_connection):
        """Test failure counting and completion reset."""
        connection_id = make_connection(expires_in=timedelta(minutes=1))
        now = utc_now()
        stale = now - timedelta(minutes=2)

        with db.session_scope() as session:
            ConnectionRepository(session).claim_refresh(connection_id, 0, now, stale)
        with db.session_scope() as session:
            assert ConnectionRepository(session).fail_refresh(connection_id, 1, "timeout") == 1
            assert ConnectionRepository(session).fail_refresh(connection_id, 0, "stale") is None

        with db.session_scope() as session:
            ConnectionRepository(session).claim_refresh(connection_id, 1, now, stale)
        with db.session_scope() as session:
            assert ConnectionRepository(session).complete_refresh(connection_id, 2)

        with db.session_scope() as session:
            row = session.get(PlatformConnectionRow, connection_id)
            assert row.status == ConnectionStatus.VALID
            assert row.refresh_failures == 0
            assert row.last_error is None

    def test_require_reconnect(self, db, make_connection):
        """Test reconnect clears the active flag."""
        connection_id = make_connection()

        with db.session_scope() as session:
            assert ConnectionRepository(session).require_reconnect(connection_id, "revoked", utc_now())
            assert not ConnectionRepository(session).require_reconnect("missing", "x", utc_now())

        with db.session_scope() as session:
            row = session.get(PlatformConnectionRow, connection_id)
            assert row.status == ConnectionStatus.NEEDS_RECONNECT
            assert row.is_active is False
            assert row.reconnect_reason == "revoked"

    def test_set_health(self, db, make_connection):
        """Test health transitions."""
        connection_id = make_connection()
        polled = utc_now()

        with db.session_scope() as session:
            ConnectionRepository(session).set_health(connection_id, ConnectionHealth.DEGRADED, "503")
        with db.session_scope() as session:
            row = session.get(PlatformConnectionRow, connection_id)
            assert row.health == ConnectionHealth.DEGRADED
            assert row.last_error == "503"

        with db.session_scope() as session:
            ConnectionRepository(session).set_health(
                connection_id, ConnectionHealth.HEALTHY, polled_at=polled
            )
        with db.session_scope() as session:
            row = session.get(PlatformConnectionRow, connection_id)
            assert row.health == ConnectionHealth.HEALTHY
            assert row.last_error is None
            assert abs(as_utc(row.last_polled_at) - polled) < timedelta(seconds=1)

    def test_list_for_user(self, db, user_id, make_connection):
        """Test inactive connections are hidden by default."""
        make_connection(is_active=False)
        active = make_connection()

        with db.session_scope() as session:
            repo = ConnectionRepository(session)
            assert [row.id for row in repo.list_for_user(user_id)] == [active]
            assert len(repo.list_for_user(user_id, include_inactive=True)) == 2
            assert repo.active_for(user_id, "mastodon").id == active
            assert len(repo.list_active()) == 1


class TestContentRepositories:
    """Tests for feed and inbox queries."""

    def test_feed_newest_first(self, db, user_id):
        """Test feed ordering and platform filter."""
        base = datetime(2024, 1, 1, tzinfo=UTC)
        with db.session_scope() as session:
            session.add(_post(user_id, "old", base))
            session.add(_post(user_id, "new", base + timedelta(days=1)))
            session.add(_post(user_id, "bsky", base + timedelta(days=2), platform="bluesky"))

        with db.session_scope() as session:
            repo = PostRepository(session)
            assert [p.platform_post_id for p in repo.feed(user_id)] == ["bsky", "new", "old"]
            assert [p.platform_post_id for p in repo.feed(user_id, platform="mastodon")] == [
                "new",
                "old",
            ]
            assert [p.platform_post_id for p in repo.feed(user_id, limit=1, offset=1)] == ["new"]
            assert repo.get_by_native(user_id, "bluesky", "bsky") is not None
            assert repo.get_by_native(user_id, "mastodon", "bsky") is None

    def test_batch_after(self, db, user_id):
        """Test keyset batching covers every post once."""
        with db.session_scope() as session:
            for i in range(5):
                session.add(_post(user_id, str(i), utc_now()))

        batches = []
        last_id = None
        while True:
            with db.session_scope() as session:
                batch = PostRepository(session).batch_after(last_id, 2)
            if not batch:
                break
            batches.append(batch)
            last_id = batch[-1].id

        assert [len(b) for b in batches] == [2, 2, 1]
        assert len({p.id for b in batches for p in b}) == 5

    def test_inbox_and_mark_read(self, db, user_id):
        """Test unread filtering and marking."""
        with db.session_scope() as session:
            first = _notification(user_id, "n1")
            second = _notification(user_id, "n2")
            session.add(first)
            session.add(second)
            first_id = first.id

        with db.session_scope() as session:
            repo = NotificationRepository(session)
            assert repo.unread_count(user_id) == 2
            assert repo.mark_read(user_id, [first_id]) == 1

        with db.session_scope() as session:
            repo = NotificationRepository(session)
            assert [n.platform_notification_id for n in repo.inbox(user_id, unread_only=True)] == [
                "n2"
            ]
            assert repo.mark_read(user_id) == 1
            assert repo.unread_count(user_id) == 0
            assert repo.get_by_native(user_id, "n1").is_read is True
