"""Tests for search projection and live delivery fan-out."""

from contextlib import contextmanager

import pytest
from sqlmodel import select

from socialsync.delivery import LiveDeliveryChannel
from socialsync.ingest import UpsertEngine
from socialsync.models import ItemKind, PostRow
from socialsync.propagation import (
    CommitFanout,
    EntityRef,
    PropagationQueue,
    SearchPropagator,
    post_document,
)
from socialsync.search import POSTS_INDEX, PROFILES_INDEX, InMemorySearchIndex


@pytest.fixture
def queue():
    return PropagationQueue(workers=1)


@pytest.fixture
def propagator(db, search_index, queue):
    return SearchPropagator(db, search_index, queue)


@pytest.fixture
def engine(db, queue, propagator, hub):
    """Upsert engine wired to search and delivery like the pipeline."""
    upsert = UpsertEngine(db)
    upsert.add_commit_listener(CommitFanout(queue, propagator, LiveDeliveryChannel(hub)))
    return upsert


class TestPropagationQueue:
    """Tests for PropagationQueue."""

    @pytest.mark.asyncio
    async def test_tasks_processed(self, queue):
        """Test queued factories run on workers."""
        done = []

        async def task():
            done.append(1)

        queue.submit("search", task)
        queue.submit("search", task)
        await queue.start()
        await queue.join()
        await queue.stop(grace=1)

        assert done == [1, 1]
        assert queue.stats["processed"] == 2

    @pytest.mark.asyncio
    async def test_failures_isolated(self, queue):
        """Test a failing task does not kill its worker."""
        done = []

        async def broken():
            raise RuntimeError("index down")

        async def fine():
            done.append(1)

        await queue.start()
        queue.submit("search", broken)
        queue.submit("search", fine)
        await queue.join()
        await queue.stop(grace=1)

        assert queue.stats == {"processed": 1, "failed": 1, "dropped": 0}
        assert done == [1]

    @pytest.mark.asyncio
    async def test_submit_after_stop(self, queue):
        """Test a stopped queue drops new tasks."""
        await queue.start()
        await queue.stop(grace=1)

        async def task():
            return None

        assert queue.submit("delivery", task) is False
        assert queue.stats["dropped"] == 1
        assert not queue.started


class TestSearchProjection:
    """Tests for SearchPropagator."""

    @pytest.mark.asyncio
    async def test_committed_posts_are_indexed(
        self, engine, queue, search_index, user_id, post_factory
    ):
        """Test post commits reach the index after the write."""
        result = engine.ingest(
            "mastodon", user_id, [post_factory("1"), post_factory("2")], ItemKind.POST
        )
        await queue.start()
        await queue.join()
        await queue.stop(grace=1)

        docs = search_index.documents(POSTS_INDEX)
        assert set(docs) == set(result.entity_ids)
        doc = docs[result.entity_ids[0]]
        assert doc["user_id"] == user_id
        assert doc["platform"] == "mastodon"
        assert doc["content"] == "Post 1"
        assert isinstance(doc["published_at"], int)

    @pytest.mark.asyncio
    async def test_failed_write_never_indexed(self, engine, queue, search_index, post_factory):
        """Test nothing is projected for a write that did not commit."""
        result = engine.ingest("mastodon", "unknown-user", [post_factory("1")], ItemKind.POST)
        await queue.start()
        await queue.join()
        await queue.stop(grace=1)

        assert result.failed == 1
        assert search_index.documents(POSTS_INDEX) == {}
        assert queue.stats["processed"] == 0

    @pytest.mark.asyncio
    async def test_project_deletes_missing_entities(self, db, propagator, search_index, user_id):
        """Test entities gone from the store are removed from the index."""
        await search_index.upsert_documents(POSTS_INDEX, [{"id": "gone", "user_id": user_id}])

        await propagator.project([EntityRef(POSTS_INDEX, "gone")])

        assert search_index.documents(POSTS_INDEX) == {}

    @pytest.mark.asyncio
    async def test_profiles_follow_active_flag(self, propagator, search_index, make_connection):
        """Test only active connections project to profile documents."""
        active = make_connection()
        inactive = make_connection(platform="bluesky", is_active=False)

        await propagator.project(
            [EntityRef(PROFILES_INDEX, active), EntityRef(PROFILES_INDEX, inactive)]
        )

        docs = search_index.documents(PROFILES_INDEX)
        assert list(docs) == [active]
        assert docs[active]["platform_handle"] == "@ann@mastodon"

    @pytest.mark.asyncio
    async def test_reindex_after_outage(
        self, db, engine, queue, propagator, search_index, user_id, post_factory, make_connection
    ):
        """Test a full reindex restores an exact projection after the index was down."""
        make_connection()
        await search_index.upsert_documents(POSTS_INDEX, [{"id": "stale"}])
        search_index.available = False

        engine.ingest(
            "mastodon", user_id, [post_factory(str(i)) for i in range(3)], ItemKind.POST
        )
        await queue.start()
        await queue.join()
        await queue.stop(grace=1)

        assert queue.stats["failed"] == 3
        search_index.available = True
        assert set(search_index.documents(POSTS_INDEX)) == {"stale"}

        stats = await propagator.full_reindex(batch_size=2)

        with db.session_scope() as session:
            rows = session.exec(select(PostRow)).all()
            expected = {row.id: post_document(row) for row in rows}

        assert stats == {POSTS_INDEX: 3, PROFILES_INDEX: 1}
        assert search_index.documents(POSTS_INDEX) == expected
        assert len(search_index.documents(PROFILES_INDEX)) == 1

    @pytest.mark.asyncio
    async def test_reindex_holds_no_session_during_index_calls(
        self, db, monkeypatch, user_id, post_factory, make_connection
    ):
        """Test every index write happens after the reading session is closed."""
        make_connection()
        UpsertEngine(db).ingest(
            "mastodon", user_id, [post_factory(str(i)) for i in range(5)], ItemKind.POST
        )

        open_sessions = 0
        scope = db.session_scope

        @contextmanager
        def tracked_scope():
            nonlocal open_sessions
            open_sessions += 1
            try:
                with scope() as session:
                    yield session
            finally:
                open_sessions -= 1

        class RecordingIndex(InMemorySearchIndex):
            def __init__(self) -> None:
                super().__init__()
                self.open_at_write: list[int] = []

            async def upsert_documents(self, index, documents):
                self.open_at_write.append(open_sessions)
                await super().upsert_documents(index, documents)

        monkeypatch.setattr(db, "session_scope", tracked_scope)
        index = RecordingIndex()

        stats = await SearchPropagator(db, index).full_reindex(batch_size=2)

        assert stats == {POSTS_INDEX: 5, PROFILES_INDEX: 1}
        assert index.open_at_write == [0, 0, 0, 0]

    def test_project_after_commit_without_queue(self, db, search_index):
        """Test projections without a queue are deferred, not raised."""
        propagator = SearchPropagator(db, search_index)

        propagator.project_after_commit([EntityRef(POSTS_INDEX, "p1")])

        assert search_index.documents(POSTS_INDEX) == {}


class TestDeliveryFanout:
    """Tests for live delivery of new notifications."""

    @pytest.mark.asyncio
    async def test_new_notification_delivered_once(
        self, engine, queue, hub, user_id, notification_factory
    ):
        """Test created notifications are pushed once; updates are not re-pushed."""
        session = hub.connect(user_id)

        engine.ingest("mastodon", user_id, [notification_factory("n1")], ItemKind.NOTIFICATION)
        engine.ingest(
            "mastodon",
            user_id,
            [notification_factory("n1", title="edited")],
            ItemKind.NOTIFICATION,
        )
        await queue.start()
        await queue.join()
        await queue.stop(grace=1)

        assert session.pending() == 1
        message = await session.receive(timeout=1)
        assert message["event"] == "notification"
        assert message["data"]["title"] == "Ann mentioned you (n1)"
        assert message["data"]["is_read"] is False

    @pytest.mark.asyncio
    async def test_other_users_not_reached(
        self, db, engine, queue, hub, user_id, notification_factory
    ):
        """Test delivery is addressed by owning user."""
        other = hub.connect(db.create_user().id)
        mine = hub.connect(user_id)

        engine.ingest("mastodon", user_id, [notification_factory("n1")], ItemKind.NOTIFICATION)
        await queue.start()
        await queue.join()
        await queue.stop(grace=1)

        assert mine.pending() == 1
        assert other.pending() == 0

    @pytest.mark.asyncio
    async def test_notifications_not_indexed(
        self, engine, queue, search_index, user_id, notification_factory
    ):
        """Test notifications only go to live delivery."""
        engine.ingest("mastodon", user_id, [notification_factory("n1")], ItemKind.NOTIFICATION)
        await queue.start()
        await queue.join()
        await queue.stop(grace=1)

        assert search_index.indexes == {}

    @pytest.mark.asyncio
    async def test_failed_notification_write_not_delivered(
        self, engine, queue, hub, notification_factory
    ):
        """Test nothing is pushed for a notification that was not stored."""
        session = hub.connect("unknown-user")

        engine.ingest(
            "mastodon", "unknown-user", [notification_factory("n1")], ItemKind.NOTIFICATION
        )
        await queue.start()
        await queue.join()
        await queue.stop(grace=1)

        assert session.pending() == 0
        assert queue.stats["processed"] == 0
