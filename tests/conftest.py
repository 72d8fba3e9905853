"""Pytest configuration and shared fixtures for SocialSync tests."""

import asyncio
import os
import sys
import tempfile
from collections.abc import Callable, Generator
from datetime import timedelta
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet

# Settings are read at import time; configure the environment first
os.environ["ENVIRONMENT"] = "testing"
os.environ["TOKEN_ENCRYPTION_KEYS"] = Fernet.generate_key().decode()
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="socialsync-tests-"))

import pytest  # noqa: E402
from loguru import logger  # noqa: E402
from pydantic import SecretStr  # noqa: E402

from socialsync.database import DatabaseManager  # noqa: E402
from socialsync.delivery import InMemoryDeliveryHub  # noqa: E402
from socialsync.errors import PlatformRequestError  # noqa: E402
from socialsync.models import (  # noqa: E402
    Credentials,
    FetchPage,
    PlatformConnectionRow,
    RefreshedToken,
)
from socialsync.pipeline import SyncPipeline  # noqa: E402
from socialsync.registry import AdapterRegistry  # noqa: E402
from socialsync.search import InMemorySearchIndex  # noqa: E402
from socialsync.utils import utc_now  # noqa: E402
from socialsync.vault import TokenVault  # noqa: E402

# =============================================================================
# Test Configuration
# =============================================================================


@pytest.fixture(scope="function", autouse=True)
def reset_loguru():
    """Reset loguru handlers before each test to prevent I/O errors."""
    logger.remove()
    logger.add(
        sys.stderr,
        level="ERROR",
        format="{time} {level} {message}",
        catch=True,
    )
    yield
    logger.remove()


# =============================================================================
# Fake Adapters
# =============================================================================


class FakeAdapter:
    """Scriptable adapter implementing every capability.

    Pages are looked up by the cursor they are requested with; errors queued
    in ``*_errors`` are raised (in order) before any page is returned.
    """

    def __init__(self) -> None:
        self.feed_pages: dict[str | None, FetchPage] = {}
        self.notification_pages: dict[str | None, FetchPage] = {}
        self.feed_errors: list[Exception] = []
        self.notification_errors: list[Exception] = []
        self.refresh_results: list[RefreshedToken | Exception] = []
        self.publish_errors: list[Exception] = []
        self.feed_calls: list[str | None] = []
        self.notification_calls: list[str | None] = []
        self.refresh_tokens_seen: list[str] = []
        self.access_tokens_seen: list[str] = []
        self.published: list[dict[str, Any]] = []
        self.delay = 0.0

    async def fetch_feed(self, credentials: Credentials, cursor: str | None) -> FetchPage:
        self.feed_calls.append(cursor)
        self.access_tokens_seen.append(credentials.access_token.get_secret_value())
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.feed_errors:
            raise self.feed_errors.pop(0)
        return self.feed_pages.get(cursor, FetchPage())

    async def fetch_notifications(self, credentials: Credentials, cursor: str | None) -> FetchPage:
        self.notification_calls.append(cursor)
        if self.notification_errors:
            raise self.notification_errors.pop(0)
        return self.notification_pages.get(cursor, FetchPage())

    async def refresh(self, refresh_token: SecretStr) -> RefreshedToken:
        self.refresh_tokens_seen.append(refresh_token.get_secret_value())
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.refresh_results:
            result = self.refresh_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return RefreshedToken(
            access_token=SecretStr(f"access-{len(self.refresh_tokens_seen)}"),
            expires_at=utc_now() + timedelta(hours=1),
        )

    async def publish(self, credentials: Credentials, content: dict[str, Any]) -> str:
        self.access_tokens_seen.append(credentials.access_token.get_secret_value())
        if self.publish_errors:
            raise self.publish_errors.pop(0)
        self.published.append(content)
        return f"remote-{len(self.published)}"

    @property
    def refresh_calls(self) -> int:
        return len(self.refresh_tokens_seen)


class FeedOnlyAdapter:
    """Adapter that can only fetch the feed."""

    def __init__(self, pages: dict[str | None, FetchPage] | None = None) -> None:
        self.pages = pages or {}

    async def fetch_feed(self, credentials: Credentials, cursor: str | None) -> FetchPage:
        return self.pages.get(cursor, FetchPage())


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def feed_only_adapter() -> FeedOnlyAdapter:
    return FeedOnlyAdapter()


@pytest.fixture
def refusing_refresh() -> PlatformRequestError:
    """Error an adapter raises when the platform rejects a refresh token."""
    return PlatformRequestError("invalid_grant", status_code=400)


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    """Path of a fresh SQLite file per test."""
    return tmp_path / "socialsync-test.db"


@pytest.fixture
def db(temp_db_path: Path) -> Generator[DatabaseManager, None, None]:
    """Initialized database manager on a temporary SQLite file."""
    manager = DatabaseManager(f"sqlite:///{temp_db_path}")
    manager.initialize()
    yield manager
    manager.close()


@pytest.fixture
def user_id(db: DatabaseManager) -> str:
    return db.create_user().id


@pytest.fixture
def vault(db: DatabaseManager) -> TokenVault:
    return TokenVault(db)


@pytest.fixture
def registry(fake_adapter: FakeAdapter) -> AdapterRegistry:
    """Registry with the fake adapter registered for mastodon."""
    reg = AdapterRegistry(timeout_seconds=5)
    reg.register("mastodon", fake_adapter)
    return reg


@pytest.fixture
def make_connection(
    db: DatabaseManager, vault: TokenVault, user_id: str
) -> Callable[..., str]:
    """Factory inserting an active connection with stored credentials."""

    def _make(
        platform: str = "mastodon",
        expires_in: timedelta | None = timedelta(hours=1),
        refresh_token: str | None = "refresh-0",
        owner: str | None = None,
        **fields: Any,
    ) -> str:
        expires_at = utc_now() + expires_in if expires_in is not None else None
        with db.session_scope() as session:
            row = PlatformConnectionRow(
                user_id=owner or user_id,
                platform=platform,
                platform_account_id=f"{platform}-account",
                platform_handle=f"@ann@{platform}",
                token_expires_at=expires_at,
                **fields,
            )
            session.add(row)
            connection_id = row.id
        vault.store(
            connection_id,
            Credentials(
                access_token=SecretStr("access-0"),
                refresh_token=SecretStr(refresh_token) if refresh_token else None,
                expires_at=expires_at,
            ),
        )
        return connection_id

    return _make


@pytest.fixture
def search_index() -> InMemorySearchIndex:
    return InMemorySearchIndex()


@pytest.fixture
def hub() -> InMemoryDeliveryHub:
    return InMemoryDeliveryHub()


@pytest.fixture
def pipeline(
    db: DatabaseManager,
    registry: AdapterRegistry,
    search_index: InMemorySearchIndex,
    hub: InMemoryDeliveryHub,
) -> SyncPipeline:
    """Pipeline over the test store, fake adapter and in-memory sinks (not started)."""
    return SyncPipeline(registry=registry, db=db, search_index=search_index, transport=hub)


# =============================================================================
# Mock Payload Fixtures
# =============================================================================


@pytest.fixture
def post_factory() -> Callable[..., dict[str, Any]]:
    """Factory of raw post payloads in a Mastodon-like shape."""

    def _make(native_id: str, **overrides: Any) -> dict[str, Any]:
        payload = {
            "id": native_id,
            "content": f"Post {native_id}",
            "account": {"display_name": "Ann Example", "acct": "ann", "avatar": None},
            "favourites_count": 3,
            "reblogs_count": 1,
            "replies_count": 0,
            "media_attachments": [{"url": f"https://cdn.example/{native_id}.jpg"}],
            "created_at": "2024-01-15T10:30:00Z",
        }
        payload.update(overrides)
        return payload

    return _make


@pytest.fixture
def notification_factory() -> Callable[..., dict[str, Any]]:
    """Factory of raw notification payloads."""

    def _make(native_id: str, **overrides: Any) -> dict[str, Any]:
        payload = {
            "id": native_id,
            "type": "mention",
            "title": f"Ann mentioned you ({native_id})",
            "body": "Hello there",
            "account": {"display_name": "Ann Example", "acct": "ann"},
            "created_at": "2024-01-15T10:30:00Z",
        }
        payload.update(overrides)
        return payload

    return _make
