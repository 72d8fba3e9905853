"""SocialSync - platform synchronization pipeline for social accounts.

This package keeps OAuth credentials of connected social accounts valid,
polls the platforms for posts and notifications, stores them in a canonical
store of record, and propagates them to a search index and to live clients.

Example:
    >>> from socialsync import AdapterRegistry, SyncPipeline
    >>> import asyncio
    >>>
    >>> async def main():
    ...     registry = AdapterRegistry()
    ...     registry.register("mastodon", MastodonAdapter())
    ...     async with SyncPipeline(registry) as pipeline:
    ...         await asyncio.sleep(3600)
    >>>
    >>> asyncio.run(main())
"""

from socialsync.adapters import HttpPlatformAdapter, PlatformRateLimiter
from socialsync.config import settings
from socialsync.database import DatabaseManager
from socialsync.delivery import InMemoryDeliveryHub, LiveDeliveryChannel
from socialsync.errors import (
    AuthExpiredError,
    ConnectionNotFoundError,
    CredentialsNotFoundError,
    ExhaustedRefreshError,
    PayloadValidationError,
    PermanentCapabilityError,
    PlatformNotSupportedError,
    PlatformRequestError,
    SearchIndexError,
    SyncError,
    TransientNetworkError,
)
from socialsync.ingest import IngestResult, UpsertEngine
from socialsync.interfaces import Capability
from socialsync.models import (
    CanonicalNotification,
    CanonicalPost,
    Credentials,
    FetchPage,
    NotificationRow,
    PlatformConnectionRow,
    PostRow,
    RefreshedToken,
)
from socialsync.pipeline import SyncPipeline
from socialsync.registry import AdapterRegistry
from socialsync.search import InMemorySearchIndex, MeilisearchIndex
from socialsync.vault import TokenVault

__version__ = "0.1.0"

__all__ = [
    # Main components
    "SyncPipeline",
    "AdapterRegistry",
    "TokenVault",
    "DatabaseManager",
    "UpsertEngine",
    "IngestResult",
    "Capability",
    # Adapters and sinks
    "HttpPlatformAdapter",
    "PlatformRateLimiter",
    "MeilisearchIndex",
    "InMemorySearchIndex",
    "LiveDeliveryChannel",
    "InMemoryDeliveryHub",
    # Configuration
    "settings",
    # Pydantic models
    "Credentials",
    "RefreshedToken",
    "FetchPage",
    "CanonicalPost",
    "CanonicalNotification",
    # SQLModel tables
    "PlatformConnectionRow",
    "PostRow",
    "NotificationRow",
    # Errors
    "SyncError",
    "TransientNetworkError",
    "AuthExpiredError",
    "PermanentCapabilityError",
    "PlatformRequestError",
    "PayloadValidationError",
    "ExhaustedRefreshError",
    "SearchIndexError",
    "PlatformNotSupportedError",
    "CredentialsNotFoundError",
    "ConnectionNotFoundError",
]
