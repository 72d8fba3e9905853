"""Protocol interfaces for platform adapters and pipeline collaborators.

Using @runtime_checkable Protocols lets an adapter implement any subset of the
capability set without inheriting from a base class; the registry discovers
what an adapter can do with ``isinstance`` checks.

Capabilities:
    - FeedCapable: ``fetch_feed(credentials, cursor) -> FetchPage``
    - NotificationCapable: ``fetch_notifications(credentials, cursor) -> FetchPage``
    - PublishCapable: ``publish(credentials, content) -> remote_id``
    - RefreshCapable: ``refresh(refresh_token) -> RefreshedToken``

An adapter may additionally expose ``post_field_map`` and/or
``notification_field_map`` attributes (canonical field -> dotted payload path)
to override the normalizer's defaults for its platform.

Example:
    >>> from socialsync.interfaces import FeedCapable
    >>> class MastodonAdapter:
    ...     async def fetch_feed(self, credentials, cursor):
    ...         return FetchPage(items=[], next_cursor=None)
    >>> isinstance(MastodonAdapter(), FeedCapable)  # True, structural typing!
"""

from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from pydantic import SecretStr

from socialsync.models import Credentials, FetchPage, RefreshedToken


class Capability(StrEnum):
    """Operations an adapter may support."""

    FETCH_FEED = "fetch_feed"
    FETCH_NOTIFICATIONS = "fetch_notifications"
    PUBLISH = "publish"
    REFRESH = "refresh"


# =============================================================================
# Adapter Capabilities
# =============================================================================


@runtime_checkable
class FeedCapable(Protocol):
    """Adapter that can page through the user's content feed."""

    async def fetch_feed(self, credentials: Credentials, cursor: str | None) -> FetchPage:
        """Fetch one page of feed items after ``cursor``.

        Raises:
            TransientNetworkError: For retryable failures (timeout, 429, 5xx)
            AuthExpiredError: When the platform rejects the access token
        """
        ...


@runtime_checkable
class NotificationCapable(Protocol):
    """Adapter that can page through the user's notifications."""

    async def fetch_notifications(
        self, credentials: Credentials, cursor: str | None
    ) -> FetchPage:
        """Fetch one page of notification items after ``cursor``."""
        ...


@runtime_checkable
class PublishCapable(Protocol):
    """Adapter that can publish content on behalf of the user."""

    async def publish(self, credentials: Credentials, content: dict[str, Any]) -> str:
        """Publish ``content`` and return the platform-native id of the new item."""
        ...


@runtime_checkable
class RefreshCapable(Protocol):
    """Adapter that can exchange a refresh token for a new access token."""

    async def refresh(self, refresh_token: SecretStr) -> RefreshedToken:
        """Refresh the access token.

        Raises:
            TransientNetworkError: The platform could not be reached; retry later
            PlatformRequestError: The platform refused the refresh token
        """
        ...


CAPABILITY_PROTOCOLS: dict[Capability, type] = {
    Capability.FETCH_FEED: FeedCapable,
    Capability.FETCH_NOTIFICATIONS: NotificationCapable,
    Capability.PUBLISH: PublishCapable,
    Capability.REFRESH: RefreshCapable,
}


# =============================================================================
# Derived Stores and Transports
# =============================================================================


@runtime_checkable
class SearchIndex(Protocol):
    """Derived, eventually-consistent full-text index.

    Documents are keyed by the store-of-record id under the ``id`` field, so
    upserting the same document twice is idempotent.
    """

    async def upsert_documents(self, index: str, documents: list[dict[str, Any]]) -> None:
        """Add or replace documents by id."""
        ...

    async def delete_documents(self, index: str, document_ids: list[str]) -> None:
        """Delete documents by id; unknown ids are ignored."""
        ...

    async def delete_index(self, index: str) -> None:
        """Drop every document of an index."""
        ...

    async def search(
        self,
        index: str,
        query: str,
        filters: dict[str, Any] | None = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        """Search an index, optionally restricted by exact-match filters."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...


@runtime_checkable
class DeliveryTransport(Protocol):
    """Client push transport addressed by user id.

    The transport owns the user -> session membership; the pipeline never
    tracks sessions.
    """

    async def deliver(self, user_id: str, payload: dict[str, Any]) -> int:
        """Push ``payload`` to every session of the user.

        Returns:
            Number of sessions the payload was handed to
        """
        ...


__all__ = [
    "Capability",
    "FeedCapable",
    "NotificationCapable",
    "PublishCapable",
    "RefreshCapable",
    "CAPABILITY_PROTOCOLS",
    "SearchIndex",
    "DeliveryTransport",
]
