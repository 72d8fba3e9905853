"""Data models for SocialSync.

This module defines both Pydantic models (adapter boundary and canonical
entities) and SQLModel ORM models (store of record).

Models are organized into three sections:
1. Enumerations shared by both layers
2. Pydantic models for credentials, adapter pages and canonical entities
3. SQLModel tables for database persistence
"""

from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

import sqlalchemy as sa
from pydantic import BaseModel, ConfigDict, SecretStr, field_validator
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from socialsync.utils import new_id, parse_datetime, utc_now

# =============================================================================
# Section 1: Enumerations
# =============================================================================


class Platform(StrEnum):
    """Platforms the product ships adapters for. Adapters for other
    identifiers may still be registered at runtime."""

    TWITTER = "twitter"
    INSTAGRAM = "instagram"
    LINKEDIN = "linkedin"
    BLUESKY = "bluesky"
    MASTODON = "mastodon"


class NotificationType(StrEnum):
    """Kinds of platform alerts."""

    MENTION = "mention"
    LIKE = "like"
    COMMENT = "comment"
    FOLLOW = "follow"
    REPOST = "repost"
    DIRECT_MESSAGE = "dm"


class ConnectionStatus(StrEnum):
    """Token lifecycle of a platform connection.

    valid -> refresh_pending -> valid | refresh_failed -> needs_reconnect
    """

    VALID = "valid"
    REFRESH_PENDING = "refresh_pending"
    REFRESH_FAILED = "refresh_failed"
    NEEDS_RECONNECT = "needs_reconnect"


class ConnectionHealth(StrEnum):
    """Polling health; degraded after exhausting transient retries."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"


class ItemKind(StrEnum):
    """Kind of content handled by the upsert engine."""

    POST = "post"
    NOTIFICATION = "notification"


class Stream(StrEnum):
    """Polled stream of one connection, each with its own cursor."""

    FEED = "feed"
    NOTIFICATIONS = "notifications"


# =============================================================================
# Section 2: Pydantic Models
# =============================================================================


class Credentials(BaseModel):
    """Decrypted OAuth credentials of one connection.

    Token values are SecretStr so they render as '**********' in logs and
    reprs; adapters call ``get_secret_value()`` at the point of use.
    """

    model_config = ConfigDict(frozen=True)

    access_token: SecretStr
    refresh_token: Optional[SecretStr] = None
    expires_at: Optional[datetime] = None


class RefreshedToken(BaseModel):
    """Result of an adapter token refresh.

    Attributes:
        access_token: New access token
        expires_at: New expiry (None when the platform issues non-expiring tokens)
        refresh_token: Rotated refresh token; None keeps the current one
    """

    access_token: SecretStr
    expires_at: Optional[datetime] = None
    refresh_token: Optional[SecretStr] = None

    @field_validator("expires_at", mode="before")
    @classmethod
    def _coerce_expires_at(cls, v: Any) -> Optional[datetime]:
        return parse_datetime(v)


class FetchPage(BaseModel):
    """One page returned by an adapter fetch.

    Attributes:
        items: Raw platform payloads, passed verbatim to the normalizer
            (non-mapping entries are recorded there as ingest errors)
        next_cursor: Opaque platform cursor marking the fetched position
    """

    items: list[Any] = PydanticField(default_factory=list)
    next_cursor: Optional[str] = None


class CanonicalPost(BaseModel):
    """Platform-independent shape of one piece of content."""

    model_config = ConfigDict(extra="ignore")

    platform_post_id: str = PydanticField(min_length=1)
    content: str = ""
    media_urls: list[str] = PydanticField(default_factory=list)
    author_name: str
    author_handle: str
    author_avatar: Optional[str] = None
    likes: int = PydanticField(0, ge=0)
    reposts: int = PydanticField(0, ge=0)
    replies: int = PydanticField(0, ge=0)
    published_at: datetime
    raw_data: dict[str, Any] = PydanticField(default_factory=dict)

    @field_validator("platform_post_id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    @field_validator("likes", "reposts", "replies", mode="before")
    @classmethod
    def _coerce_counter(cls, v: Any) -> Any:
        return 0 if v is None else v

    @field_validator("media_urls", mode="before")
    @classmethod
    def _coerce_media(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, list):
            return [m.get("url") if isinstance(m, dict) else m for m in v]
        return v

    @field_validator("published_at", mode="before")
    @classmethod
    def _coerce_published_at(cls, v: Any) -> Optional[datetime]:
        return parse_datetime(v)


class CanonicalNotification(BaseModel):
    """Platform-independent shape of one platform alert."""

    model_config = ConfigDict(extra="ignore")

    platform_notification_id: str = PydanticField(min_length=1)
    type: NotificationType
    title: str
    body: str = ""
    author_name: Optional[str] = None
    author_handle: Optional[str] = None
    author_avatar: Optional[str] = None
    published_at: Optional[datetime] = None
    raw_data: dict[str, Any] = PydanticField(default_factory=dict)

    @field_validator("platform_notification_id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, v: Any) -> Any:
        if isinstance(v, str) and v.lower() in {"direct_message", "direct-message", "message"}:
            return NotificationType.DIRECT_MESSAGE
        return v.lower() if isinstance(v, str) else v

    @field_validator("published_at", mode="before")
    @classmethod
    def _coerce_published_at(cls, v: Any) -> Optional[datetime]:
        return parse_datetime(v)


# =============================================================================
# Section 3: SQLModel Tables for Database Persistence
# =============================================================================


class UserRow(SQLModel, table=True):
    """Owner of connections, posts and notifications.

    User accounts are issued by the outer API layer; the pipeline only needs
    the row so deletes cascade to everything the user owns.
    """

    __tablename__ = "users"  # type: ignore[assignment]

    id: str = Field(default_factory=new_id, primary_key=True)
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


class PlatformConnectionRow(SQLModel, table=True):
    """One user's link to one platform.

    Attributes:
        id: Connection ID (primary key)
        user_id: FK to owning UserRow.id (cascade delete)
        platform: Platform identifier
        platform_account_id: Platform-native account identifier
        platform_handle: Platform-native handle
        access_token_encrypted: Fernet token of the access token
        refresh_token_encrypted: Fernet token of the refresh token, if any
        token_expires_at: Access token expiry (None = never expires)
        is_active: At most one active connection per (user, platform)
        status: ConnectionStatus value
        refresh_epoch: Incremented on every refresh claim (single-flight key)
        refresh_failures: Consecutive failed refresh attempts
        health: ConnectionHealth value
        reconnect_reason: User-visible reason when status is needs_reconnect
    """

    __tablename__ = "platform_connections"  # type: ignore[assignment]
    __table_args__ = (
        sa.Index(
            "uq_platform_connections_active",
            "user_id",
            "platform",
            unique=True,
            sqlite_where=sa.text("is_active = 1"),
            postgresql_where=sa.text("is_active"),
        ),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="users.id", ondelete="CASCADE", index=True)
    platform: str = Field(index=True)
    platform_account_id: str
    platform_handle: str
    access_token_encrypted: Optional[str] = None
    refresh_token_encrypted: Optional[str] = None
    token_expires_at: Optional[datetime] = Field(
        default=None, sa_type=DateTime(timezone=True), index=True
    )
    is_active: bool = Field(default=True, index=True)
    connected_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    disconnected_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    status: str = Field(default=ConnectionStatus.VALID, index=True)
    refresh_epoch: int = 0
    refresh_failures: int = 0
    refresh_started_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    last_refreshed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    health: str = Field(default=ConnectionHealth.HEALTHY)
    last_error: Optional[str] = None
    last_polled_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    reconnect_reason: Optional[str] = None
    reconnect_required_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))


class PostRow(SQLModel, table=True):
    """Canonical representation of one piece of platform content.

    Unique on (user_id, platform, platform_post_id): re-fetching the same
    remote post updates the row in place.
    """

    __tablename__ = "posts"  # type: ignore[assignment]
    __table_args__ = (
        sa.UniqueConstraint(
            "user_id", "platform", "platform_post_id", name="uq_posts_user_platform_native"
        ),
        sa.Index("ix_posts_user_published", "user_id", "published_at"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="users.id", ondelete="CASCADE")
    platform: str
    platform_post_id: str
    content: str = ""
    media_urls: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    author_name: str
    author_handle: str
    author_avatar: Optional[str] = None
    likes: int = 0
    reposts: int = 0
    replies: int = 0
    published_at: datetime = Field(sa_type=DateTime(timezone=True))
    raw_data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


class NotificationRow(SQLModel, table=True):
    """Canonical representation of one platform alert.

    Unique on (user_id, platform_notification_id). ``is_read`` belongs to the
    user and is never touched by re-polling.
    """

    __tablename__ = "notifications"  # type: ignore[assignment]
    __table_args__ = (
        sa.UniqueConstraint(
            "user_id", "platform_notification_id", name="uq_notifications_user_native"
        ),
        sa.Index("ix_notifications_user_read_created", "user_id", "is_read", "created_at"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="users.id", ondelete="CASCADE")
    platform: str
    platform_notification_id: str
    type: str
    title: str
    body: str = ""
    author_name: Optional[str] = None
    author_handle: Optional[str] = None
    author_avatar: Optional[str] = None
    is_read: bool = False
    published_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    raw_data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


class SyncCursorRow(SQLModel, table=True):
    """Polling checkpoint per (connection, stream).

    Attributes:
        connection_id: FK to PlatformConnectionRow.id
        stream: Stream value ("feed" or "notifications")
        cursor: Opaque platform pagination token
        updated_at: When the cursor last advanced
    """

    __tablename__ = "sync_cursors"  # type: ignore[assignment]

    connection_id: str = Field(
        foreign_key="platform_connections.id", ondelete="CASCADE", primary_key=True
    )
    stream: str = Field(primary_key=True)
    cursor: Optional[str] = None
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


class IngestErrorRow(SQLModel, table=True):
    """One adapter item that was skipped during ingestion."""

    __tablename__ = "ingest_errors"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(foreign_key="users.id", ondelete="CASCADE", index=True)
    platform: str
    kind: str
    native_id: Optional[str] = None
    error_type: str
    message: str
    payload: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


__all__ = [
    "Platform",
    "NotificationType",
    "ConnectionStatus",
    "ConnectionHealth",
    "ItemKind",
    "Stream",
    "Credentials",
    "RefreshedToken",
    "FetchPage",
    "CanonicalPost",
    "CanonicalNotification",
    "SQLModel",
    "UserRow",
    "PlatformConnectionRow",
    "PostRow",
    "NotificationRow",
    "SyncCursorRow",
    "IngestErrorRow",
]
