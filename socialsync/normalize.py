"""Mapping of raw adapter payloads onto the canonical schema.

Each canonical field is looked up through a declarative field map: an ordered
tuple of dotted paths into the raw payload, the first non-null value wins. The
default maps cover the common spellings; an adapter may override entries for
its platform by exposing ``post_field_map`` / ``notification_field_map``.

The raw payload is preserved verbatim in ``raw_data``.

Example:
    >>> normalizer = Normalizer()
    >>> post = normalizer.normalize_post(
    ...     "mastodon",
    ...     {"id": 1, "content": "hi", "account": {"display_name": "Ann", "acct": "ann"},
    ...      "created_at": "2024-01-15T10:30:00Z", "favourites_count": 3},
    ... )
    >>> post.platform_post_id, post.likes
    ('1', 3)
"""

from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from socialsync.errors import PayloadValidationError
from socialsync.models import CanonicalNotification, CanonicalPost, ItemKind
from socialsync.registry import AdapterRegistry
from socialsync.utils import normalize_id, safe_get

FieldMap = Mapping[str, tuple[str, ...]]

DEFAULT_POST_FIELD_MAP: FieldMap = {
    "platform_post_id": ("platform_post_id", "id", "uri", "urn"),
    "content": ("content", "text", "caption", "record.text", "commentary"),
    "media_urls": ("media_urls", "media", "media_attachments", "attachments"),
    "author_name": (
        "author_name",
        "author.name",
        "author.display_name",
        "author.displayName",
        "account.display_name",
        "user.name",
    ),
    "author_handle": (
        "author_handle",
        "author.handle",
        "author.username",
        "account.acct",
        "user.screen_name",
        "user.username",
        "username",
    ),
    "author_avatar": (
        "author_avatar",
        "author.avatar",
        "author.avatar_url",
        "account.avatar",
        "user.profile_image_url",
    ),
    "likes": ("likes", "like_count", "likeCount", "favourites_count", "public_metrics.like_count"),
    "reposts": (
        "reposts",
        "repost_count",
        "repostCount",
        "reblogs_count",
        "retweet_count",
        "public_metrics.retweet_count",
    ),
    "replies": (
        "replies",
        "reply_count",
        "replyCount",
        "replies_count",
        "comments_count",
        "public_metrics.reply_count",
    ),
    "published_at": ("published_at", "created_at", "createdAt", "timestamp", "indexedAt"),
}

DEFAULT_NOTIFICATION_FIELD_MAP: FieldMap = {
    "platform_notification_id": ("platform_notification_id", "id", "uri"),
    "type": ("type", "kind", "reason"),
    "title": ("title", "summary", "headline"),
    "body": ("body", "text", "content", "status.content"),
    "author_name": (
        "author_name",
        "author.name",
        "author.display_name",
        "account.display_name",
        "user.name",
    ),
    "author_handle": ("author_handle", "author.handle", "account.acct", "user.username"),
    "author_avatar": ("author_avatar", "author.avatar", "account.avatar"),
    "published_at": ("published_at", "created_at", "createdAt", "indexedAt", "timestamp"),
}


def extract_fields(raw: Mapping[str, Any], field_map: FieldMap) -> dict[str, Any]:
    """Resolve every canonical field of ``field_map`` against ``raw``.

    Fields without a non-null value are omitted so model defaults apply.
    """
    values: dict[str, Any] = {}
    for field, paths in field_map.items():
        for path in paths:
            value = safe_get(raw, path)
            if value is not None:
                values[field] = value
                break
    return values


class Normalizer:
    """Builds canonical models from raw adapter items.

    Args:
        registry: Source of adapter-supplied field map overrides
    """

    def __init__(self, registry: AdapterRegistry | None = None) -> None:
        self.registry = registry

    def field_map(self, platform: str, kind: ItemKind) -> dict[str, tuple[str, ...]]:
        """Effective field map for ``platform``: defaults plus adapter overrides."""
        base = DEFAULT_POST_FIELD_MAP if kind == ItemKind.POST else DEFAULT_NOTIFICATION_FIELD_MAP
        merged = dict(base)
        if self.registry is not None:
            override = self.registry.field_map(platform, kind.value)
            for field, paths in (override or {}).items():
                merged[field] = (paths,) if isinstance(paths, str) else tuple(paths)
        return merged

    def normalize(
        self, platform: str, kind: ItemKind, raw: Any
    ) -> CanonicalPost | CanonicalNotification:
        """Map one raw item onto its canonical model.

        Raises:
            PayloadValidationError: If the item cannot be mapped
        """
        if not isinstance(raw, Mapping):
            raise PayloadValidationError(
                f"Expected a mapping, got {type(raw).__name__}", payload=raw
            )

        model = CanonicalPost if kind == ItemKind.POST else CanonicalNotification
        id_field = "platform_post_id" if kind == ItemKind.POST else "platform_notification_id"

        values = extract_fields(raw, self.field_map(platform, kind))
        native_id = normalize_id(values.get(id_field))
        values["raw_data"] = dict(raw)

        try:
            return model.model_validate(values)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            )
            raise PayloadValidationError(
                f"Invalid {kind.value} payload from {platform}: {problems}",
                native_id=native_id,
                payload=dict(raw),
            ) from exc

    def normalize_post(self, platform: str, raw: Any) -> CanonicalPost:
        return self.normalize(platform, ItemKind.POST, raw)  # type: ignore[return-value]

    def normalize_notification(self, platform: str, raw: Any) -> CanonicalNotification:
        return self.normalize(platform, ItemKind.NOTIFICATION, raw)  # type: ignore[return-value]


__all__ = [
    "DEFAULT_POST_FIELD_MAP",
    "DEFAULT_NOTIFICATION_FIELD_MAP",
    "extract_fields",
    "Normalizer",
]
