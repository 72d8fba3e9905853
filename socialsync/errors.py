"""Error taxonomy for the synchronization pipeline.

Adapters classify every failure into one of these types; the schedulers decide
what to do with it:

- TransientNetworkError: timeouts, HTTP 429 and 5xx. Retried with exponential
  backoff up to a bounded number of attempts, then the connection is marked
  degraded.
- AuthExpiredError: the platform rejected the access token. Triggers an
  immediate token refresh instead of a generic retry.
- PermanentCapabilityError: the platform does not support the operation.
  Never retried, logged once.
- PayloadValidationError: one adapter item has an unexpected shape. The item
  is skipped and recorded; the rest of the batch proceeds.
- ExhaustedRefreshError: refresh failed too many times. The connection needs
  the user to re-authenticate.
"""

from typing import Any


class SyncError(Exception):
    """Base class for all pipeline errors."""


class TransientNetworkError(SyncError):
    """Retryable network/HTTP layer failure (timeout, 429, 5xx).

    Attributes:
        retry_after: Seconds the platform asked us to wait, when known
        outcome_unknown: The request may have reached the platform and taken
            effect (timeout or dropped connection after sending); repeating a
            non-idempotent call could apply it twice
    """

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        outcome_unknown: bool = False,
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.outcome_unknown = outcome_unknown


class AuthExpiredError(SyncError):
    """The platform rejected the credentials as expired or invalid."""


class PermanentCapabilityError(SyncError):
    """The platform adapter does not support the requested operation."""

    def __init__(self, platform: str, capability: str) -> None:
        super().__init__(f"Platform '{platform}' does not support '{capability}'")
        self.platform = platform
        self.capability = capability


class PlatformRequestError(SyncError):
    """Non-retryable refusal from the platform (4xx other than 401/429).

    Attributes:
        status_code: HTTP status code returned by the platform, if any
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PayloadValidationError(SyncError):
    """An adapter item could not be mapped onto the canonical schema.

    Attributes:
        native_id: Platform-native identifier of the item, when extractable
        payload: The offending raw payload
    """

    def __init__(
        self,
        message: str,
        native_id: str | None = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.native_id = native_id
        self.payload = payload


class ExhaustedRefreshError(SyncError):
    """Token refresh failed the configured number of consecutive times."""

    def __init__(self, connection_id: str, attempts: int, reason: str) -> None:
        super().__init__(
            f"Refresh exhausted for connection {connection_id} after {attempts} attempts: {reason}"
        )
        self.connection_id = connection_id
        self.attempts = attempts
        self.reason = reason


class SearchIndexError(SyncError):
    """The search index rejected a request (non-retryable)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PlatformNotSupportedError(SyncError):
    """No adapter is registered for the platform."""

    def __init__(self, platform: str) -> None:
        super().__init__(f"No adapter registered for platform '{platform}'")
        self.platform = platform


class CredentialsNotFoundError(SyncError):
    """The vault holds no usable credentials for the connection."""

    def __init__(self, connection_id: str) -> None:
        super().__init__(f"No credentials for connection {connection_id}")
        self.connection_id = connection_id


class ConnectionNotFoundError(SyncError):
    """The platform connection does not exist."""

    def __init__(self, connection_id: str) -> None:
        super().__init__(f"Connection {connection_id} not found")
        self.connection_id = connection_id


RETRYABLE_ERRORS: tuple[type[Exception], ...] = (TransientNetworkError,)
"""Exception types the retry policy retries."""


__all__ = [
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
    "RETRYABLE_ERRORS",
]
