"""Token vault: encrypted-at-rest OAuth credentials per connection.

Tokens are encrypted with Fernet (``cryptography``). Several keys may be
configured; MultiFernet encrypts with the first and decrypts with any, so a new
key can be rolled in ahead of the old one and :meth:`TokenVault.reencrypt_all`
moves existing ciphertexts onto it.

Writes of the token pair (access + refresh + expiry) happen in one transaction
under a per-connection lock, so a reader never observes a rotated access token
next to a stale refresh token.

Example:
    >>> vault = TokenVault(db)
    >>> vault.store(connection_id, Credentials(access_token=SecretStr("a"), ...))
    >>> creds = vault.get(connection_id)
    >>> creds.access_token
    SecretStr('**********')
"""

import threading
from collections import defaultdict
from datetime import datetime

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from pydantic import SecretStr
from sqlmodel import select

from socialsync.config import settings
from socialsync.database import DatabaseManager
from socialsync.errors import ConnectionNotFoundError, CredentialsNotFoundError
from socialsync.logging import logger
from socialsync.models import Credentials, PlatformConnectionRow
from socialsync.utils import as_utc, utc_now


class TokenVault:
    """Reads and writes the encrypted token columns of platform connections.

    Args:
        db: Store of record
        keys: Fernet keys, newest first (defaults to ``settings.encryption_keys``)
    """

    def __init__(self, db: DatabaseManager, keys: list[str] | None = None) -> None:
        self.db = db
        keys = keys or settings.encryption_keys
        if not keys:
            raise ValueError("TokenVault requires at least one Fernet key")
        self._fernet = MultiFernet([Fernet(k.encode() if isinstance(k, str) else k) for k in keys])
        self._locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _lock_for(self, connection_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[connection_id]

    def encrypt(self, value: str) -> str:
        """Encrypt a token value with the primary key."""
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: str) -> str:
        """Decrypt a token value with any configured key.

        Raises:
            InvalidToken: If no configured key can decrypt the value
        """
        return self._fernet.decrypt(value.encode()).decode()

    # =========================================================================
    # Vault Operations
    # =========================================================================

    def get(self, connection_id: str) -> Credentials:
        """Return decrypted credentials of a connection.

        Raises:
            CredentialsNotFoundError: If the connection does not exist, was
                revoked, or its ciphertext cannot be decrypted
        """
        with self.db.session_scope() as session:
            row = session.get(PlatformConnectionRow, connection_id)
            if row is None or not row.access_token_encrypted:
                raise CredentialsNotFoundError(connection_id)
            access_enc = row.access_token_encrypted
            refresh_enc = row.refresh_token_encrypted
            expires_at = as_utc(row.token_expires_at)

        try:
            access = self.decrypt(access_enc)
            refresh = self.decrypt(refresh_enc) if refresh_enc else None
        except InvalidToken as exc:
            logger.error(f"❌ Cannot decrypt credentials of connection {connection_id}")
            raise CredentialsNotFoundError(connection_id) from exc

        return Credentials(
            access_token=SecretStr(access),
            refresh_token=SecretStr(refresh) if refresh else None,
            expires_at=expires_at,
        )

    def store(self, connection_id: str, credentials: Credentials) -> None:
        """Write a full credential set (used when a connection is created).

        Unlike :meth:`rotate`, a missing refresh token clears the stored one.
        """
        self._write(connection_id, credentials, credentials.expires_at, keep_refresh=False)
        logger.debug(f"🔐 Stored credentials for connection {connection_id}")

    def rotate(
        self,
        connection_id: str,
        credentials: Credentials,
        expires_at: datetime | None,
    ) -> None:
        """Replace the access token and expiry after a refresh.

        A None ``credentials.refresh_token`` keeps the current refresh token;
        platforms that rotate refresh tokens pass the new one.

        Raises:
            ConnectionNotFoundError: If the connection does not exist
        """
        self._write(connection_id, credentials, expires_at, keep_refresh=True)
        logger.debug(f"🔐 Rotated credentials for connection {connection_id}")

    def revoke(self, connection_id: str) -> None:
        """Null both token columns of a connection."""
        with self._lock_for(connection_id):
            with self.db.session_scope() as session:
                row = session.get(PlatformConnectionRow, connection_id)
                if row is None:
                    raise ConnectionNotFoundError(connection_id)
                row.access_token_encrypted = None
                row.refresh_token_encrypted = None
                row.token_expires_at = None
        logger.info(f"🔐 Revoked credentials for connection {connection_id}")

    def reencrypt_all(self) -> int:
        """Re-encrypt every stored token with the primary key.

        Returns:
            Number of connections rewritten
        """
        rewritten = 0
        with self.db.session_scope() as session:
            rows = session.exec(
                select(PlatformConnectionRow).where(
                    PlatformConnectionRow.access_token_encrypted.is_not(None)  # type: ignore[union-attr]
                )
            ).all()
            for row in rows:
                with self._lock_for(row.id):
                    row.access_token_encrypted = self._fernet.rotate(
                        row.access_token_encrypted.encode()
                    ).decode()
                    if row.refresh_token_encrypted:
                        row.refresh_token_encrypted = self._fernet.rotate(
                            row.refresh_token_encrypted.encode()
                        ).decode()
                rewritten += 1
        logger.info(f"✅ Re-encrypted tokens of {rewritten} connections")
        return rewritten

    def _write(
        self,
        connection_id: str,
        credentials: Credentials,
        expires_at: datetime | None,
        keep_refresh: bool,
    ) -> None:
        access_enc = self.encrypt(credentials.access_token.get_secret_value())
        refresh_enc = (
            self.encrypt(credentials.refresh_token.get_secret_value())
            if credentials.refresh_token is not None
            else None
        )

        with self._lock_for(connection_id):
            with self.db.session_scope() as session:
                row = session.get(PlatformConnectionRow, connection_id)
                if row is None:
                    raise ConnectionNotFoundError(connection_id)
                row.access_token_encrypted = access_enc
                if refresh_enc is not None or not keep_refresh:
                    row.refresh_token_encrypted = refresh_enc
                row.token_expires_at = expires_at
                if keep_refresh:
                    row.last_refreshed_at = utc_now()


__all__ = ["TokenVault"]
