"""Token service: store and hand out provider credentials per tenant.

WHAT:
    Encrypts tokens onto connections and resolves a usable bearer token for
    a tenant's Meta connection before a sync run.

WHY:
    - The sync engine only needs "a valid token for tenant X, or nothing".
    - Keeps decryption and expiry checks out of the orchestrator.
    - A missing token is a configuration problem, not a transient one; the
      caller fails the tenant's run instead of retrying.

REFERENCES:
    - backend/adsync/security.py (encrypt_secret / decrypt_secret)
    - backend/adsync/services/meta_sync_service.py (consumer)
"""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Callable, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.models import Connection, ProviderEnum, Token
from adsync.security import encrypt_secret, decrypt_secret

logger = logging.getLogger(__name__)

# Tokens that expire within this margin are treated as expired.
EXPIRY_MARGIN = timedelta(minutes=5)

# Receives the decrypted refresh token, returns (access_token, expires_at).
TokenRefresher = Callable[[Optional[str]], Optional[Tuple[str, Optional[datetime]]]]


def store_connection_token(
    db: Session,
    connection: Connection,
    *,
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    scope: Optional[str] = None,
) -> Token:
    """Encrypt and persist tokens for a connection.

    Creates or updates the `Token` row referenced by the given connection.
    """
    label = f"{connection.provider.value}:{connection.tenant_id}"
    encrypted_access = (
        encrypt_secret(access_token, context=f"{label}:access")
        if access_token else None
    )
    encrypted_refresh = (
        encrypt_secret(refresh_token, context=f"{label}:refresh") if refresh_token else None
    )

    if connection.token:
        token = connection.token
        token.access_token_enc = encrypted_access
        token.refresh_token_enc = encrypted_refresh
        token.expires_at = expires_at
        token.scope = scope
        logger.info("[TOKEN_SERVICE] Updated encrypted token for %s", label)
    else:
        token = Token(
            provider=connection.provider,
            access_token_enc=encrypted_access,
            refresh_token_enc=encrypted_refresh,
            expires_at=expires_at,
            scope=scope,
        )
        db.add(token)
        db.flush()
        connection.token_id = token.id
        connection.token = token
        logger.info("[TOKEN_SERVICE] Created encrypted token for %s", label)

    db.add(connection)
    return token


class TokenProvider:
    """Resolve a decrypted Meta access token for a tenant.

    WHAT:
        `get_valid_token(tenant_id)` returns a plaintext token or None.
    WHY:
        Tokens may be stale. When a refresher is configured an expiring
        token is refreshed and re-encrypted before use; without one an
        expired token is reported as missing.

    Args:
        db: Session used to look up the tenant's connection and token.
        refresher: Optional callable exchanging a refresh token for a new
            access token.
        now: Clock override for tests.
    """

    def __init__(
        self,
        db: Session,
        *,
        refresher: Optional[TokenRefresher] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.refresher = refresher
        self._now = now or datetime.utcnow

    def _connection_for(self, tenant_id: UUID) -> Optional[Connection]:
        return (
            self.db.query(Connection)
            .filter(
                Connection.tenant_id == tenant_id,
                Connection.provider == ProviderEnum.meta,
            )
            .first()
        )

    def get_valid_token(self, tenant_id: UUID) -> Optional[str]:
        connection = self._connection_for(tenant_id)
        if connection is None or connection.token is None:
            logger.warning("[TOKEN_SERVICE] No Meta token stored for tenant %s", tenant_id)
            return None

        token = connection.token
        if not token.access_token_enc:
            logger.warning("[TOKEN_SERVICE] Meta token for tenant %s has no access token", tenant_id)
            return None

        label = f"meta:{tenant_id}"
        if token.expires_at and token.expires_at - EXPIRY_MARGIN <= self._now():
            return self._refresh(connection, token, label)

        try:
            return decrypt_secret(token.access_token_enc, context=f"{label}:access")
        except ValueError:
            logger.error("[TOKEN_SERVICE] Could not decrypt Meta token for tenant %s", tenant_id)
            return None

    def _refresh(self, connection: Connection, token: Token, label: str) -> Optional[str]:
        if self.refresher is None:
            logger.warning("[TOKEN_SERVICE] Meta token for %s expired at %s and no refresher is configured", label, token.expires_at)
            return None

        refresh_plain = None
        if token.refresh_token_enc:
            try:
                refresh_plain = decrypt_secret(token.refresh_token_enc, context=f"{label}:refresh")
            except ValueError:
                logger.error("[TOKEN_SERVICE] Could not decrypt refresh token for %s", label)
                return None

        refreshed = self.refresher(refresh_plain)
        if not refreshed:
            logger.warning("[TOKEN_SERVICE] Token refresh returned nothing for %s", label)
            return None

        access_token, expires_at = refreshed
        store_connection_token(
            self.db,
            connection,
            access_token=access_token,
            refresh_token=refresh_plain,
            expires_at=expires_at,
            scope=token.scope,
        )
        self.db.commit()
        logger.info("[TOKEN_SERVICE] Refreshed Meta token for %s (expires_at=%s)", label, expires_at)
        return access_token
