"""Integration tests for TokenProvider (decrypt, expiry, refresh)."""

from datetime import datetime, timedelta
from uuid import uuid4

from adsync.models import Token
from adsync.security import decrypt_secret
from adsync.services.token_service import TokenProvider


def test_returns_decrypted_token(test_db_session, make_tenant):
    tenant, _ = make_tenant(access_token="plain-token")
    assert TokenProvider(test_db_session).get_valid_token(tenant.id) == "plain-token"


def test_token_is_stored_encrypted(test_db_session, make_tenant):
    make_tenant(access_token="plain-token")
    token = test_db_session.query(Token).one()
    assert token.access_token_enc != "plain-token"
    assert decrypt_secret(token.access_token_enc, context="test") == "plain-token"


def test_unknown_tenant_has_no_token(test_db_session):
    assert TokenProvider(test_db_session).get_valid_token(uuid4()) is None


def test_connection_without_token(test_db_session, make_tenant):
    tenant, _ = make_tenant(access_token=None)
    assert TokenProvider(test_db_session).get_valid_token(tenant.id) is None


def test_expired_token_without_refresher(test_db_session, make_tenant):
    now = datetime(2025, 6, 1, 12, 0)
    tenant, _ = make_tenant(expires_at=now + timedelta(minutes=2))

    provider = TokenProvider(test_db_session, now=lambda: now)

    assert provider.get_valid_token(tenant.id) is None


def test_expired_token_is_refreshed(test_db_session, make_tenant):
    now = datetime(2025, 6, 1, 12, 0)
    tenant, connection = make_tenant(expires_at=now - timedelta(hours=1))
    new_expiry = now + timedelta(days=60)
    calls = []

    def refresher(refresh_token):
        calls.append(refresh_token)
        return "fresh-token", new_expiry

    provider = TokenProvider(test_db_session, refresher=refresher, now=lambda: now)

    assert provider.get_valid_token(tenant.id) == "fresh-token"
    assert calls == [None]
    test_db_session.refresh(connection)
    assert connection.token.expires_at == new_expiry
    # Subsequent calls use the stored token without refreshing again
    assert provider.get_valid_token(tenant.id) == "fresh-token"
    assert len(calls) == 1


def test_undecryptable_token(test_db_session, make_tenant):
    tenant, connection = make_tenant()
    connection.token.access_token_enc = "not-a-fernet-token"
    test_db_session.commit()

    assert TokenProvider(test_db_session).get_valid_token(tenant.id) is None

