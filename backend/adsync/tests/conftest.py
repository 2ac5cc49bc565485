"""Pytest configuration for adsync integration tests

WHAT: Shared fixtures for service-level and HTTP tests against an in-memory database
WHY: Sync runs touch connections, tokens, facts, KPIs and the job log together;
     these tests exercise the real SQLAlchemy models and upsert statements.
REFERENCES:
    - adsync/database.py: Database configuration
    - adsync/models.py: Tables under test
    - adsync/services/meta_sync_service.py: Orchestrator
"""

import os
from datetime import datetime
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before anything imports adsync.database
# Must be URL-safe base64-encoded 32-byte string (Fernet key)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ADMIN_SECRET_KEY", "test-admin-key")
os.environ.setdefault("SENTRY_DSN", "")


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from adsync.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(autouse=True)
def _fresh_cipher():
    """Rebuild the Fernet cipher from the test key for every test."""
    from adsync.security import reset_cipher

    reset_cipher()
    yield
    reset_cipher()


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def make_tenant(test_db_session):
    """Factory: tenant + active Meta connection (+ encrypted token).

    Usage:
        tenant, connection = make_tenant(meta={"selected_account_id": "act_1"})
    """
    from adsync.models import Connection, ProviderEnum, Tenant
    from adsync.services.token_service import store_connection_token

    def _make(
        name: str = "Test Tenant",
        *,
        meta=None,
        access_token: str = "meta-access-token",
        expires_at=None,
        external_account_id=None,
        status: str = "active",
    ):
        tenant = Tenant(name=name, created_at=datetime.utcnow())
        test_db_session.add(tenant)
        test_db_session.flush()

        connection = Connection(
            provider=ProviderEnum.meta,
            name=f"{name} Meta",
            status=status,
            external_account_id=external_account_id,
            meta=meta if meta is not None else {"selected_account_id": "act_100"},
            tenant_id=tenant.id,
            connected_at=datetime.utcnow(),
        )
        test_db_session.add(connection)
        test_db_session.flush()

        if access_token:
            store_connection_token(test_db_session, connection, access_token=access_token, expires_at=expires_at)

        test_db_session.commit()
        test_db_session.refresh(connection)
        return tenant, connection

    return _make
