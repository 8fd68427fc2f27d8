"""
Test configuration for Oracly tests.
"""

import os

# Settings are read at import time; point them at throwaway values first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENCRYPTION_KEY", "oracly-test-encryption-secret")
os.environ.setdefault("AUTH_JWT_SECRET", "oracly-test-jwt-secret-with-enough-bytes-for-hs256")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from oracly.models import Base, Integration, ProviderType, SyncStatus
from oracly.services.security.credential_vault import CredentialVault, reset_credential_vault

TEST_USER_ID = "user-123"
OTHER_USER_ID = "user-456"


@pytest.fixture
def test_engine():
    """Private in-memory database per test, schema built from the models."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def db_session(test_engine):
    """Session per test; code under test may commit freely."""
    SessionForTests = sessionmaker(bind=test_engine, autocommit=False, autoflush=False)
    session = SessionForTests()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def vault():
    return CredentialVault(key_override="unit-test-secret")


@pytest.fixture(autouse=True)
def _fresh_global_vault():
    """Global vault is rebuilt from ENCRYPTION_KEY for every test."""
    reset_credential_vault()
    yield
    reset_credential_vault()


@pytest.fixture
def make_integration(db_session, vault):
    """Factory for stored Binance integrations with encrypted credentials."""

    def _make(user_id=TEST_USER_ID, api_key="test-key", api_secret="test-secret", **fields):
        integration = Integration(
            user_id=user_id,
            provider=ProviderType.BINANCE,
            encrypted_api_key=vault.encrypt(api_key),
            encrypted_api_secret=vault.encrypt(api_secret),
            scopes=["read"],
            sync_status=fields.pop("sync_status", SyncStatus.NEVER_SYNCED),
            **fields,
        )
        db_session.add(integration)
        db_session.commit()
        return integration

    return _make


@pytest.fixture
def integration(make_integration):
    return make_integration()
