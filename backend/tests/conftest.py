from __future__ import annotations

import os

# Set test environment BEFORE importing app modules.
# app.db creates the engine at module level using get_settings().db_url,
# so we must override the env vars before any app imports.
os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault("ENCRYPT_KEY_SECRET", "test-encrypt-key-secret")
os.environ.setdefault("API_TOKEN", "test-api-token")
os.environ.setdefault("BACKUP_FREQUENCY", "disabled")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

import app.models  # noqa: F401  register SQLModel tables
from app.config import get_settings
from app.db import get_session
from app.main import app as fastapi_app
from app.services.encryption import FieldEncryptionEngine
from app.services.records import RecordStore


# ── Database fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite engine for testing.

    Uses StaticPool so every connection shares the same in-memory database.
    Recreates tables per test for full isolation.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    """Provide a fresh session per test."""
    with Session(engine) as session:
        yield session


# ── Encryption fixtures ───────────────────────────────────────────────


@pytest.fixture(name="field_encryption")
def field_encryption_fixture() -> FieldEncryptionEngine:
    """Engine keyed with the same secret the app reads from the environment."""
    return FieldEncryptionEngine(get_settings().encrypt_key_secret)


@pytest.fixture(name="store")
def store_fixture(session, field_encryption) -> RecordStore:
    return RecordStore(session, field_encryption)


# ── HTTP client fixtures ──────────────────────────────────────────────


@pytest.fixture(name="auth_headers")
def auth_headers_fixture() -> dict[str, str]:
    return {
        "Authorization": f"Bearer {get_settings().api_token}",
        "X-Actor-Id": "user-1",
        "X-Actor-Name": "Test User",
        "X-Actor-Email": "tester@example.com",
    }


@pytest.fixture(name="client")
def client_fixture(session):
    """FastAPI TestClient with overridden DB session (auth NOT overridden)."""

    def _get_session_override():
        yield session

    fastapi_app.dependency_overrides[get_session] = _get_session_override
    with TestClient(fastapi_app) as client:
        yield client
    fastapi_app.dependency_overrides.clear()
