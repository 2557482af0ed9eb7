"""Pytest configuration and fixtures for Cordline tests.

Test isolation strategy:
- Tests that use db_session get a nested transaction (savepoint) that rolls back
- Without DATABASE_URL the suite runs on an in-memory SQLite database whose
  schema is created from the ORM metadata
- Against PostgreSQL the schema must already be migrated (alembic upgrade head)
- Tests needing multiple connections use direct_db (PostgreSQL only)
- API tests use auth_client with test JWT tokens and the test session
"""

import os
import sys
from collections.abc import Generator
from pathlib import Path

# Defaults must be in place before anything reads settings.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("CORDLINE_ENV", "test")
os.environ.setdefault("SUPABASE_JWKS_URL", "http://localhost:54321/auth/v1/.well-known/jwks.json")
os.environ.setdefault("SUPABASE_ISSUER", "test-issuer")
os.environ.setdefault("SUPABASE_AUDIENCES", "test-audience")
os.environ.setdefault("FANOUT_BACKEND", "memory")

# Add repo root to sys.path for importing top-level packages (e.g., apps)
_repo_root = Path(__file__).parent.parent.parent
if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine, inspect
from sqlalchemy.orm import Session

from cordline.api.deps import get_db
from cordline.app import create_app
from cordline.config import clear_settings_cache
from cordline.db.engine import create_db_engine
from cordline.db.models import Base, User
from cordline.services.moderation import KeywordModerator
from cordline.services.users import ensure_user, username_from_claims
from tests.factories import create_test_user
from tests.support.buses import RecordingMessageBus
from tests.support.mock_verifier import MockJwtVerifier
from tests.utils.db import DirectSessionManager, TestDatabaseManager


def _is_sqlite(engine: Engine) -> bool:
    return engine.dialect.name == "sqlite"


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    """Create a database engine for the test session."""
    engine = create_db_engine(os.environ["DATABASE_URL"])
    if _is_sqlite(engine):
        Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="session", autouse=True)
def verify_schema_exists(engine: Engine) -> None:
    """Fail fast with a helpful message if migrations haven't been run."""
    if not inspect(engine).has_table("messages"):
        pytest.fail(
            "Database schema not found. Run migrations first:\n"
            "  cd migrations && alembic upgrade head"
        )


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Clear the settings cache around each test so env overrides take effect."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def db_session(engine: Engine) -> Generator[Session, None, None]:
    """Session whose work is rolled back after the test."""
    with TestDatabaseManager(engine) as session:
        yield session


@pytest.fixture
def direct_db(engine: Engine) -> Generator[DirectSessionManager, None, None]:
    """Independent sessions over real connections (PostgreSQL only)."""
    if _is_sqlite(engine):
        pytest.skip("requires PostgreSQL (set DATABASE_URL)")
    manager = DirectSessionManager(engine)
    yield manager
    manager.cleanup()


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def bus() -> RecordingMessageBus:
    return RecordingMessageBus()


@pytest.fixture
def alice(db_session: Session) -> User:
    return create_test_user(db_session, username="alice", display_name="Alice")


@pytest.fixture
def bob(db_session: Session) -> User:
    return create_test_user(db_session, username="bob", display_name="Bob")


@pytest.fixture
def carol(db_session: Session) -> User:
    return create_test_user(db_session, username="carol")


# =============================================================================
# API fixtures
# =============================================================================


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    """Client for routes that need no authentication or database."""
    app = create_app(skip_auth_middleware=True, message_bus=RecordingMessageBus())
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def app(db_session: Session, bus: RecordingMessageBus):
    """App wired to the test session, the recording bus and the mock verifier."""

    def bootstrap(user_id, claims):
        username, display_name = username_from_claims(user_id, claims)
        ensure_user(db_session, user_id, username=username, display_name=display_name)

    app = create_app(
        token_verifier=MockJwtVerifier(),
        message_bus=bus,
        moderator=KeywordModerator(["spam"]),
        bootstrap_callback=bootstrap,
    )
    app.dependency_overrides[get_db] = lambda: db_session
    return app


@pytest.fixture
def auth_client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as test_client:
        yield test_client
