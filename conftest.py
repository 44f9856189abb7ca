"""
Root conftest.py for pytest configuration and shared fixtures.
"""
import os
import pytest
from typing import Callable, Generator
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

# Set test environment BEFORE importing any app code
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["TESTING"] = "true"

# Set JWT secret for auth tests (32+ chars required)
os.environ["JWT_SECRET_KEY"] = "test_secret_key_for_testing_purposes_only_do_not_use_in_production"

DISCOURSE_URL = "https://forum.example.org"
SSO_SECRET = "sso-shared-secret-for-tests"
WEBHOOK_SECRET = "webhook-shared-secret-for-tests"


@pytest.fixture(scope="function")
def test_db_engine():
    """
    Fresh in-memory SQLite database per test.

    The link tables are installed through SchemaMigrator exactly as in
    production; the site tables come straight from their metadata.
    """
    from services.discourse_sso.app.host.models import HostBase
    from services.discourse_sso.app.services.schema_migrator import SchemaMigrator

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,  # Required for SQLite in-memory
        echo=False,
    )
    SchemaMigrator(engine).reconcile()
    HostBase.metadata.create_all(engine)

    yield engine

    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(bind=test_db_engine, expire_on_commit=False)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def make_settings() -> Callable:
    """Build Settings for a test; keyword arguments override the defaults."""
    from services.discourse_sso.app.core.config import Settings

    def _make(**overrides):
        values = {
            "database_url": "sqlite:///:memory:",
            "discourse_url": DISCOURSE_URL,
            "public_base_url": "http://testserver",
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def sso_settings(make_settings) -> Callable:
    def _make(**overrides):
        values = {"sso_enable": True, "sso_shared_secret": SSO_SECRET}
        values.update(overrides)
        return make_settings(**values)

    return _make


@pytest.fixture
def webhook_settings(make_settings) -> Callable:
    def _make(**overrides):
        values = {
            "webhook_enable": True,
            "webhook_shared_secret": WEBHOOK_SECRET,
            "webhook_allowed_ip_list": ["testclient"],
        }
        values.update(overrides)
        return make_settings(**values)

    return _make


@pytest.fixture(scope="function")
def make_client(test_db_engine, db_session: Session) -> Generator[Callable, None, None]:
    """
    Factory for FastAPI test clients built with specific Settings.

    Redirects are not followed so tests can inspect them.
    """
    # Must import here to ensure test environment is set
    import services.discourse_sso.app.db as db_module
    from services.discourse_sso.app.api.deps import get_db_session
    from services.discourse_sso.app.main import create_app

    # Override the global engine and sessionmaker
    original_engine = db_module._engine
    original_sessionmaker = db_module._SessionLocal

    db_module._engine = test_db_engine
    db_module._SessionLocal = sessionmaker(bind=test_db_engine, expire_on_commit=False)

    clients: list[TestClient] = []

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close, managed by db_session fixture

    def _make(settings) -> TestClient:
        app = create_app(settings)
        app.dependency_overrides[get_db_session] = override_get_db
        test_client = TestClient(app, follow_redirects=False)
        test_client.__enter__()
        clients.append(test_client)
        return test_client

    yield _make

    for test_client in clients:
        test_client.app.dependency_overrides.clear()
        test_client.__exit__(None, None, None)
    db_module._engine = original_engine
    db_module._SessionLocal = original_sessionmaker


@pytest.fixture(scope="function")
def client(make_client, make_settings) -> TestClient:
    return make_client(make_settings())


@pytest.fixture
def site_user(db_session: Session) -> Callable:
    """Create a local site account and return its id."""
    from services.discourse_sso.app.host.models import SiteUser

    def _create(username: str, email: str = "", real_name: str = "") -> int:
        row = SiteUser(username=username, email=email, real_name=real_name)
        db_session.add(row)
        db_session.commit()
        return row.id

    return _create


@pytest.fixture(autouse=True)
def reset_environment():
    """Reset environment variables after each test."""
    original_env = os.environ.copy()
    yield
    os.environ.clear()
    os.environ.update(original_env)
