"""Tests for per-Discourse-id locking."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from services.discourse_sso.app.core.errors import LockTimeout
from services.discourse_sso.app.core.unit_of_work import UnitOfWork
from services.discourse_sso.app.db import make_engine
from services.discourse_sso.app.host.models import HostBase, SiteUser
from services.discourse_sso.app.host.site import SqlUserDirectory
from services.discourse_sso.app.models.links import IdentityLink
from services.discourse_sso.app.schemas.identity import SsoCredentials
from services.discourse_sso.app.services.components import build_components
from services.discourse_sso.app.services.discourse_lock import (
    ADVISORY_NAMESPACE,
    DiscourseIdLock,
    LocalLockBackend,
    MySqlNamedLockBackend,
    PostgresAdvisoryLockBackend,
    lock_backend_for,
)
from services.discourse_sso.app.services.schema_migrator import SchemaMigrator


def _engine_with_dialect(mocker, name):
    engine = mocker.Mock()
    engine.dialect.name = name
    return engine


class TestBackendSelection:
    """Tests for picking the lock primitive from the database dialect."""

    def test_postgres_uses_advisory_locks(self, mocker):
        """Test that PostgreSQL gets advisory locks."""
        backend = lock_backend_for(_engine_with_dialect(mocker, "postgresql"))

        assert isinstance(backend, PostgresAdvisoryLockBackend)

    def test_mysql_uses_named_locks(self, mocker):
        """Test that MySQL and MariaDB get GET_LOCK."""
        assert isinstance(lock_backend_for(_engine_with_dialect(mocker, "mysql")), MySqlNamedLockBackend)
        assert isinstance(lock_backend_for(_engine_with_dialect(mocker, "mariadb")), MySqlNamedLockBackend)

    def test_sqlite_uses_shared_local_locks(self, mocker):
        """Test that SQLite falls back to one process-wide local registry."""
        first = lock_backend_for(_engine_with_dialect(mocker, "sqlite"))
        second = lock_backend_for(_engine_with_dialect(mocker, "sqlite"))

        assert isinstance(first, LocalLockBackend)
        assert first is second

    def test_advisory_namespace_is_positive_int4(self):
        """Test that the namespace key fits a Postgres int4."""
        assert 0 <= ADVISORY_NAMESPACE < 2**31


class TestLocalLockBackend:
    """Tests for the in-process lock registry."""

    def test_timeout_when_held(self):
        """Test that a second acquire of a held id times out."""
        backend = LocalLockBackend()
        release = backend.acquire(None, 7, timeout=1)

        with pytest.raises(LockTimeout) as exc_info:
            backend.acquire(None, 7, timeout=0.05)

        assert exc_info.value.discourse_id == 7
        release()

    def test_different_ids_do_not_block(self):
        """Test that locks are per id."""
        backend = LocalLockBackend()
        first = backend.acquire(None, 7, timeout=1)
        second = backend.acquire(None, 8, timeout=0.05)

        first()
        second()

    def test_reacquire_after_release(self):
        """Test that a released id can be locked again."""
        backend = LocalLockBackend()
        backend.acquire(None, 7, timeout=1)()

        backend.acquire(None, 7, timeout=0.05)()

    def test_released_ids_are_forgotten(self):
        """Test that the registry does not grow with every id ever locked."""
        backend = LocalLockBackend()
        for discourse_id in range(1, 50):
            backend.acquire(None, discourse_id, timeout=1)()

        assert backend.tracked_ids() == frozenset()

    def test_timed_out_waiter_is_forgotten(self):
        """Test that a failed acquire leaves only the holder registered."""
        backend = LocalLockBackend()
        release = backend.acquire(None, 7, timeout=1)
        with pytest.raises(LockTimeout):
            backend.acquire(None, 7, timeout=0.05)

        assert backend.tracked_ids() == frozenset({7})
        release()
        assert backend.tracked_ids() == frozenset()

    def test_waiter_gets_lock_after_release(self):
        """Test that a blocked acquire proceeds once the holder releases."""
        backend = LocalLockBackend()
        release = backend.acquire(None, 7, timeout=1)
        acquired = threading.Event()

        def wait_for_lock():
            backend.acquire(None, 7, timeout=5)()
            acquired.set()

        waiter = threading.Thread(target=wait_for_lock)
        waiter.start()
        release()
        waiter.join(timeout=5)

        assert acquired.is_set()
        assert backend.tracked_ids() == frozenset()


class TestDiscourseIdLock:
    """Tests for unit-of-work scoped locking."""

    def test_acquire_once_per_unit_of_work(self, db_session, mocker):
        """Test that repeated acquires of one id reuse the held lock."""
        release = mocker.Mock()
        backend = mocker.Mock()
        backend.acquire.return_value = release

        with UnitOfWork(db_session) as uow:
            lock = DiscourseIdLock(uow, timeout=2.0, backend=backend)
            lock.acquire(7)
            lock.acquire(7)
            assert lock.held == frozenset({7})
            release.assert_not_called()

        backend.acquire.assert_called_once()
        assert backend.acquire.call_args.args[1:] == (7, 2.0)
        release.assert_called_once_with()

    def test_release_after_rollback(self, db_session, mocker):
        """Test that locks are released when the unit of work fails."""
        release = mocker.Mock()
        backend = mocker.Mock()
        backend.acquire.return_value = release

        with pytest.raises(RuntimeError):
            with UnitOfWork(db_session) as uow:
                DiscourseIdLock(uow, backend=backend).acquire(7)
                raise RuntimeError("boom")

        release.assert_called_once_with()

    def test_timeout_propagates(self, db_session, mocker):
        """Test that LockTimeout reaches the caller and nothing is held."""
        backend = mocker.Mock()
        backend.acquire.side_effect = LockTimeout(7, 0.1)

        with UnitOfWork(db_session) as uow:
            lock = DiscourseIdLock(uow, timeout=0.1, backend=backend)
            with pytest.raises(LockTimeout):
                lock.acquire(7)
            assert lock.held == frozenset()


class TestConcurrentProvisioning:
    """Two deliveries for the same new Discourse user must not both create it."""

    def test_only_one_account_created(self, tmp_path, make_settings, mocker):
        """Test that concurrent first contacts create one account and one link."""
        engine = make_engine(f"sqlite:///{tmp_path / 'site.db'}")
        SchemaMigrator(engine).reconcile()
        HostBase.metadata.create_all(engine)
        SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
        settings = make_settings()

        original_create = SqlUserDirectory.create_user

        def slow_create(self, username, real_name, email):
            time.sleep(0.2)
            return original_create(self, username, real_name, email)

        mocker.patch.object(SqlUserDirectory, "create_user", autospec=True, side_effect=slow_create)

        credentials = SsoCredentials(discourse_id=7, username="alice")
        start = threading.Barrier(2)

        def first_contact() -> int:
            start.wait()
            with SessionLocal() as session:
                with UnitOfWork(session) as uow:
                    parts = build_components(uow, settings)
                    parts.lock.acquire(credentials.discourse_id)
                    info = parts.reconciler.resolve(credentials)
                    local_id = parts.host.on_authenticated(info)
                    parts.store.upsert_link(credentials.discourse_id, local_id)
                    return local_id

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = [f.result() for f in [pool.submit(first_contact) for _ in range(2)]]

        with SessionLocal() as session:
            users = session.execute(select(func.count()).select_from(SiteUser)).scalar()
            links = session.execute(select(IdentityLink)).scalars().all()
        engine.dispose()

        assert results[0] == results[1]
        assert users == 1
        assert [(link.discourse_id, link.wiki_id) for link in links] == [(7, results[0])]
