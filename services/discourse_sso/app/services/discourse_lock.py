"""
Per-Discourse-id mutual exclusion shared by SSO logins and webhook deliveries.

Database-backed locks live on a dedicated connection so they survive the
commit of the request's session and are released only after it, through
the unit of work.
"""
from __future__ import annotations

import threading
import zlib
from collections.abc import Callable
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ..core.errors import LockTimeout
from ..core.logging import get_logger
from ..core.unit_of_work import UnitOfWork

logger = get_logger(__name__)

LOCK_PREFIX = "DiscourseSsoConsumer/DiscourseIdLock:"
# First key of the two-part Postgres advisory lock
ADVISORY_NAMESPACE = zlib.crc32(LOCK_PREFIX.encode("utf-8")) & 0x7FFFFFFF

Release = Callable[[], None]


class LockBackend(Protocol):
    def acquire(self, engine: Engine, discourse_id: int, timeout: float) -> Release: ...


class LocalLockBackend:
    """In-process locks, for single-process deployments on SQLite."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}
        # Holders plus waiters per id; the entry is dropped when this reaches zero.
        self._users: dict[int, int] = {}

    def acquire(self, engine: Engine, discourse_id: int, timeout: float) -> Release:
        with self._guard:
            lock = self._locks.setdefault(discourse_id, threading.Lock())
            self._users[discourse_id] = self._users.get(discourse_id, 0) + 1
        if not lock.acquire(timeout=timeout):
            self._forget(discourse_id)
            raise LockTimeout(discourse_id, timeout)

        def release() -> None:
            lock.release()
            self._forget(discourse_id)

        return release

    def _forget(self, discourse_id: int) -> None:
        with self._guard:
            self._users[discourse_id] -= 1
            if not self._users[discourse_id]:
                del self._users[discourse_id]
                del self._locks[discourse_id]

    def tracked_ids(self) -> frozenset[int]:
        with self._guard:
            return frozenset(self._locks)


class PostgresAdvisoryLockBackend:
    def acquire(self, engine: Engine, discourse_id: int, timeout: float) -> Release:
        connection = engine.connect()
        try:
            connection.execute(text(f"SET lock_timeout = '{int(timeout * 1000)}ms'"))
            connection.execute(
                text("SELECT pg_advisory_lock(:ns, :id)"),
                {"ns": ADVISORY_NAMESPACE, "id": discourse_id},
            )
            connection.execute(text("RESET lock_timeout"))
            connection.commit()
        except OperationalError as exc:
            connection.close()
            if getattr(exc.orig, "sqlstate", None) == "55P03":  # lock_not_available
                raise LockTimeout(discourse_id, timeout) from exc
            raise
        except BaseException:
            connection.close()
            raise

        def release() -> None:
            try:
                connection.execute(
                    text("SELECT pg_advisory_unlock(:ns, :id)"),
                    {"ns": ADVISORY_NAMESPACE, "id": discourse_id},
                )
                connection.commit()
            finally:
                connection.close()

        return release


class MySqlNamedLockBackend:
    def acquire(self, engine: Engine, discourse_id: int, timeout: float) -> Release:
        name = f"{LOCK_PREFIX}{discourse_id}"
        connection = engine.connect()
        try:
            acquired = connection.execute(
                text("SELECT GET_LOCK(:name, :timeout)"), {"name": name, "timeout": timeout}
            ).scalar()
        except BaseException:
            connection.close()
            raise
        if acquired != 1:
            connection.close()
            raise LockTimeout(discourse_id, timeout)

        def release() -> None:
            try:
                connection.execute(text("SELECT RELEASE_LOCK(:name)"), {"name": name})
            finally:
                connection.close()

        return release


_local_backend = LocalLockBackend()


def lock_backend_for(engine: Engine) -> LockBackend:
    dialect = engine.dialect.name
    if dialect == "postgresql":
        return PostgresAdvisoryLockBackend()
    if dialect in ("mysql", "mariadb"):
        return MySqlNamedLockBackend()
    return _local_backend


def _engine_of(session: Session) -> Engine:
    bind = session.get_bind()
    return bind if isinstance(bind, Engine) else bind.engine


class DiscourseIdLock:
    """Locks held by one unit of work; each id is acquired at most once."""

    def __init__(
        self,
        uow: UnitOfWork,
        timeout: float = 5.0,
        backend: LockBackend | None = None,
    ) -> None:
        self._uow = uow
        self._timeout = timeout
        self._engine = _engine_of(uow.session)
        self._backend = backend or lock_backend_for(self._engine)
        self._held: set[int] = set()

    @property
    def held(self) -> frozenset[int]:
        return frozenset(self._held)

    def acquire(self, discourse_id: int) -> None:
        if discourse_id in self._held:
            return
        logger.info("lock.acquiring", discourse_id=discourse_id)
        release = self._backend.acquire(self._engine, discourse_id, self._timeout)
        self._held.add(discourse_id)
        self._uow.defer_release(release)
        # Start a fresh transaction so reads see what the previous holder committed.
        self._uow.session.commit()
        self._uow.session.expire_all()
        logger.info("lock.acquired", discourse_id=discourse_id)
