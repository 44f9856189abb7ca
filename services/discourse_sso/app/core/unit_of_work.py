from __future__ import annotations

from collections.abc import Callable
from contextlib import ExitStack

from sqlalchemy.orm import Session

from .logging import get_logger

logger = get_logger(__name__)


class UnitOfWork:
    """
    One request's worth of database work.

    Commits on clean exit and rolls back on error. Callbacks registered with
    ``defer_release`` (lock releases) run afterwards, in reverse order, so a
    lock is only given up once this unit's writes are committed.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self._releases = ExitStack()

    def defer_release(self, callback: Callable[[], None]) -> None:
        self._releases.callback(callback)

    def __enter__(self) -> UnitOfWork:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                self.session.commit()
            else:
                logger.info("unit_of_work.rollback", error_type=exc_type.__name__)
                self.session.rollback()
        finally:
            self._releases.close()
