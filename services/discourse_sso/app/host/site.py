"""SQLAlchemy-backed implementation of the host capabilities."""
from __future__ import annotations

import secrets
from datetime import UTC, datetime

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from ..core.errors import AccountCreationDenied
from ..core.logging import get_logger
from ..schemas.auth_state import (
    Completed,
    Failed,
    NonceIssued,
    NoState,
    dump_auth_state,
    load_auth_state,
)
from ..schemas.identity import LocalUserInfo
from .interfaces import LocalAccount, UserDirectory
from .models import SiteSession, SiteUser, SiteUserGroup

logger = get_logger(__name__)


def _account(row: SiteUser) -> LocalAccount:
    return LocalAccount(id=row.id, username=row.username, real_name=row.real_name, email=row.email)


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(UTC)


class SqlUserDirectory:
    def __init__(self, session: Session, allow_account_creation: bool = True) -> None:
        self._session = session
        self._allow_account_creation = allow_account_creation

    def get_user(self, local_id: int) -> LocalAccount | None:
        row = self._session.get(SiteUser, local_id)
        return _account(row) if row is not None else None

    def find_by_username(self, username: str) -> LocalAccount | None:
        if not username:
            return None
        row = self._session.execute(
            select(SiteUser).where(SiteUser.username == username)
        ).scalar_one_or_none()
        return _account(row) if row is not None else None

    def find_by_email(self, email: str) -> LocalAccount | None:
        # Never match on an empty address: many accounts have none set.
        if not email:
            return None
        row = self._session.execute(
            select(SiteUser).where(SiteUser.email == email).order_by(SiteUser.id).limit(1)
        ).scalar_one_or_none()
        return _account(row) if row is not None else None

    def username_exists(self, username: str) -> bool:
        return self.find_by_username(username) is not None

    def create_user(self, username: str, real_name: str, email: str) -> int:
        if not self._allow_account_creation:
            raise AccountCreationDenied(f"Account creation is disabled; cannot create '{username}'")
        existing = self.find_by_username(username)
        if existing is not None:
            raise AccountCreationDenied(
                f"Username '{username}' already exists with id '{existing.id}'"
            )
        row = SiteUser(username=username, real_name=real_name, email=email)
        self._session.add(row)
        self._session.flush()
        logger.info("site.user_created", user_id=row.id, username=username)
        return row.id

    def update_user(self, local_id: int, real_name: str, email: str) -> None:
        row = self._session.get(SiteUser, local_id)
        if row is None:
            raise LookupError(f"No local user with id {local_id}")
        # Empty values mean "not exposed", not "erase"
        if real_name and row.real_name != real_name:
            row.real_name = real_name
        if email and row.email != email:
            row.email = email
        self._session.flush()

    def get_groups(self, local_id: int) -> set[str]:
        rows = self._session.execute(
            select(SiteUserGroup.group_name).where(SiteUserGroup.user_id == local_id)
        ).scalars()
        return set(rows)

    def add_to_group(self, local_id: int, group: str) -> None:
        self._session.add(SiteUserGroup(user_id=local_id, group_name=group))
        self._session.flush()

    def remove_from_group(self, local_id: int, group: str) -> None:
        self._session.execute(
            delete(SiteUserGroup).where(
                SiteUserGroup.user_id == local_id, SiteUserGroup.group_name == group
            )
        )

    def invalidate_all_sessions(self, local_id: int) -> int:
        result = self._session.execute(
            update(SiteSession)
            .where(SiteSession.user_id == local_id, SiteSession.invalidated_at.is_(None))
            .values(invalidated_at=datetime.now(UTC))
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0


class SqlSessionStore:
    """Server-side browser session, addressed by the token in the session cookie."""

    def __init__(self, session: Session, row: SiteSession) -> None:
        self._session = session
        self._row = row

    @classmethod
    def open(cls, session: Session, token: str | None) -> SqlSessionStore:
        row = session.get(SiteSession, token) if token else None
        if row is None or not row.is_active:
            row = SiteSession(token=secrets.token_urlsafe(32))
            session.add(row)
            session.flush()
        return cls(session, row)

    @property
    def token(self) -> str:
        return self._row.token

    @property
    def user_id(self) -> int | None:
        return self._row.user_id

    def get_auth_state(self) -> NoState | NonceIssued | Completed | Failed:
        return load_auth_state(self._row.auth_state)

    def set_auth_state(self, state: NoState | NonceIssued | Completed | Failed) -> None:
        self._row.auth_state = dump_auth_state(state)
        self._session.flush()

    def clear_auth_state(self) -> None:
        self.set_auth_state(NoState())

    def bind_user(self, local_id: int) -> None:
        self._row.user_id = local_id
        self._session.flush()

    def end(self) -> None:
        self._row.invalidated_at = datetime.now(UTC)
        self._session.flush()


class SiteAuthHost:
    def __init__(self, directory: UserDirectory) -> None:
        self._directory = directory

    def on_authenticated(self, info: LocalUserInfo) -> int:
        if info.id is None:
            return self._directory.create_user(info.username, info.realname, info.email)
        self._directory.update_user(info.id, info.realname, info.email)
        return info.id

    def on_groups_changed(self, local_id: int, added: list[str], removed: list[str]) -> None:
        logger.info("site.groups_changed", user_id=local_id, added=added, removed=removed)

    def on_sessions_invalidated(self, local_id: int, count: int) -> None:
        logger.info("site.sessions_invalidated", user_id=local_id, count=count)


def active_user_id(session: Session, token: str | None) -> int | None:
    """User bound to the session behind ``token``, if it is still valid."""
    row = session.get(SiteSession, token) if token else None
    if row is None or not row.is_active:
        return None
    return row.user_id
