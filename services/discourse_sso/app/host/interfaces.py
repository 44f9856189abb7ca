"""
Capabilities the SSO consumer needs from the site it is embedded in.

The identity engine only talks to these protocols; ``host.site`` provides
the SQLAlchemy-backed implementation used by this service.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from ..schemas.auth_state import Completed, Failed, NonceIssued, NoState
from ..schemas.identity import LocalUserInfo


@dataclass(frozen=True)
class LocalAccount:
    id: int
    username: str
    real_name: str = ""
    email: str = ""


class UserDirectory(Protocol):
    def get_user(self, local_id: int) -> LocalAccount | None: ...

    def find_by_username(self, username: str) -> LocalAccount | None: ...

    def find_by_email(self, email: str) -> LocalAccount | None: ...

    def username_exists(self, username: str) -> bool: ...

    def create_user(self, username: str, real_name: str, email: str) -> int: ...

    def update_user(self, local_id: int, real_name: str, email: str) -> None: ...

    def get_groups(self, local_id: int) -> set[str]: ...

    def add_to_group(self, local_id: int, group: str) -> None: ...

    def remove_from_group(self, local_id: int, group: str) -> None: ...

    def invalidate_all_sessions(self, local_id: int) -> int: ...


class SessionStore(Protocol):
    def get_auth_state(self) -> NoState | NonceIssued | Completed | Failed: ...

    def set_auth_state(self, state: NoState | NonceIssued | Completed | Failed) -> None: ...

    def clear_auth_state(self) -> None: ...


class Clock(Protocol):
    def now(self) -> datetime: ...


class AuthHost(Protocol):
    def on_authenticated(self, info: LocalUserInfo) -> int:
        """Create or refresh the local account described by ``info`` and return its id."""
        ...

    def on_groups_changed(self, local_id: int, added: list[str], removed: list[str]) -> None: ...

    def on_sessions_invalidated(self, local_id: int, count: int) -> None: ...
