from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.errors import AlreadyLinkedError
from ..core.logging import get_logger
from ..host.interfaces import UserDirectory
from ..models.links import DiscourseUserRecord, IdentityLink

logger = get_logger(__name__)


@dataclass(frozen=True)
class LinkedUser:
    discourse_id: int
    local_id: int
    local_username: str


@dataclass(frozen=True)
class LocalMatch:
    local_id: int
    local_username: str


@dataclass(frozen=True)
class CachedUserRecord:
    discourse_id: int
    user_record: dict[str, Any]
    last_update: datetime
    last_event: str
    last_event_id: int


def _cached(row: DiscourseUserRecord) -> CachedUserRecord:
    return CachedUserRecord(
        discourse_id=row.discourse_id,
        user_record=json.loads(row.user_json),
        last_update=row.last_update,
        last_event=row.last_event,
        last_event_id=row.last_event_id,
    )


class IdentityLinkStore:
    """
    Discourse id <-> local id links and the cached Discourse user records.

    Writers must hold the DiscourseIdLock for the id they write. The store
    only flushes; the surrounding unit of work commits.
    """

    def __init__(self, session: Session, directory: UserDirectory) -> None:
        self._session = session
        self._directory = directory

    def lookup_by_discourse_id(self, discourse_id: int) -> LinkedUser | None:
        local_id = self.lookup_local_id(discourse_id)
        if local_id is None:
            return None
        account = self._directory.get_user(local_id)
        if account is None:
            logger.warning("link.dangling", discourse_id=discourse_id, local_id=local_id)
            return None
        return LinkedUser(discourse_id=discourse_id, local_id=account.id, local_username=account.username)

    def lookup_local_id(self, discourse_id: int) -> int | None:
        return self._session.execute(
            select(IdentityLink.wiki_id).where(IdentityLink.discourse_id == discourse_id)
        ).scalar_one_or_none()

    def lookup_discourse_id_by_local_id(self, local_id: int) -> int | None:
        return self._session.execute(
            select(IdentityLink.discourse_id).where(IdentityLink.wiki_id == local_id)
        ).scalar_one_or_none()

    def find_local_by_email(self, email: str) -> LocalMatch | None:
        if not email:
            return None
        account = self._directory.find_by_email(email)
        return LocalMatch(account.id, account.username) if account else None

    def find_local_by_username(self, username: str) -> LocalMatch | None:
        if not username:
            return None
        account = self._directory.find_by_username(username)
        return LocalMatch(account.id, account.username) if account else None

    def upsert_link(self, discourse_id: int, local_id: int) -> None:
        if discourse_id <= 0 or local_id <= 0:
            raise ValueError(f"Cannot link discourse_id {discourse_id} to local id {local_id}")

        holder = self.lookup_discourse_id_by_local_id(local_id)
        if holder is not None and holder != discourse_id:
            raise AlreadyLinkedError(local_id, discourse_id, linked_to=holder)

        link = self._session.get(IdentityLink, discourse_id)
        if link is None:
            self._session.add(IdentityLink(discourse_id=discourse_id, wiki_id=local_id))
        elif link.wiki_id != local_id:
            logger.warning(
                "link.relinked", discourse_id=discourse_id, old_local_id=link.wiki_id, local_id=local_id
            )
            link.wiki_id = local_id
        try:
            self._session.flush()
        except IntegrityError as exc:
            raise AlreadyLinkedError(local_id, discourse_id) from exc
        logger.info("link.saved", discourse_id=discourse_id, local_id=local_id)

    def upsert_user_record(
        self,
        discourse_id: int,
        record: dict[str, Any],
        event_name: str,
        event_id: int,
        timestamp: datetime,
    ) -> None:
        row = self._session.get(DiscourseUserRecord, discourse_id)
        if row is None:
            row = DiscourseUserRecord(discourse_id=discourse_id)
            self._session.add(row)
        row.user_json = json.dumps(record)
        row.last_update = timestamp
        row.last_event = event_name
        row.last_event_id = event_id
        self._session.flush()

    def fetch_user_record(self, discourse_id: int) -> CachedUserRecord | None:
        row = self._session.get(DiscourseUserRecord, discourse_id)
        return _cached(row) if row is not None else None

    def fetch_user_record_by_local_id(self, local_id: int) -> CachedUserRecord | None:
        row = self._session.execute(
            select(DiscourseUserRecord)
            .join(IdentityLink, IdentityLink.discourse_id == DiscourseUserRecord.discourse_id)
            .where(IdentityLink.wiki_id == local_id)
        ).scalar_one_or_none()
        return _cached(row) if row is not None else None
