"""
Mapping Discourse identities onto local accounts.

A Discourse id that is already linked keeps its local id and username;
only the display name and email are refreshed. An unknown id may be linked
to an existing account by username or email, otherwise it gets a fresh
username for the host to create.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from ..core.config import Settings
from ..core.errors import InvalidUsername, UsernameExhaustion
from ..core.logging import get_logger
from ..host.interfaces import AuthHost, UserDirectory
from ..schemas.identity import LocalUserInfo, SsoCredentials
from .link_store import IdentityLinkStore

logger = get_logger(__name__)

ADMIN_GROUP = "@ADMIN@"
MODERATOR_GROUP = "@MODERATOR@"
MAX_USERNAME_SUFFIX = 1000

_ILLEGAL_USERNAME_CHARS = frozenset("#<>[]|{}")


def canonicalize_username(raw: str) -> str:
    """Turn a Discourse username into a site username (underscores as spaces, capital first letter)."""
    name = " ".join(raw.replace("_", " ").split())
    if (
        not name
        or any(c in _ILLEGAL_USERNAME_CHARS or ord(c) < 32 or ord(c) == 127 for c in name)
        or len(name.encode("utf-8")) > 255
    ):
        raise InvalidUsername(f"Unable to make a valid username from '{raw}'.")
    return name[0].upper() + name[1:]


@dataclass
class GroupChanges:
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.added or self.removed)


class IdentityReconciler:
    def __init__(
        self,
        settings: Settings,
        store: IdentityLinkStore,
        directory: UserDirectory,
        host: AuthHost | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._directory = directory
        self._host = host

    def wikify_name(self, name: str) -> str:
        return name if self._settings.user_expose_name else ""

    def wikify_email(self, email: str) -> str:
        return email if self._settings.user_expose_email else ""

    def resolve(self, credentials: SsoCredentials) -> LocalUserInfo:
        return self.resolve_linked_user(credentials) or self.resolve_unknown_user(credentials)

    def resolve_linked_user(self, credentials: SsoCredentials) -> LocalUserInfo | None:
        linked = self._store.lookup_by_discourse_id(credentials.discourse_id)
        if linked is None:
            return None
        logger.info(
            "reconcile.linked",
            discourse_id=credentials.discourse_id,
            local_id=linked.local_id,
        )
        return LocalUserInfo(
            id=linked.local_id,
            username=linked.local_username,
            realname=self.wikify_name(credentials.name),
            email=self.wikify_email(credentials.email),
        )

    def resolve_unknown_user(self, credentials: SsoCredentials) -> LocalUserInfo:
        discourse_id = credentials.discourse_id
        logger.info("reconcile.unknown", discourse_id=discourse_id)
        info = LocalUserInfo(
            id=None,
            username=canonicalize_username(credentials.username),
            realname=self.wikify_name(credentials.name),
            email=self.wikify_email(credentials.email),
        )

        for method in self._settings.user_link_existing_by:
            if method == "username":
                found = self._store.find_local_by_username(info.username)
            elif method == "email":
                if not self._settings.user_expose_email:
                    logger.info("reconcile.email_link_skipped", reason="user_expose_email is false")
                    continue
                found = self._store.find_local_by_email(info.email)
            else:
                logger.warning("reconcile.unknown_link_method", method=method)
                continue
            if found is not None:
                logger.info(
                    "reconcile.linked_existing",
                    method=method,
                    discourse_id=discourse_id,
                    local_id=found.local_id,
                )
                self._store.upsert_link(discourse_id, found.local_id)
                return info.model_copy(update={"id": found.local_id, "username": found.local_username})

        info = info.model_copy(update={"username": self.ensure_fresh_username(info.username)})
        logger.info("reconcile.needs_account", discourse_id=discourse_id, username=info.username)
        return info

    def ensure_fresh_username(self, original: str) -> str:
        username = original
        suffix = 1
        while self._directory.username_exists(username):
            if suffix > MAX_USERNAME_SUFFIX:
                raise UsernameExhaustion(
                    f"Failed to find fresh username for '{original}' after {suffix} tries."
                )
            username = f"{original}-{suffix}"
            suffix += 1
        return username

    def populate_groups(self, local_id: int, credentials: SsoCredentials) -> GroupChanges:
        group_maps = self._settings.user_group_maps
        if not group_maps:
            return GroupChanges()

        discourse_groups = set(credentials.groups)
        if credentials.is_admin:
            discourse_groups.add(ADMIN_GROUP)
        if credentials.is_moderator:
            discourse_groups.add(MODERATOR_GROUP)

        current = self._directory.get_groups(local_id)
        changes = GroupChanges()
        for local_group, mapped in group_maps.items():
            wanted = not discourse_groups.isdisjoint(mapped)
            if wanted and local_group not in current:
                self._directory.add_to_group(local_id, local_group)
                changes.added.append(local_group)
            elif not wanted and local_group in current:
                self._directory.remove_from_group(local_id, local_group)
                changes.removed.append(local_group)

        if changes:
            logger.info(
                "reconcile.groups_changed",
                local_id=local_id,
                added=changes.added,
                removed=changes.removed,
            )
            if self._host is not None:
                self._host.on_groups_changed(local_id, changes.added, changes.removed)
        return changes
