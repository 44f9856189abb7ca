from __future__ import annotations

from .link_store import CachedUserRecord, IdentityLinkStore


class DiscourseUserConnector:
    """Read-only view of cached Discourse user data for other site features.

    Takes no lock: readers may see either side of an in-flight upsert.
    """

    def __init__(self, store: IdentityLinkStore) -> None:
        self._store = store

    def get_discourse_user_record(self, local_id: int) -> CachedUserRecord | None:
        return self._store.fetch_user_record_by_local_id(local_id)
