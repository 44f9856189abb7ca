from __future__ import annotations

from dataclasses import dataclass

from ..core.config import Settings
from ..core.unit_of_work import UnitOfWork
from ..host.site import SiteAuthHost, SqlUserDirectory, SystemClock
from .discourse_api import DiscourseApiClient
from .discourse_lock import DiscourseIdLock
from .link_store import IdentityLinkStore
from .reconciler import IdentityReconciler
from .sso_protocol import SsoProtocol
from .webhook_ingestor import WebhookIngestor


@dataclass
class Components:
    """The identity engine wired to the site adapter for one unit of work."""

    settings: Settings
    uow: UnitOfWork
    directory: SqlUserDirectory
    host: SiteAuthHost
    store: IdentityLinkStore
    lock: DiscourseIdLock
    reconciler: IdentityReconciler
    protocol: SsoProtocol
    clock: SystemClock

    def webhook_ingestor(self) -> WebhookIngestor:
        return WebhookIngestor(
            self.settings,
            self.store,
            self.reconciler,
            self.directory,
            self.host,
            self.lock,
            self.clock,
        )

    def api_client(self) -> DiscourseApiClient:
        return DiscourseApiClient(self.settings)


def build_components(uow: UnitOfWork, settings: Settings) -> Components:
    directory = SqlUserDirectory(uow.session, settings.host_allow_account_creation)
    host = SiteAuthHost(directory)
    store = IdentityLinkStore(uow.session, directory)
    return Components(
        settings=settings,
        uow=uow,
        directory=directory,
        host=host,
        store=store,
        lock=DiscourseIdLock(uow, timeout=settings.lock_timeout_seconds),
        reconciler=IdentityReconciler(settings, store, directory, host),
        protocol=SsoProtocol(settings),
        clock=SystemClock(),
    )
