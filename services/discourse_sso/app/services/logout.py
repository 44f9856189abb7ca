from __future__ import annotations

from dataclasses import dataclass

from ..core.config import Settings
from ..core.logging import get_logger
from ..host.interfaces import AuthHost, UserDirectory
from ..schemas.auth_state import IntentCookie
from .discourse_api import DiscourseApiClient
from .link_store import IdentityLinkStore
from .sso_protocol import SsoProtocol, new_nonce

logger = get_logger(__name__)


@dataclass(frozen=True)
class LogoutOutcome:
    redirect_url: str | None
    sessions_invalidated: int = 0
    intent: IntentCookie = IntentCookie.NO_MORE


class LogoutService:
    """Local logout, optionally global, optionally forwarded to Discourse."""

    def __init__(
        self,
        settings: Settings,
        directory: UserDirectory,
        host: AuthHost,
        store: IdentityLinkStore,
        protocol: SsoProtocol,
        api: DiscourseApiClient,
    ) -> None:
        self._settings = settings
        self._directory = directory
        self._host = host
        self._store = store
        self._protocol = protocol
        self._api = api

    def deauthenticate(self, local_id: int, global_logout: bool, return_url: str) -> LogoutOutcome:
        """
        Invalidate sessions as requested and tell the caller where to send the browser.

        RemoteLogoutFailed from the Discourse API propagates after the local
        sessions have already been invalidated.
        """
        invalidated = 0
        if global_logout and not self._settings.logout_offer_global_option_to_user:
            logger.info("logout.global_option_not_offered", local_id=local_id)
            global_logout = False

        if global_logout:
            invalidated = self._directory.invalidate_all_sessions(local_id)
            self._host.on_sessions_invalidated(local_id, invalidated)
            if self._settings.logout_forward_to_discourse:
                discourse_id = self._store.lookup_discourse_id_by_local_id(local_id)
                if discourse_id is None:
                    logger.info("logout.not_linked", local_id=local_id)
                else:
                    self._api.logout(discourse_id)

        if not self._settings.logout_forward_to_discourse:
            return LogoutOutcome(redirect_url=None, sessions_invalidated=invalidated)

        request = self._protocol.build_outbound_request(
            new_nonce(), return_url, is_probe=False, is_logout=True
        )
        logger.info("logout.forward_to_discourse", local_id=local_id)
        return LogoutOutcome(redirect_url=request.redirect_url, sessions_invalidated=invalidated)
