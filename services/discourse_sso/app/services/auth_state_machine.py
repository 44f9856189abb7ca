"""
Interactive login against the Discourse SSO provider.

The same entry point serves both halves of the round trip. With no state in
the session it issues a nonce and sends the browser to Discourse; with a
nonce in the session it validates the provider's answer and reconciles the
identity. Outcomes are values: the router turns them into responses.
"""
from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass

from ..core.config import Settings
from ..core.errors import LockTimeout, UnexpectedAuthState
from ..core.logging import get_logger
from ..host.interfaces import SessionStore
from ..schemas.auth_state import (
    Completed,
    Failed,
    IntentCookie,
    NonceIssued,
    NoState,
    Probe,
)
from ..schemas.identity import LocalUserInfo, SsoCredentials
from .discourse_lock import DiscourseIdLock
from .link_store import IdentityLinkStore
from .reconciler import IdentityReconciler
from .sso_protocol import SsoProtocol, new_nonce

logger = get_logger(__name__)


class AuthenticationDeclined(Exception):
    """Discourse answered with ``failed=true`` to a non-quiet request."""


@dataclass(frozen=True)
class RedirectToProvider:
    url: str
    intent: IntentCookie = IntentCookie.NO_MORE


@dataclass(frozen=True)
class QuietReturn:
    url: str


@dataclass(frozen=True)
class Authenticated:
    local_info: LocalUserInfo
    credentials: SsoCredentials
    return_to: str
    intent: IntentCookie = IntentCookie.DESIRED


@dataclass(frozen=True)
class AuthFailed:
    message: str
    intent: IntentCookie = IntentCookie.NO_MORE


AuthOutcome = RedirectToProvider | QuietReturn | Authenticated | AuthFailed


class AuthenticationStateMachine:
    def __init__(
        self,
        settings: Settings,
        protocol: SsoProtocol,
        sessions: SessionStore,
        reconciler: IdentityReconciler,
        lock: DiscourseIdLock,
        store: IdentityLinkStore,
        nonce_factory: Callable[[], str] = new_nonce,
    ) -> None:
        self._settings = settings
        self._protocol = protocol
        self._sessions = sessions
        self._reconciler = reconciler
        self._lock = lock
        self._store = store
        self._nonce_factory = nonce_factory

    @property
    def return_address(self) -> str:
        return f"{self._settings.public_base_url}/sso/login"

    def authenticate(
        self,
        params: Mapping[str, str],
        intent_cookie: IntentCookie | None,
        return_to: str = "/",
    ) -> AuthOutcome:
        if not self._settings.sso_enable:
            return AuthFailed("Discourse SSO is not enabled.")

        state = self._sessions.get_auth_state()
        try:
            if isinstance(state, NoState):
                return self._initiate(Probe.from_cookie(intent_cookie), return_to)
            if isinstance(state, NonceIssued):
                return self._complete(params, state)
            logger.warning("sso.unexpected_state", kind=state.kind)
            raise UnexpectedAuthState(f"Unknown protocol state error ({state.kind}).")
        except LockTimeout:
            # Transient; the nonce stays in the session so the same answer can be retried.
            raise
        except Exception as exc:  # noqa: BLE001 - every failure becomes a failed login
            message = str(exc) or type(exc).__name__
            logger.warning("sso.authentication_failed", error=message, error_type=type(exc).__name__)
            self._sessions.set_auth_state(Failed(message=message))
            return AuthFailed(message)

    def finalize_link(self, local_id: int) -> Completed:
        """Record the host-assigned local id for a completed login and persist the link."""
        state = self._sessions.get_auth_state()
        if not isinstance(state, Completed):
            raise UnexpectedAuthState(f"Cannot finalize link from state '{state.kind}'.")

        if state.local_info.id is None:
            state = state.model_copy(
                update={"local_info": state.local_info.model_copy(update={"id": local_id})}
            )
            self._sessions.set_auth_state(state)
        elif state.local_info.id != local_id:
            raise UnexpectedAuthState(
                f"Host reported local id {local_id}, expected {state.local_info.id}."
            )

        self._lock.acquire(state.credentials.discourse_id)
        self._store.upsert_link(state.credentials.discourse_id, local_id)
        return state

    def _initiate(self, probe: Probe | None, return_to: str) -> RedirectToProvider:
        nonce = self._nonce_factory()
        self._sessions.set_auth_state(NonceIssued(nonce=nonce, probe=probe, return_to=return_to))
        request = self._protocol.build_outbound_request(
            nonce, self.return_address, is_probe=probe is not None
        )
        logger.info("sso.initiated", probe=probe.value if probe else None)
        return RedirectToProvider(request.redirect_url)

    def _complete(self, params: Mapping[str, str], state: NonceIssued) -> AuthOutcome:
        credentials = self._protocol.validate_and_unpack(params, state.nonce)
        if credentials is None:
            if state.probe is Probe.QUIET:
                logger.info("sso.quiet_probe_declined", return_to=state.return_to)
                self._sessions.clear_auth_state()
                return QuietReturn(state.return_to)
            raise AuthenticationDeclined("Authentication failed/declined/aborted.")

        self._lock.acquire(credentials.discourse_id)
        local_info = self._reconciler.resolve(credentials)
        self._sessions.set_auth_state(
            Completed(credentials=credentials, local_info=local_info, return_to=state.return_to)
        )
        logger.info(
            "sso.authenticated",
            discourse_id=credentials.discourse_id,
            local_id=local_info.id,
            username=local_info.username,
        )
        return Authenticated(local_info=local_info, credentials=credentials, return_to=state.return_to)
