from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session
from starlette.responses import Response

from ....core.config import Settings
from ....core.errors import RemoteLogoutFailed
from ....core.logging import get_logger
from ....core.observability import SSO_LOGINS
from ....core.unit_of_work import UnitOfWork
from ....host.site import SqlSessionStore
from ....schemas.auth_state import IntentCookie
from ....services.auth_state_machine import (
    Authenticated,
    AuthenticationStateMachine,
    AuthFailed,
    QuietReturn,
    RedirectToProvider,
)
from ....services.components import build_components
from ....services.logout import LogoutService
from ...deps import get_app_settings, get_db_session

router = APIRouter(prefix="/sso", tags=["sso"])
logger = get_logger(__name__)


def safe_return_to(value: str | None) -> str:
    """Only same-site paths; anything else goes to the front page."""
    if not value or not value.startswith("/") or value.startswith("//") or "\\" in value:
        return "/"
    return value


def _set_cookies(
    response: Response, settings: Settings, token: str, intent: IntentCookie | None
) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        token,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
    )
    if intent is not None:
        response.set_cookie(
            settings.auth_cookie_name,
            intent.value,
            httponly=True,
            samesite="lax",
            secure=settings.cookie_secure,
        )


@router.get("/login")
def login(
    request: Request,
    returnto: str = "/",
    session: Session = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    """
    Both halves of the SSO round trip.

    Without ``sso``/``sig`` parameters a new attempt starts and the browser is
    sent to Discourse; with them the attempt is completed.
    """
    params = dict(request.query_params)
    intent_cookie = IntentCookie.parse(request.cookies.get(settings.auth_cookie_name))

    with UnitOfWork(session) as uow:
        parts = build_components(uow, settings)
        sessions = SqlSessionStore.open(session, request.cookies.get(settings.session_cookie_name))
        if "sso" not in params:
            # A fresh start abandons whatever attempt was left in the session.
            sessions.clear_auth_state()

        machine = AuthenticationStateMachine(
            settings, parts.protocol, sessions, parts.reconciler, parts.lock, parts.store
        )
        outcome = machine.authenticate(params, intent_cookie, safe_return_to(returnto))

        intent: IntentCookie | None
        if isinstance(outcome, Authenticated):
            local_id = parts.host.on_authenticated(outcome.local_info)
            state = machine.finalize_link(local_id)
            parts.reconciler.populate_groups(local_id, state.credentials)
            sessions.bind_user(local_id)
            sessions.clear_auth_state()
            SSO_LOGINS.labels(outcome="success").inc()
            response: Response = RedirectResponse(outcome.return_to, status_code=302)
            intent = outcome.intent
        elif isinstance(outcome, RedirectToProvider):
            response = RedirectResponse(outcome.url, status_code=302)
            intent = outcome.intent
        elif isinstance(outcome, QuietReturn):
            SSO_LOGINS.labels(outcome="quiet_declined").inc()
            response = RedirectResponse(outcome.url, status_code=302)
            intent = None
        elif isinstance(outcome, AuthFailed):
            SSO_LOGINS.labels(outcome="failed").inc()
            response = JSONResponse(
                {"detail": "Authentication failed", "error": outcome.message},
                status_code=401,
            )
            intent = outcome.intent
        else:
            raise TypeError(f"Unhandled authentication outcome {outcome!r}")

        _set_cookies(response, settings, sessions.token, intent)
    return response


@router.post("/logout")
def logout(
    request: Request,
    global_logout: bool = False,
    session: Session = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    remote_error: str | None = None
    redirect_url: str | None = None

    with UnitOfWork(session) as uow:
        parts = build_components(uow, settings)
        sessions = SqlSessionStore.open(session, request.cookies.get(settings.session_cookie_name))
        user_id = sessions.user_id
        if user_id is not None:
            service = LogoutService(
                settings, parts.directory, parts.host, parts.store, parts.protocol, parts.api_client()
            )
            try:
                outcome = service.deauthenticate(
                    user_id, global_logout, return_url=f"{settings.public_base_url}/"
                )
                redirect_url = outcome.redirect_url
            except RemoteLogoutFailed as exc:
                # Local logout stands; only the Discourse side failed.
                logger.error("logout.remote_failed", local_id=user_id, error=str(exc))
                remote_error = str(exc)
        sessions.end()

    if remote_error is not None:
        response: Response = JSONResponse(
            {"detail": "Remote logout failed", "error": remote_error}, status_code=502
        )
    else:
        response = RedirectResponse(redirect_url or "/", status_code=303)
    response.set_cookie(
        settings.auth_cookie_name,
        IntentCookie.NO_MORE.value,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
    )
    response.delete_cookie(settings.session_cookie_name)
    return response
