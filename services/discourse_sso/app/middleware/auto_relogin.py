"""
Silent re-login for anonymous page views.

Only installed when seamless login or auto re-login is configured. The
decision itself lives in ``services.auto_relogin``; this layer reads the
cookies, asks the database whether the session is logged in and turns a
decision into a redirect.
"""
from typing import Callable

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response
from starlette.types import ASGIApp

from ..core.config import Settings
from ..core.logging import get_logger
from ..db import get_sessionmaker
from ..host.site import active_user_id
from ..services.auto_relogin import decide

logger = get_logger(__name__)

EXEMPT_PREFIXES = ("/sso", "/webhooks", "/v1", "/health", "/metrics", "/docs", "/openapi.json")


class AutoReloginMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, settings: Settings) -> None:
        super().__init__(app)
        self.settings = settings

    def _is_logged_in(self, token: str | None) -> bool:
        if not token:
            return False
        with get_sessionmaker()() as session:
            return active_user_id(session, token) is not None

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if request.method != "GET" or path.startswith(EXEMPT_PREFIXES):
            return await call_next(request)

        token = request.cookies.get(self.settings.session_cookie_name)
        is_logged_in = await run_in_threadpool(self._is_logged_in, token)
        decision = decide(
            self.settings,
            method=request.method,
            path=path,
            query=request.url.query,
            is_logged_in=is_logged_in,
            raw_cookie=request.cookies.get(self.settings.auth_cookie_name),
        )
        if decision is None:
            return await call_next(request)

        response = RedirectResponse(decision.redirect_url, status_code=302)
        response.set_cookie(
            self.settings.auth_cookie_name,
            decision.cookie.value,
            httponly=True,
            samesite="lax",
            secure=self.settings.cookie_secure,
        )
        return response
