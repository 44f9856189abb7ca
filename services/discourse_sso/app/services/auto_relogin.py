"""
Decide whether an anonymous page view should silently re-authenticate.

The intent cookie remembers what happened last time: ``yes`` after a
successful login, ``no`` after a failure or logout. Without any cookie we
first check that the browser keeps cookies at all, otherwise every page
view would bounce through Discourse.
"""
from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode

from ..core.config import Settings
from ..core.logging import get_logger
from ..schemas.auth_state import IntentCookie

logger = get_logger(__name__)

COOKIE_TEST_PARAM = "DssocNoCookies"
LOGIN_PATH = "/sso/login"


@dataclass(frozen=True)
class ReloginDecision:
    redirect_url: str
    cookie: IntentCookie


def _strip_cookie_test(query: str) -> str:
    pairs = [(k, v) for k, v in parse_qsl(query, keep_blank_values=True) if k != COOKIE_TEST_PARAM]
    return urlencode(pairs)


def login_redirect(path: str, query: str) -> str:
    query = _strip_cookie_test(query)
    return_to = f"{path}?{query}" if query else path
    return f"{LOGIN_PATH}?{urlencode({'returnto': return_to})}"


def auto_relogin_enabled(settings: Settings) -> bool:
    return settings.sso_enable and (
        settings.sso_enable_seamless_login or settings.sso_enable_auto_relogin
    )


def decide(
    settings: Settings,
    *,
    method: str,
    path: str,
    query: str,
    is_logged_in: bool,
    raw_cookie: str | None,
) -> ReloginDecision | None:
    if not auto_relogin_enabled(settings):
        return None
    if method != "GET" or is_logged_in or path == LOGIN_PATH:
        logger.debug("auto_relogin.skipped", reason="post/logged-in/logging-in")
        return None

    cookie = IntentCookie.parse(raw_cookie)

    if cookie is IntentCookie.NO_MORE:
        return None

    if cookie is IntentCookie.DESIRED:
        if not settings.sso_enable_auto_relogin:
            return None
        logger.info("auto_relogin.noisy_probe", path=path)
        return ReloginDecision(login_redirect(path, query), IntentCookie.PROBING_NOISY)

    if not settings.sso_enable_seamless_login:
        return None

    if raw_cookie is not None:
        if cookie is not IntentCookie.PRESENT:
            logger.info("auto_relogin.unexpected_cookie", value=raw_cookie)
        logger.info("auto_relogin.quiet_probe", path=path)
        return ReloginDecision(login_redirect(path, query), IntentCookie.PROBING_QUIET)

    pairs = parse_qsl(query, keep_blank_values=True)
    if any(k == COOKIE_TEST_PARAM for k, _ in pairs):
        logger.info("auto_relogin.no_cookies")
        return None

    pairs.append((COOKIE_TEST_PARAM, "1"))
    return ReloginDecision(f"{path}?{urlencode(pairs)}", IntentCookie.PRESENT)
