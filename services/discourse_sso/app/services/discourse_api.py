from __future__ import annotations

import httpx

from ..core.config import Settings
from ..core.errors import RemoteLogoutFailed
from ..core.logging import get_logger


class DiscourseApiClient:
    """Calls to the Discourse admin REST API."""

    def __init__(self, settings: Settings, transport: httpx.BaseTransport | None = None) -> None:
        self._base_url: str = settings.discourse_url
        self._username: str | None = settings.api_username
        self._key: str | None = settings.api_key
        self._logout_endpoint: str = settings.api_logout_endpoint
        self._logout_enabled: bool = settings.api_enable_logout
        self._timeout = settings.api_timeout_seconds
        self._transport = transport
        self._logger = get_logger(__name__)

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "Api-Key": self._key or "",
            "Api-Username": self._username or "",
        }

    def logout(self, discourse_id: int) -> None:
        """Log the user out of Discourse everywhere; raises RemoteLogoutFailed otherwise."""
        if not self._logout_enabled:
            raise RemoteLogoutFailed("DiscourseApi logout is not enabled.")

        url = self._base_url + self._logout_endpoint.replace("{id}", str(discourse_id))
        self._logger.info("discourse_api.logout", discourse_id=discourse_id, url=url)
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                resp = client.post(url, headers=self._headers())
        except httpx.HTTPError as exc:
            self._logger.error("discourse_api.logout_transport_error", error=str(exc))
            raise RemoteLogoutFailed(f"Logout request for discourse_id {discourse_id} failed: {exc}") from exc

        if resp.status_code != 200:
            raise RemoteLogoutFailed(
                f"Logout of discourse_id {discourse_id} answered HTTP {resp.status_code}: {resp.text[:200]}"
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise RemoteLogoutFailed(f"Logout of discourse_id {discourse_id} returned non-JSON body") from exc
        if not isinstance(body, dict) or body.get("success") != "OK":
            raise RemoteLogoutFailed(f"Logout of discourse_id {discourse_id} was not confirmed: {body!r}")

        self._logger.info("discourse_api.logout_ok", discourse_id=discourse_id)
