"""Tests for the Discourse admin API client."""

from unittest.mock import patch

import httpx
import pytest

from services.discourse_sso.app.core.errors import RemoteLogoutFailed
from services.discourse_sso.app.services.discourse_api import DiscourseApiClient


@pytest.fixture
def api_settings(make_settings):
    def _make(**overrides):
        values = {
            "api_enable_logout": True,
            "api_username": "system",
            "api_key": "api-key-123",
        }
        values.update(overrides)
        return make_settings(**values)

    return _make


def _client(settings, handler) -> DiscourseApiClient:
    return DiscourseApiClient(settings, transport=httpx.MockTransport(handler))


class TestLogout:
    """Tests for DiscourseApiClient.logout."""

    def test_success(self, api_settings):
        """Test the request shape and a confirmed logout."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": "OK"})

        _client(api_settings(), handler).logout(42)

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "https://forum.example.org/admin/users/42/log_out"
        assert request.headers["Api-Key"] == "api-key-123"
        assert request.headers["Api-Username"] == "system"
        assert request.headers["Accept"] == "application/json"

    def test_custom_endpoint(self, api_settings):
        """Test that the endpoint template is honored."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json={"success": "OK"})

        settings = api_settings(api_logout_endpoint="/custom/{id}/logout")
        _client(settings, handler).logout(5)

        assert seen == ["https://forum.example.org/custom/5/logout"]

    def test_disabled(self, make_settings):
        """Test that logout is refused while the API is disabled."""
        with pytest.raises(RemoteLogoutFailed):
            DiscourseApiClient(make_settings()).logout(42)

    def test_http_error_status(self, api_settings):
        """Test that a non-200 answer is a failure."""
        client = _client(api_settings(), lambda request: httpx.Response(403, text="forbidden"))

        with pytest.raises(RemoteLogoutFailed) as exc_info:
            client.logout(42)

        assert "HTTP 403" in str(exc_info.value)

    def test_non_json_body(self, api_settings):
        """Test that an unreadable answer is a failure."""
        client = _client(api_settings(), lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(RemoteLogoutFailed):
            client.logout(42)

    def test_not_confirmed(self, api_settings):
        """Test that a JSON answer without success=OK is a failure."""
        client = _client(api_settings(), lambda request: httpx.Response(200, json={"success": "no"}))

        with pytest.raises(RemoteLogoutFailed):
            client.logout(42)

    def test_transport_error(self, api_settings):
        """Test that connection problems become RemoteLogoutFailed."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(RemoteLogoutFailed) as exc_info:
            _client(api_settings(), handler).logout(42)

        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    def test_timeout_passed_to_http_client(self, api_settings):
        """Test that the configured timeout is used."""
        with patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.post.return_value = httpx.Response(
                200, json={"success": "OK"}
            )

            DiscourseApiClient(api_settings(api_timeout_seconds=3.5)).logout(42)

        assert mock_client.call_args.kwargs["timeout"] == 3.5
