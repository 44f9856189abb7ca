"""Tests for DiscourseConnect payload signing and validation."""

import base64
import hashlib
import hmac
from urllib.parse import parse_qs, urlsplit

import pytest

from services.discourse_sso.app.core.errors import (
    InvalidExternalId,
    MalformedPayload,
    MissingParameters,
    NonceMismatch,
    SignatureMismatch,
)
from services.discourse_sso.app.services.sso_protocol import (
    SsoProtocol,
    credentials_from_fields,
    new_nonce,
    pack_payload,
    sign_payload,
    unpack_payload,
)

SSO_SECRET = "sso-shared-secret-for-tests"


def _response(fields: dict, secret: str = SSO_SECRET) -> dict:
    payload = pack_payload(fields)
    return {"sso": payload, "sig": sign_payload(payload, secret)}


SIGNED = _response({"nonce": "n1", "external_id": "42", "username": "alice"})


def _replace_char(value: str, index: int) -> str:
    replacement = "1" if value[index] == "0" else "0"
    return value[:index] + replacement + value[index + 1 :]


@pytest.fixture
def protocol(sso_settings):
    return SsoProtocol(sso_settings())


class TestSigning:
    """Tests for the payload encoding helpers."""

    def test_signature_is_hmac_sha256_hex(self):
        """Test HMAC-SHA256 hex over the base64 payload string."""
        expected = hmac.new(b"secret", msg=b"bm9uY2U9YWJj", digestmod=hashlib.sha256).hexdigest()

        assert sign_payload("bm9uY2U9YWJj", "secret") == expected

    def test_pack_is_base64_of_form_encoding(self):
        """Test that the payload decodes to the form-encoded fields."""
        packed = pack_payload({"nonce": "abc", "return_sso_url": "http://site/sso/login"})

        decoded = base64.b64decode(packed).decode("utf-8")
        assert decoded == "nonce=abc&return_sso_url=http%3A%2F%2Fsite%2Fsso%2Flogin"
        assert unpack_payload(packed) == {"nonce": "abc", "return_sso_url": "http://site/sso/login"}

    def test_unpack_rejects_garbage(self):
        """Test that a payload that is not base64 is malformed."""
        with pytest.raises(MalformedPayload):
            unpack_payload("not base64!!")

    def test_nonces_are_random_hex(self):
        """Test that nonces are 32 hex characters and do not repeat."""
        first, second = new_nonce(), new_nonce()

        assert len(first) == 32
        int(first, 16)
        assert first != second


class TestOutboundRequest:
    """Tests for the redirect to the Discourse provider."""

    def test_login_request(self, protocol):
        """Test the provider URL and the signed nonce/return address."""
        request = protocol.build_outbound_request("n1", "http://testserver/sso/login")

        assert request.url == "https://forum.example.org/session/sso_provider"
        assert request.params["sig"] == sign_payload(request.params["sso"], SSO_SECRET)
        assert unpack_payload(request.params["sso"]) == {
            "nonce": "n1",
            "return_sso_url": "http://testserver/sso/login",
        }

    def test_probe_and_logout_flags(self, protocol):
        """Test that probes ask for prompt=none and logout sets logout=true."""
        probe = protocol.build_outbound_request("n1", "http://x/", is_probe=True)
        logout = protocol.build_outbound_request("n2", "http://x/", is_logout=True)

        assert unpack_payload(probe.params["sso"])["prompt"] == "none"
        assert unpack_payload(logout.params["sso"])["logout"] == "true"

    def test_redirect_url_carries_both_parameters(self, protocol):
        """Test that the redirect URL has sso and sig in its query."""
        request = protocol.build_outbound_request("n1", "http://x/")

        parts = urlsplit(request.redirect_url)
        query = parse_qs(parts.query)
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == request.url
        assert query["sso"] == [request.params["sso"]]
        assert query["sig"] == [request.params["sig"]]


class TestValidateAndUnpack:
    """Tests for checking provider responses."""

    def test_valid_response(self, protocol):
        """Test that a correctly signed response yields the credentials."""
        params = _response(
            {
                "nonce": "n1",
                "external_id": "42",
                "username": "alice",
                "name": "Alice A",
                "email": "alice@example.org",
                "groups": "staff,editors",
                "admin": "true",
                "moderator": "false",
            }
        )

        credentials = protocol.validate_and_unpack(params, "n1")

        assert credentials.discourse_id == 42
        assert credentials.username == "alice"
        assert credentials.name == "Alice A"
        assert credentials.groups == ["staff", "editors"]
        assert credentials.is_admin is True
        assert credentials.is_moderator is False

    def test_missing_parameters(self, protocol):
        """Test that sso and sig are both required."""
        with pytest.raises(MissingParameters):
            protocol.validate_and_unpack({"sso": "abc"}, "n1")
        with pytest.raises(MissingParameters):
            protocol.validate_and_unpack({}, "n1")

    def test_tampered_payload(self, protocol):
        """Test that any change to the payload breaks the signature."""
        params = _response({"nonce": "n1", "external_id": "42", "username": "alice"})
        params["sso"] = pack_payload({"nonce": "n1", "external_id": "1", "username": "admin"})

        with pytest.raises(SignatureMismatch):
            protocol.validate_and_unpack(params, "n1")

    @pytest.mark.parametrize("index", range(len(SIGNED["sso"])))
    def test_single_character_change_in_payload(self, protocol, index):
        """Test that changing any one character of sso breaks the signature."""
        params = {"sso": _replace_char(SIGNED["sso"], index), "sig": SIGNED["sig"]}

        with pytest.raises(SignatureMismatch):
            protocol.validate_and_unpack(params, "n1")

    @pytest.mark.parametrize("index", range(len(SIGNED["sig"])))
    def test_single_character_change_in_signature(self, protocol, index):
        """Test that changing any one character of sig is refused."""
        params = {"sso": SIGNED["sso"], "sig": _replace_char(SIGNED["sig"], index)}

        with pytest.raises(SignatureMismatch):
            protocol.validate_and_unpack(params, "n1")

    def test_unmodified_response_accepted(self, protocol):
        """Test that the untouched response used above validates."""
        assert protocol.validate_and_unpack(dict(SIGNED), "n1").discourse_id == 42

    def test_wrong_secret(self, protocol):
        """Test that a response signed with another secret is refused."""
        params = _response({"nonce": "n1", "external_id": "42", "username": "a"}, secret="other")

        with pytest.raises(SignatureMismatch):
            protocol.validate_and_unpack(params, "n1")

    def test_nonce_mismatch(self, protocol):
        """Test that a response to another request is refused."""
        params = _response({"nonce": "someone-else", "external_id": "42", "username": "a"})

        with pytest.raises(NonceMismatch):
            protocol.validate_and_unpack(params, "n1")

    def test_signature_checked_before_nonce(self, protocol):
        """Test that a forged response never learns whether its nonce was right."""
        params = _response({"nonce": "wrong", "external_id": "42", "username": "a"}, secret="x")

        with pytest.raises(SignatureMismatch):
            protocol.validate_and_unpack(params, "n1")

    def test_failed_flag_means_declined(self, protocol):
        """Test that failed=true returns None instead of credentials."""
        params = _response({"nonce": "n1", "failed": "true"})

        assert protocol.validate_and_unpack(params, "n1") is None

    def test_failed_false_is_not_declined(self, protocol):
        """Test that only the literal 'true' marks a declined login."""
        params = _response({"nonce": "n1", "failed": "false", "external_id": "3", "username": "a"})

        assert protocol.validate_and_unpack(params, "n1").discourse_id == 3


class TestCredentialsFromFields:
    """Tests for turning payload fields into credentials."""

    @pytest.mark.parametrize("raw", ["", "abc", "0", "-4", "1.5", "4_2", " 42 ", "+42", "42\n"])
    def test_invalid_external_id(self, raw):
        """Test that the external id must be a positive integer."""
        with pytest.raises(InvalidExternalId):
            credentials_from_fields({"external_id": raw, "username": "a"})

    def test_missing_username(self):
        """Test that a payload without username is malformed."""
        with pytest.raises(MalformedPayload):
            credentials_from_fields({"external_id": "3"})

    def test_empty_groups_keep_single_empty_entry(self):
        """Test that an empty groups field splits to one empty name."""
        credentials = credentials_from_fields({"external_id": "3", "username": "a", "groups": ""})

        assert credentials.groups == [""]

    def test_optional_fields_default_empty(self):
        """Test that absent name, email and flags default to empty/false."""
        credentials = credentials_from_fields({"external_id": "3", "username": "a"})

        assert credentials.name == ""
        assert credentials.email == ""
        assert credentials.is_admin is False
        assert credentials.is_moderator is False
