"""
DiscourseConnect (Discourse SSO) message handling.

Outbound: ``sso`` is base64 of a form-encoded payload and ``sig`` is the hex
HMAC-SHA256 of that base64 string under the shared secret.

Inbound responses are checked in a fixed order: parameters present,
signature, decoding, nonce, then the ``failed`` flag. Checking the signature
before the nonce keeps unauthenticated callers from learning anything about
nonces.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
import secrets
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode

from ..core.config import Settings
from ..core.errors import (
    InvalidExternalId,
    MalformedPayload,
    MissingParameters,
    NonceMismatch,
    SignatureMismatch,
)
from ..core.logging import get_logger
from ..schemas.identity import SsoCredentials

logger = get_logger(__name__)


def new_nonce() -> str:
    return secrets.token_hex(16)


def sign_payload(payload: str, shared_secret: str) -> str:
    mac = hmac.new(shared_secret.encode("utf-8"), msg=payload.encode("utf-8"), digestmod=hashlib.sha256)
    return mac.hexdigest()


def pack_payload(fields: Mapping[str, str]) -> str:
    return base64.b64encode(urlencode(fields).encode("utf-8")).decode("ascii")


def unpack_payload(packed: str) -> dict[str, str]:
    try:
        decoded = base64.b64decode(packed, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise MalformedPayload(f"Failed to decode payload '{packed}'") from exc
    return dict(parse_qsl(decoded, keep_blank_values=True))


@dataclass(frozen=True)
class OutboundRequest:
    url: str
    params: dict[str, str]

    @property
    def redirect_url(self) -> str:
        return f"{self.url}?{urlencode(self.params)}"


class SsoProtocol:
    def __init__(self, settings: Settings) -> None:
        self._provider_url = f"{settings.discourse_url}{settings.sso_provider_endpoint}"
        self._shared_secret = settings.sso_shared_secret or ""

    def build_outbound_request(
        self,
        nonce: str,
        return_url: str,
        is_probe: bool = False,
        is_logout: bool = False,
    ) -> OutboundRequest:
        fields = {"nonce": nonce, "return_sso_url": return_url}
        if is_probe:
            fields["prompt"] = "none"
        if is_logout:
            fields["logout"] = "true"
        payload = pack_payload(fields)
        logger.info(
            "sso.outbound_request",
            provider=self._provider_url,
            return_url=return_url,
            is_probe=is_probe,
            is_logout=is_logout,
        )
        return OutboundRequest(
            url=self._provider_url,
            params={"sso": payload, "sig": sign_payload(payload, self._shared_secret)},
        )

    def validate_and_unpack(
        self, params: Mapping[str, str], original_nonce: str
    ) -> SsoCredentials | None:
        """Verify a provider response; None means the provider declined the login."""
        sso = params.get("sso")
        sig = params.get("sig")
        if not sso or not sig:
            raise MissingParameters("Missing sso or sig parameters in Discourse SSO response.")

        expected = sign_payload(sso, self._shared_secret)
        if not hmac.compare_digest(expected.encode("utf-8"), sig.encode("utf-8")):
            raise SignatureMismatch("sig does not match hashed sso payload.")

        fields = unpack_payload(sso)

        if fields.get("nonce") != original_nonce:
            raise NonceMismatch("Response nonce does not match request.")

        if fields.get("failed", "false") == "true":
            logger.info("sso.declined")
            return None

        return credentials_from_fields(fields)


def credentials_from_fields(fields: Mapping[str, str]) -> SsoCredentials:
    raw_id = fields.get("external_id", "")
    if not re.fullmatch(r"[0-9]+", raw_id):
        raise InvalidExternalId(f"Invalid discourse_id ({raw_id!r}) received.")
    discourse_id = int(raw_id)
    if discourse_id <= 0:
        raise InvalidExternalId(f"Invalid discourse_id ({discourse_id}) received.")

    if "username" not in fields:
        raise MalformedPayload("SSO response carries no username.")

    return SsoCredentials(
        discourse_id=discourse_id,
        username=fields["username"],
        name=fields.get("name", ""),
        email=fields.get("email", ""),
        groups=fields.get("groups", "").split(","),
        is_admin=fields.get("admin") == "true",
        is_moderator=fields.get("moderator") == "true",
    )
