"""
Discourse webhook deliveries.

Discourse signs the raw body but sends no timestamp, so the source IP
allowlist is the only protection against replayed deliveries. Replays are
harmless anyway: every write is an upsert.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Mapping
from typing import Any

from ..core.config import Settings
from ..core.errors import InvalidExternalId, MalformedPayload, WebhookRejected
from ..core.logging import get_logger
from ..host.interfaces import AuthHost, Clock, UserDirectory
from ..schemas.identity import LocalUserInfo, SsoCredentials
from .discourse_lock import DiscourseIdLock
from .link_store import IdentityLinkStore
from .reconciler import IdentityReconciler

logger = get_logger(__name__)

SIGNATURE_HEADER = "x-discourse-event-signature"

KNOWN_USER_EVENTS = (
    "user_created",
    "user_confirmed_email",
    "user_approved",
    "user_logged_in",
    "user_updated",
    "user_logged_out",
    "user_destroyed",
)

LOGOUT_EVENTS = ("user_logged_out", "user_destroyed")


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), msg=body, digestmod=hashlib.sha256).hexdigest()


def credentials_from_user_record(user: Mapping[str, Any]) -> SsoCredentials:
    discourse_id = user.get("id")
    if not isinstance(discourse_id, int) or isinstance(discourse_id, bool) or discourse_id <= 0:
        raise InvalidExternalId(f"Invalid discourse_id ({discourse_id!r}) in user record.")
    return SsoCredentials(
        discourse_id=discourse_id,
        username=user["username"],
        name=user.get("name") or "",
        email=user.get("email") or "",
        groups=[g["name"] for g in user.get("groups") or []],
        is_admin=bool(user.get("admin")),
        is_moderator=bool(user.get("moderator")),
    )


class WebhookIngestor:
    def __init__(
        self,
        settings: Settings,
        store: IdentityLinkStore,
        reconciler: IdentityReconciler,
        directory: UserDirectory,
        host: AuthHost,
        lock: DiscourseIdLock,
        clock: Clock,
    ) -> None:
        self._settings = settings
        self._store = store
        self._reconciler = reconciler
        self._directory = directory
        self._host = host
        self._lock = lock
        self._clock = clock

    def validate(self, raw_body: bytes, headers: Mapping[str, str], source_ip: str | None) -> None:
        """Authenticate the delivery; failures raise WebhookRejected."""
        if not self._settings.webhook_enable:
            raise WebhookRejected("Webhook is not configured/enabled.")

        if source_ip not in self._settings.webhook_allowed_ip_list:
            raise WebhookRejected(f"Sender IP {source_ip} not in allowed list")

        lowered = {k.lower(): v for k, v in headers.items()}
        posted = lowered.get(SIGNATURE_HEADER)
        if not posted:
            raise WebhookRejected("Empty/missing X-Discourse-Event-Signature header")
        if not posted.startswith("sha256="):
            raise WebhookRejected("Signature is not sha256.")

        computed = compute_signature(self._settings.webhook_shared_secret or "", raw_body)
        if not hmac.compare_digest(posted[len("sha256="):].encode("utf-8"), computed.encode("utf-8")):
            raise WebhookRejected("Signature mismatch")

    def handle(
        self,
        event_type: str | None,
        event_name: str | None,
        event_id: str | None,
        raw_body: bytes,
        headers: Mapping[str, str],
        source_ip: str | None,
    ) -> str:
        self.validate(raw_body, headers, source_ip)

        event_type = _require(event_type, "X-Discourse-Event-Type")
        event_name = _require(event_name, "X-Discourse-Event")
        event_id_value = int(_require(event_id, "X-Discourse-Event-Id"))
        payload = _decode_body(raw_body)

        logger.info(
            "webhook.received", event_type=event_type, event_name=event_name, event_id=event_id_value
        )
        if event_type == "ping":
            return self._handle_ping(event_name, payload)
        if event_type == "user":
            return self._handle_user_event(event_name, event_id_value, payload)
        return f"NON-HANDLED EVENT TYPE '{event_type}'\n"

    def _handle_ping(self, event_name: str, payload: dict[str, Any]) -> str:
        if event_name != "ping":
            raise MalformedPayload(f"Expected event to be 'ping', not '{event_name}'.")
        return f"PONG\n{json.dumps(payload, indent=2)}\n"

    def _handle_user_event(self, event_name: str, event_id: int, payload: dict[str, Any]) -> str:
        if event_name in self._settings.webhook_ignored_events:
            logger.info("webhook.ignored_event", event_name=event_name)
            return f"IGNORED USER EVENT '{event_name}'\n"
        if event_name not in KNOWN_USER_EVENTS:
            logger.info("webhook.unrecognized_event", event_name=event_name)
            return f"UNRECOGNIZED USER EVENT '{event_name}'\n"

        user = payload.get("user")
        if not isinstance(user, dict):
            raise MalformedPayload("User event carries no 'user' record.")
        credentials = credentials_from_user_record(user)

        self._lock.acquire(credentials.discourse_id)
        info = self._reconciler.resolve(credentials)

        if info.id is not None or event_name != "user_destroyed":
            info = self._provision(info, credentials)

        if info.id is not None:
            if event_name in LOGOUT_EVENTS and self._settings.logout_handle_event_from_discourse:
                count = self._directory.invalidate_all_sessions(info.id)
                logger.info("webhook.global_logout", local_id=info.id, sessions=count)
                self._host.on_sessions_invalidated(info.id, count)
            self._store.upsert_user_record(
                credentials.discourse_id, user, event_name, event_id, self._clock.now()
            )
        else:
            logger.info("webhook.unlinked_destroy_skipped", discourse_id=credentials.discourse_id)

        return (
            "WIKI USER:\n"
            f"{info.model_dump_json(indent=2)}\n"
            "\n"
            "CREDENTIALS:\n"
            f"{credentials.model_dump_json(indent=2)}\n"
        )

    def _provision(self, info: LocalUserInfo, credentials: SsoCredentials) -> LocalUserInfo:
        """Create the account if needed (host policy may refuse), then link it and sync groups."""
        local_id = self._host.on_authenticated(info)
        if info.id is None:
            logger.info("webhook.account_created", discourse_id=credentials.discourse_id, local_id=local_id)
        self._store.upsert_link(credentials.discourse_id, local_id)
        self._reconciler.populate_groups(local_id, credentials)
        return info.model_copy(update={"id": local_id})


def _require(value: str | None, header: str) -> str:
    if not value:
        raise MalformedPayload(f"Empty/missing {header} header")
    return value


def _decode_body(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except ValueError as exc:
        raise MalformedPayload(f"Webhook body is not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedPayload("Webhook body is not a JSON object.")
    return payload
