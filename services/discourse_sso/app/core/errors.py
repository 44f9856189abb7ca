"""
Exception hierarchy for the Discourse SSO consumer.

Every failure the service raises on purpose derives from DiscourseSsoError,
so routers can tell our own failures apart from library errors.
"""


class DiscourseSsoError(Exception):
    """Base class for all service errors."""


class ConfigurationError(DiscourseSsoError, ValueError):
    """Settings are inconsistent; raised once at startup with every problem found."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


# --- SSO protocol -----------------------------------------------------------


class ProtocolError(DiscourseSsoError):
    """The signed SSO exchange could not be trusted or understood."""


class MissingParameters(ProtocolError):
    pass


class SignatureMismatch(ProtocolError):
    pass


class NonceMismatch(ProtocolError):
    pass


class InvalidExternalId(ProtocolError):
    pass


class MalformedPayload(ProtocolError):
    pass


class UnexpectedAuthState(ProtocolError):
    """Session held an auth state that does not fit the current step."""


# --- Reconciliation and persistence -----------------------------------------


class LockTimeout(DiscourseSsoError):
    """Another unit of work held the lock for a Discourse id for too long."""

    def __init__(self, discourse_id: int, timeout: float) -> None:
        self.discourse_id = discourse_id
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout}s waiting for lock on discourse_id {discourse_id}"
        )


class PersistenceConflict(DiscourseSsoError):
    """A write would violate a uniqueness constraint of the link tables."""


class AlreadyLinkedError(PersistenceConflict):
    def __init__(self, local_id: int, discourse_id: int, linked_to: int | None = None) -> None:
        self.local_id = local_id
        self.discourse_id = discourse_id
        self.linked_to = linked_to
        detail = f" (already linked to discourse_id {linked_to})" if linked_to else ""
        super().__init__(
            f"Local user {local_id} cannot be linked to discourse_id {discourse_id}{detail}"
        )


class UsernameExhaustion(DiscourseSsoError):
    pass


class InvalidUsername(DiscourseSsoError):
    pass


class AccountCreationDenied(DiscourseSsoError):
    pass


class RemoteLogoutFailed(DiscourseSsoError):
    pass


# --- Schema ----------------------------------------------------------------


class SchemaError(DiscourseSsoError):
    pass


class FutureSchemaError(SchemaError):
    def __init__(self, installed: int, required: int) -> None:
        self.installed = installed
        self.required = required
        super().__init__(
            f"Database has schema version {installed}, but this code only "
            f"understands up to version {required}; refusing to downgrade."
        )


class SchemaOutdatedError(SchemaError):
    pass


class PatchPreconditionFailed(SchemaError):
    pass


class BrokenMetadataError(SchemaError):
    pass


# --- Webhook ---------------------------------------------------------------


class WebhookRejected(DiscourseSsoError):
    """Request failed authentication; the sender learns nothing about why."""
