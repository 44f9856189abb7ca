"""Per-session authentication state and the client-side intent cookie."""
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from .identity import LocalUserInfo, SsoCredentials


class IntentCookie(str, Enum):
    DESIRED = "yes"
    NO_MORE = "no"
    PRESENT = "present"
    PROBING_QUIET = "probing_quiet"
    PROBING_NOISY = "probing_noisy"

    @classmethod
    def parse(cls, raw: str | None) -> "IntentCookie | None":
        if raw is None:
            return None
        try:
            return cls(raw)
        except ValueError:
            return None


class Probe(str, Enum):
    QUIET = "quiet"
    NOISY = "noisy"

    @classmethod
    def from_cookie(cls, cookie: IntentCookie | None) -> "Probe | None":
        if cookie is IntentCookie.PROBING_QUIET:
            return cls.QUIET
        if cookie is IntentCookie.PROBING_NOISY:
            return cls.NOISY
        return None


class NoState(BaseModel):
    kind: Literal["none"] = "none"


class NonceIssued(BaseModel):
    kind: Literal["nonce_issued"] = "nonce_issued"
    nonce: str
    probe: Probe | None = None
    return_to: str = "/"


class Completed(BaseModel):
    kind: Literal["completed"] = "completed"
    credentials: SsoCredentials
    local_info: LocalUserInfo
    return_to: str = "/"


class Failed(BaseModel):
    kind: Literal["failed"] = "failed"
    message: str


AuthState = Annotated[Union[NoState, NonceIssued, Completed, Failed], Field(discriminator="kind")]

auth_state_adapter: TypeAdapter[AuthState] = TypeAdapter(AuthState)


def load_auth_state(raw: str | None) -> NoState | NonceIssued | Completed | Failed:
    if not raw:
        return NoState()
    return auth_state_adapter.validate_json(raw)


def dump_auth_state(state: NoState | NonceIssued | Completed | Failed) -> str | None:
    if isinstance(state, NoState):
        return None
    return state.model_dump_json()
