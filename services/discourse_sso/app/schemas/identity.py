from pydantic import BaseModel, Field


class SsoCredentials(BaseModel):
    """Identity of a Discourse user, from a signed SSO payload or a webhook record."""

    discourse_id: int = Field(gt=0)
    username: str
    name: str = ""
    email: str = ""
    # "".split(",") == [""]; callers tolerate the empty-string element
    groups: list[str] = Field(default_factory=list)
    is_admin: bool = False
    is_moderator: bool = False


class LocalUserInfo(BaseModel):
    """What the site should know about the local account for a Discourse user.

    ``id`` is None while the account still has to be created.
    """

    id: int | None = None
    username: str
    realname: str = ""
    email: str = ""
