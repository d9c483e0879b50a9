from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from chatrelay.storage.models import ChatSession


@dataclass(frozen=True)
class AuthenticatedActor:
    user_id: str
    username: str = ""
    role: str = "user"

    @property
    def identifier(self) -> str:
        return f"user:{self.user_id}"

    @property
    def is_admin(self) -> bool:
        return self.role.lower() == "admin"


@dataclass(frozen=True)
class AnonymousActor:
    key: str

    @property
    def identifier(self) -> str:
        return f"anon:{self.key}"

    @property
    def is_admin(self) -> bool:
        return False


Actor = Union[AuthenticatedActor, AnonymousActor]


def owns_session(actor: Actor, session: ChatSession) -> bool:
    if isinstance(actor, AuthenticatedActor):
        return session.user_id == actor.user_id
    if isinstance(actor, AnonymousActor):
        return session.user_id is None and session.anonymous_key == actor.key
    raise TypeError(f"unsupported actor type: {type(actor).__name__}")
