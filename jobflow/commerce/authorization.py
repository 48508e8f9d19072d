"""Authorization collaborator for override-class admin actions."""

from typing import Iterable, Protocol


class AuthorizationCheck(Protocol):
    """Decides whether an actor may force transitions past normal consent."""

    def has_override_capability(self, actor_id: str) -> bool:
        ...


class StaticAuthorization:
    """Fixed allow-list of actor ids holding the override capability."""

    def __init__(self, override_actor_ids: Iterable[str] = ()):
        self._override_ids = frozenset(a.strip() for a in override_actor_ids if a and a.strip())

    def has_override_capability(self, actor_id: str) -> bool:
        return actor_id in self._override_ids


class DenyAllAuthorization:
    """Nobody may override. Used when no authorization is configured."""

    def has_override_capability(self, actor_id: str) -> bool:
        return False
