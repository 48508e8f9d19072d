"""Request-scoped actor identity.

Every workflow call receives the acting party explicitly; the core has
no notion of an ambient "current user".
"""

from dataclasses import dataclass
from enum import Enum


class ActorRole(str, Enum):
    """Kinds of party that can drive a job transition."""

    CUSTOMER = "customer"
    CONTRACTOR = "contractor"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """Identity of whoever is calling the core."""

    id: str
    role: ActorRole

    def __post_init__(self):
        if not self.id or not self.id.strip():
            raise ValueError("Actor id cannot be empty")
        if not isinstance(self.role, ActorRole):
            object.__setattr__(self, "role", ActorRole(self.role))

    @classmethod
    def customer(cls, actor_id: str) -> "Actor":
        return cls(actor_id, ActorRole.CUSTOMER)

    @classmethod
    def contractor(cls, actor_id: str) -> "Actor":
        return cls(actor_id, ActorRole.CONTRACTOR)

    @classmethod
    def admin(cls, actor_id: str) -> "Actor":
        return cls(actor_id, ActorRole.ADMIN)


# Actor used by the timer sweep
SYSTEM_ACTOR = Actor(id="system", role=ActorRole.SYSTEM)
