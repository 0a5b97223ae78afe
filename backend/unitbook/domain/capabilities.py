from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from ..models import User


class Capability(StrEnum):
    BOOK = "book"
    MANAGE_CREDITS = "manage_credits"


@dataclass(frozen=True)
class UserContext:
    user_id: int
    code: str
    capabilities: frozenset[Capability] = field(default_factory=frozenset)

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities


def capabilities_for(user: User) -> frozenset[Capability]:
    granted: set[Capability] = set()
    if user.approved and user.trained:
        granted.add(Capability.BOOK)
    if user.credit_manager:
        granted.add(Capability.MANAGE_CREDITS)
    return frozenset(granted)


def user_context(user: User) -> UserContext:
    return UserContext(user_id=user.id, code=user.code, capabilities=capabilities_for(user))
