"""Caller identity passed into every mutating operation."""

from __future__ import annotations
from dataclasses import dataclass

from schemas import ActorRole

MANAGER_ROLES = frozenset({ActorRole.OPERATOR, ActorRole.SUPERADMIN})


@dataclass(frozen=True)
class Actor:
    id: str
    role: ActorRole

    @property
    def is_manager(self) -> bool:
        return self.role in MANAGER_ROLES
