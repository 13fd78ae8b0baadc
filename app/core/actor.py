"""
Actor identity passed into every engine operation.

Identity is resolved by the request boundary (auth gateway, SSO, etc.);
the engine only records who acted, it never authenticates.
"""

from __future__ import annotations

from dataclasses import dataclass

SYSTEM_ACTOR_ID = "system"


@dataclass(frozen=True)
class Actor:
    """Already-authenticated caller."""

    id: str
    name: str | None = None
    email: str | None = None
    ip_address: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.email or self.id

    @classmethod
    def system(cls) -> "Actor":
        return cls(id=SYSTEM_ACTOR_ID, name="System")
