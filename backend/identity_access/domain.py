"""
Identity domain constants and the resolved caller.

Why:
- Centralize allowed roles to avoid drift between services and web layer.
- Give services a tiny, framework-free view of "who is calling".
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Optional

# Keep roles minimal and explicit. Immutable to prevent accidental mutation.
ALLOWED_ROLES = frozenset({"student", "lecturer", "admin"})


@dataclass(frozen=True, slots=True)
class Actor:
    sub: str
    roles: FrozenSet[str] = frozenset()
    email: Optional[str] = None

    @classmethod
    def of(cls, sub: str, *roles: str, email: Optional[str] = None) -> "Actor":
        return cls(sub=sub, roles=frozenset(r for r in roles if r in ALLOWED_ROLES), email=email)

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles

    @property
    def is_lecturer(self) -> bool:
        return "lecturer" in self.roles

    @property
    def is_student(self) -> bool:
        return "student" in self.roles


__all__ = ["ALLOWED_ROLES", "Actor"]
