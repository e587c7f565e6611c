"""
In-memory session store for development and tests.

Why: Keep sessions opaque to the client. Session issuance (login flows) lives
outside this service; the store only resolves an opaque id to the caller.
For production, replace with a Redis/DB-backed store exposing the same API.

Security: Cookies carry only an opaque session id. Session data stays server-side.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional
import secrets
import threading
import time

from .domain import ALLOWED_ROLES, Actor


def _now() -> int:
    return int(time.time())


@dataclass
class SessionRecord:
    session_id: str
    sub: str
    email: str
    roles: list[str]
    expires_at: Optional[int] = None

    def actor(self) -> Actor:
        return Actor.of(self.sub, *self.roles, email=self.email)


class SessionStore:
    def __init__(self):
        self._data: Dict[str, SessionRecord] = {}
        self._lock = threading.Lock()

    def create(self, *, sub: str, email: str, roles: list[str], ttl_seconds: int = 3600) -> SessionRecord:
        sid = secrets.token_urlsafe(24)
        clean_roles = [r for r in roles if r in ALLOWED_ROLES]
        rec = SessionRecord(session_id=sid, sub=sub, email=email, roles=clean_roles, expires_at=_now() + ttl_seconds)
        with self._lock:
            self._data[sid] = rec
        return rec

    def get(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            rec = self._data.get(session_id)
            if not rec:
                return None
            if rec.expires_at and rec.expires_at < _now():
                self._data.pop(session_id, None)
                return None
            return rec

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._data.pop(session_id, None)
