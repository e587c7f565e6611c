"""
Shared web security helpers for the Teaching and Learning adapters.

Contains the caller resolution, role checks and the CSRF same-origin check.
Keeping a single implementation avoids security drift between routers.
"""
from __future__ import annotations

import os
from typing import Optional, Tuple
from urllib.parse import urlparse

from fastapi import Request
from fastapi.responses import JSONResponse

from backend.identity_access.domain import Actor

from .responses import private_error


def current_actor(request: Request) -> Optional[Actor]:
    """Build the caller from the context the auth middleware placed on the request."""
    user = getattr(request.state, "user", None)
    if not isinstance(user, dict) or not user.get("sub"):
        return None
    roles = user.get("roles") or []
    if not isinstance(roles, (list, tuple, set, frozenset)):
        roles = []
    return Actor.of(str(user["sub"]), *roles, email=user.get("email"))


def require_roles(request: Request, *roles: str) -> Tuple[Optional[Actor], Optional[JSONResponse]]:
    """Return (actor, error_response) ensuring the caller holds one of `roles`.

    With no roles given, any authenticated caller passes.
    """
    actor = current_actor(request)
    if actor is None:
        return None, private_error({"error": "unauthenticated"}, status_code=401)
    if roles and not any(r in actor.roles for r in roles):
        return None, private_error({"error": "forbidden"}, status_code=403)
    return actor, None


def _parse_origin(url: str) -> Tuple[str, str, int]:
    p = urlparse(url)
    if not p.scheme or not p.hostname:
        raise ValueError("invalid_origin")
    scheme = p.scheme.lower()
    port = p.port if p.port is not None else (443 if scheme == "https" else 80)
    return scheme, p.hostname.lower(), int(port)


def _server_origin(request: Request) -> Tuple[str, str, int]:
    trust_proxy = (os.getenv("COURSEFILES_TRUST_PROXY", "false") or "").lower() == "true"
    if trust_proxy:
        proto = (request.headers.get("x-forwarded-proto") or request.url.scheme or "http").split(",")[0].strip()
        host = (request.headers.get("x-forwarded-host") or request.headers.get("host") or "").split(",")[0].strip()
        if host:
            return _parse_origin(f"{proto}://{host}")
    scheme = (request.url.scheme or "http").lower()
    host = (request.url.hostname or "").lower()
    port = int(request.url.port) if request.url.port else (443 if scheme == "https" else 80)
    return scheme, host, port


def _is_same_origin(request: Request) -> bool:
    """Verify same-origin using Origin or Referer headers.

    Behavior:
    - If Origin is present, require exact scheme/host/port match with server.
    - Else if Referer is present, validate its origin similarly.
    - Else (no headers): allow to not break non-browser clients.
    Proxy awareness: Only trust X-Forwarded-* when COURSEFILES_TRUST_PROXY=true.
    """
    claimed = request.headers.get("origin") or request.headers.get("referer")
    if not claimed:
        return True
    try:
        return _parse_origin(claimed) == _server_origin(request)
    except ValueError:
        return False


def csrf_guard(request: Request) -> Optional[JSONResponse]:
    """Reject cross-site browser writes with 403 `csrf_violation`."""
    if not _is_same_origin(request):
        return private_error({"error": "forbidden", "detail": "csrf_violation"}, status_code=403)
    return None


__all__ = ["current_actor", "require_roles", "csrf_guard"]
