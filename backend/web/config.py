"""
Configuration and startup security checks.

Why: Coursework files are personal data and storage is billed per byte. This
module provides a single guard that enforces minimal production safety
constraints without burdening local development.

Permissions: The caller needs no special privileges. The function simply reads
environment variables and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import os

from backend.storage.config import StoreKind, get_store_settings

_DUMMY_KEYS = {"DUMMY_DO_NOT_USE", "CHANGE_ME", "CHANGEME"}


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def current_env() -> str:
    return (os.getenv("COURSEFILES_ENV", "dev") or "dev").strip().lower()


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Checks (prod/stage only):
    - Each object store has a URL and a real (non-placeholder) service key.
    - The resource store and the submission store are not the same bucket on
      the same endpoint.
    - DATABASE_URL is set and does not explicitly disable TLS.
    """
    if not _is_prod_like(current_env()):
        return  # dev/test remain permissive

    settings = {kind: get_store_settings(kind) for kind in StoreKind}
    for kind, store in settings.items():
        if not store.configured:
            raise SystemExit(f"Refusing to start: the {kind.value} store URL/key is unset in production.")
        key = store.service_key.upper()
        if key in _DUMMY_KEYS or key.startswith("CHANGE_ME"):
            raise SystemExit(f"Refusing to start: the {kind.value} store key is a placeholder in production.")

    res, sub = settings[StoreKind.RESOURCES], settings[StoreKind.SUBMISSIONS]
    if res.url == sub.url and res.bucket == sub.bucket:
        raise SystemExit(
            "Refusing to start: resource and submission stores point at the same bucket. Configure separate stores."
        )

    dsn = (os.getenv("DATABASE_URL") or "").strip()
    if not dsn:
        raise SystemExit("Refusing to start: DATABASE_URL is unset in production.")
    if "sslmode=disable" in dsn:
        raise SystemExit(
            "Refusing to start: DATABASE_URL contains sslmode=disable in production. Use sslmode=require or verify TLS."
        )

    if (os.getenv("AUTO_CREATE_STORAGE_BUCKETS", "false") or "").strip().lower() == "true":
        raise SystemExit("Refusing to start: AUTO_CREATE_STORAGE_BUCKETS must be false in production/staging.")


__all__ = ["ensure_secure_config_on_startup", "current_env"]
