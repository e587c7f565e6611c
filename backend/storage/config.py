"""
Centralized storage configuration for the two object stores.

Intent:
    Provide a single source of truth for bucket names, credentials, timeouts
    and size limits used by the resource store (lesson files) and the
    submission store (student attachments). Prevents drift across modules and
    enables simple testing.

Behavior:
    - Each store is configured independently (URL, service key, bucket). The
      two must never share one client instance.
    - Numeric settings are parsed defensively: invalid or non-positive values
      fall back to defaults and are clamped to a contract maximum.

Permissions:
    Pure configuration; no external calls or privileges required.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum


RESOURCES_BUCKET_DEFAULT = "resources"
SUBMISSIONS_BUCKET_DEFAULT = "submissions"


class StoreKind(str, Enum):
    RESOURCES = "resources"
    SUBMISSIONS = "submissions"


@dataclass(frozen=True, slots=True)
class StoreSettings:
    """Connection settings for one object store."""

    kind: StoreKind
    url: str
    service_key: str
    bucket: str

    @property
    def configured(self) -> bool:
        return bool(self.url and self.service_key)


_ENV_PREFIX = {
    StoreKind.RESOURCES: "RESOURCE_STORE",
    StoreKind.SUBMISSIONS: "SUBMISSION_STORE",
}

_BUCKET_DEFAULT = {
    StoreKind.RESOURCES: RESOURCES_BUCKET_DEFAULT,
    StoreKind.SUBMISSIONS: SUBMISSIONS_BUCKET_DEFAULT,
}


def get_store_settings(kind: StoreKind) -> StoreSettings:
    """Return settings for `kind` from `{RESOURCE,SUBMISSION}_STORE_{URL,KEY,BUCKET}`."""
    prefix = _ENV_PREFIX[kind]
    return StoreSettings(
        kind=kind,
        url=(os.getenv(f"{prefix}_URL") or "").strip().rstrip("/"),
        service_key=(os.getenv(f"{prefix}_KEY") or "").strip(),
        bucket=(os.getenv(f"{prefix}_BUCKET") or _BUCKET_DEFAULT[kind]).strip(),
    )


def get_resources_bucket() -> str:
    return get_store_settings(StoreKind.RESOURCES).bucket


def get_submissions_bucket() -> str:
    return get_store_settings(StoreKind.SUBMISSIONS).bucket


# --- Numeric limits ------------------------------------------------------------

def _parse_int_env(name: str, default: int, *, contract_max: int | None = None, allow_zero: bool = False) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value < 0 or (value == 0 and not allow_zero):
        return default
    if isinstance(contract_max, int) and contract_max > 0:
        value = min(value, contract_max)
    return value


def get_storage_timeout_seconds() -> int:
    """Bound for every gateway call (default 20s, clamped to 120s)."""
    return _parse_int_env("STORAGE_TIMEOUT_SECONDS", 20, contract_max=120)


def get_upload_retries() -> int:
    """Extra upload attempts after the first failure (default 2, max 5)."""
    return _parse_int_env("STORAGE_UPLOAD_RETRIES", 2, contract_max=5, allow_zero=True)


def get_delete_concurrency() -> int:
    """Parallel deletes per store batch (default 8, max 32)."""
    return _parse_int_env("STORAGE_DELETE_CONCURRENCY", 8, contract_max=32)


def get_download_url_ttl_seconds() -> int:
    return _parse_int_env("DOWNLOAD_URL_TTL_SECONDS", 3600, contract_max=7 * 24 * 3600)


def get_upload_url_ttl_seconds() -> int:
    return _parse_int_env("UPLOAD_URL_TTL_SECONDS", 300, contract_max=3600)


def get_resource_max_upload_bytes() -> int:
    """Maximum upload size for lesson resources (default/clamped 50 MiB)."""
    contract_max = 50 * 1024 * 1024
    return _parse_int_env("RESOURCE_MAX_UPLOAD_BYTES", contract_max, contract_max=contract_max)


__all__ = [
    "RESOURCES_BUCKET_DEFAULT",
    "SUBMISSIONS_BUCKET_DEFAULT",
    "StoreKind",
    "StoreSettings",
    "get_store_settings",
    "get_resources_bucket",
    "get_submissions_bucket",
    "get_storage_timeout_seconds",
    "get_upload_retries",
    "get_delete_concurrency",
    "get_download_url_ttl_seconds",
    "get_upload_url_ttl_seconds",
    "get_resource_max_upload_bytes",
]
