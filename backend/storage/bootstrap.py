"""
Storage bucket bootstrap helpers.

Intent:
    Ensure the resource and submission buckets exist on startup (dev/stage friendly).

Security & Safety:
    - Controlled by `AUTO_CREATE_STORAGE_BUCKETS=true` env flag.
    - Each store is provisioned with its own service key; keys are never mixed.
    - Idempotent: lists buckets first, creates only missing ones.

Usage:
    Call `ensure_buckets_from_env()` after wiring the storage gateways.
"""
from __future__ import annotations

import logging
import os
from typing import Iterable

import requests

from .config import StoreKind, get_store_settings

_log = logging.getLogger("coursefiles.storage")

_TIMEOUT = (3, 10)


def _env_flag(name: str, default: str = "false") -> bool:
    return (os.getenv(name, default) or "").strip().lower() == "true"


def _headers(key: str) -> dict[str, str]:
    return {"apikey": key, "Authorization": f"Bearer {key}"}


def _list_buckets(base_url: str, key: str) -> list[dict]:
    url = f"{base_url.rstrip('/')}/storage/v1/bucket"
    try:
        resp = requests.get(url, headers=_headers(key), timeout=_TIMEOUT)
    except requests.RequestException as exc:
        _log.warning("list buckets failed: error=%s", type(exc).__name__)
        return []
    _log.debug("GET /storage/v1/bucket status=%s", resp.status_code)
    try:
        data = resp.json()
    except ValueError:
        data = []
    return data if isinstance(data, list) else []


def _create_bucket(base_url: str, key: str, name: str) -> bool:
    url = f"{base_url.rstrip('/')}/storage/v1/bucket"
    headers = dict(_headers(key), **{"Content-Type": "application/json"})
    try:
        resp = requests.post(url, headers=headers, json={"name": name, "public": False}, timeout=_TIMEOUT)
    except requests.RequestException as exc:
        _log.warning("create bucket '%s' failed: error=%s", name, type(exc).__name__)
        return False
    if resp.status_code >= 300:
        _log.warning("create bucket '%s' failed: status=%s body=%s", name, resp.status_code, resp.text)
        return False
    _log.debug("POST /storage/v1/bucket status=%s created='%s'", resp.status_code, name)
    return True


def ensure_buckets(base_url: str, key: str, buckets: Iterable[str]) -> list[str]:
    """Ensure each bucket in `buckets` exists (private); return the names created.

    Parameters:
        base_url: Storage API base (e.g., http://127.0.0.1:54321)
        key: Service key for server-side administration of this store
        buckets: Bucket names to ensure exist

    Behavior:
        Lists existing buckets and creates only missing ones. Non-2xx responses
        are logged (e.g., 409/403/503) and do not raise.
    """
    existing = {str(it.get("name") or it.get("id") or "") for it in _list_buckets(base_url, key)}
    created: list[str] = []
    for name in sorted(set(buckets)):
        if not name or name in existing:
            continue
        if _create_bucket(base_url, key, name):
            created.append(name)
    return created


def ensure_buckets_from_env() -> bool:
    """Provision each store's bucket when AUTO_CREATE_STORAGE_BUCKETS=true.

    Returns False when the flag is off; otherwise True after attempting every
    configured store (stores without credentials are skipped).
    """
    if not _env_flag("AUTO_CREATE_STORAGE_BUCKETS"):
        return False
    _log.warning(
        "AUTO_CREATE_STORAGE_BUCKETS=true detected (dev/test convenience only). Disable this flag in prod/stage environments."
    )
    for kind in StoreKind:
        settings = get_store_settings(kind)
        if not settings.configured:
            _log.info("bucket bootstrap skipped store=%s reason=not_configured", kind.value)
            continue
        ensure_buckets(settings.url, settings.service_key, [settings.bucket])
    return True


__all__ = ["ensure_buckets_from_env", "ensure_buckets"]
