"""
Wiring of the two storage gateways (resource store, submission store).

Why:
    App startup may occur before storage is reachable locally, leaving a store
    unwired. This module builds one adapter and one gateway per store from its
    own credentials, falls back to a Null adapter when a store is not
    configured, and lets tests inject fakes.

Security:
    Each store uses its own service key. Adapters are never shared between
    stores, so a resource delete cannot reach the submission bucket.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from backend.storage.config import StoreKind, StoreSettings, get_storage_timeout_seconds, get_store_settings
from backend.storage.gateway import StorageGateway
from backend.storage.ports import NullStorageAdapter, StorageAdapterProtocol
from backend.storage.supabase_adapter import SupabaseStorageAdapter

logger = logging.getLogger("coursefiles.web")

_LOCK = threading.Lock()
_GATEWAYS: Dict[StoreKind, StorageGateway] = {}


def _build_client(settings: StoreSettings) -> Any:
    """Return a supabase client, or a storage3 client for local non-JWT keys."""
    timeout = get_storage_timeout_seconds()
    try:
        from supabase import ClientOptions, create_client

        return create_client(settings.url, settings.service_key, options=ClientOptions(storage_client_timeout=timeout))
    except Exception as exc:
        host = (urlparse(settings.url).hostname or "").lower()
        if host not in {"127.0.0.1", "localhost"}:
            raise
        logger.warning(
            "Supabase client unavailable for store=%s: %s; falling back to storage3",
            settings.kind.value, exc.__class__.__name__,
        )
    from storage3 import SyncStorageClient

    headers = {"Authorization": f"Bearer {settings.service_key}", "apikey": settings.service_key}
    return SyncStorageClient(f"{settings.url}/storage/v1", headers, timeout=timeout)


def build_gateway(kind: StoreKind, adapter: Optional[StorageAdapterProtocol] = None) -> StorageGateway:
    """Build the gateway for `kind`; Null adapter when the store is not configured."""
    settings = get_store_settings(kind)
    if adapter is None:
        if settings.configured:
            try:
                adapter = SupabaseStorageAdapter(_build_client(settings))
                logger.info("Storage adapter wired: store=%s bucket=%s", kind.value, settings.bucket)
            except Exception as exc:
                logger.warning("Storage wiring skipped for store=%s: %s", kind.value, exc.__class__.__name__)
        if adapter is None:
            adapter = NullStorageAdapter()
    return StorageGateway(store=kind.value, adapter=adapter, bucket=settings.bucket)


def get_gateway(kind: StoreKind) -> StorageGateway:
    """Return the process-wide gateway for `kind`, wiring it lazily."""
    with _LOCK:
        gateway = _GATEWAYS.get(kind)
        if gateway is None or isinstance(gateway.adapter, NullStorageAdapter):
            gateway = build_gateway(kind)
            _GATEWAYS[kind] = gateway
        return gateway


def set_gateway(kind: StoreKind, gateway: Optional[StorageGateway]) -> None:
    """Allow tests to provide a gateway (e.g., over a fake adapter); None resets."""
    with _LOCK:
        if gateway is None:
            _GATEWAYS.pop(kind, None)
        else:
            _GATEWAYS[kind] = gateway


def wire_storage_if_configured() -> Dict[str, bool]:
    """Wire both stores at startup and bootstrap buckets when enabled."""
    result = {kind.value: not isinstance(get_gateway(kind).adapter, NullStorageAdapter) for kind in StoreKind}
    from backend.storage.bootstrap import ensure_buckets_from_env

    ensure_buckets_from_env()
    return result


__all__ = ["build_gateway", "get_gateway", "set_gateway", "wire_storage_if_configured"]
