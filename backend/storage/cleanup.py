"""
Best-effort fan-out deletion and the deletion report.

Intent:
    Physical cleanup after a relational delete (or after a failed upload batch)
    must attempt every key, never let one failure abort the others, and gather
    every outcome for the caller.

Behavior:
    - Keys are deduplicated per store before any delete is issued.
    - Deletes run in parallel (bounded by `max_workers`) through the store's
      own gateway; results are collected in input order.
    - `delete_per_store` runs one batch per store concurrently so a slow store
      does not delay the other.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .config import get_delete_concurrency
from .gateway import DeleteOutcome, StorageGateway


@dataclass(frozen=True, slots=True)
class StoredFile:
    """A reference to one physical object: store key plus provider id if any."""

    store_key: str
    external_id: Optional[str] = None


@dataclass
class DeletionReport:
    relational_delete_ok: bool = True
    files_attempted: int = 0
    files_deleted: int = 0
    files_failed: int = 0
    failures: List[Dict[str, str]] = field(default_factory=list)

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[DeleteOutcome], *, relational_delete_ok: bool = True) -> "DeletionReport":
        report = cls(relational_delete_ok=relational_delete_ok)
        for outcome in outcomes:
            report.files_attempted += 1
            if outcome.ok:
                report.files_deleted += 1
            else:
                report.files_failed += 1
                cause = getattr(outcome.error, "cause", None)
                report.failures.append(
                    {"store": outcome.store, "store_key": outcome.store_key, "error": type(cause).__name__ if cause else "DeleteFailed"}
                )
        return report

    def to_dict(self) -> Dict[str, object]:
        return {
            "relational_delete_ok": self.relational_delete_ok,
            "files_attempted": self.files_attempted,
            "files_deleted": self.files_deleted,
            "files_failed": self.files_failed,
            "failures": list(self.failures),
        }


def dedupe(files: Iterable[StoredFile]) -> List[StoredFile]:
    """Drop repeated store keys; the first external id seen for a key wins."""
    seen: Dict[str, StoredFile] = {}
    for f in files:
        if not f.store_key:
            continue
        if f.store_key not in seen:
            seen[f.store_key] = f
        elif seen[f.store_key].external_id is None and f.external_id:
            seen[f.store_key] = f
    return list(seen.values())


def delete_many(gateway: StorageGateway, files: Iterable[StoredFile], *, max_workers: Optional[int] = None) -> List[DeleteOutcome]:
    """Delete every distinct key through `gateway` in parallel; gather all outcomes."""
    unique = dedupe(files)
    if not unique:
        return []
    workers = max(1, min(int(max_workers or get_delete_concurrency()), len(unique)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"cleanup-{gateway.store}") as pool:
        return list(pool.map(lambda f: gateway.delete(f.store_key, f.external_id), unique))


def delete_per_store(
    batches: Sequence[Tuple[StorageGateway, Sequence[StoredFile]]],
    *,
    max_workers: Optional[int] = None,
) -> List[DeleteOutcome]:
    """Run one `delete_many` batch per store concurrently and merge the outcomes."""
    work = [(gw, files) for gw, files in batches if files]
    if not work:
        return []
    with ThreadPoolExecutor(max_workers=len(work), thread_name_prefix="cleanup-stores") as pool:
        futures = [pool.submit(delete_many, gw, files, max_workers=max_workers) for gw, files in work]
        outcomes: List[DeleteOutcome] = []
        for fut in futures:
            outcomes.extend(fut.result())
    return outcomes


__all__ = ["StoredFile", "DeletionReport", "dedupe", "delete_many", "delete_per_store"]
