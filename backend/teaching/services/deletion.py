"""Cascading deletion of course content together with its stored files."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from backend.errors import ConfirmationRequired, NotFound
from backend.ops.audit import CONTENT_DELETED, AuditSink, record_safely
from backend.storage.cleanup import DeletionReport, delete_per_store
from backend.storage.gateway import StorageGateway
from backend.teaching.models import SubtreeInventory, SubtreeKind

_log = logging.getLogger("coursefiles.teaching")


class SubtreeRepoProtocol(Protocol):
    def collect_subtree(self, kind: SubtreeKind, entity_id: str) -> Optional[SubtreeInventory]: ...

    def delete_subtree(self, kind: SubtreeKind, entity_id: str, *, allow_dependents: bool) -> Optional[SubtreeInventory]: ...


@dataclass
class CascadingDeletionCoordinator:
    """Delete a course, module, lesson or assignment and everything below it.

    Intent:
        Remove the relational subtree atomically, then reclaim the physical files
        it referenced in both stores without letting storage failures undo or
        block the relational delete.

    Behavior:
        - Enumerates resource-store keys (every version) and submission-store
          keys (every attachment) under the root.
        - With `force=False` and any dependent lessons, resources or submissions,
          raises `ConfirmationRequired(count)` and deletes nothing.
        - The repository re-reads the inventory inside the deleting transaction,
          so keys that appeared after the preview are still cleaned up.
        - Physical deletes run after commit: one parallel batch per store, both
          batches concurrently.

    Permissions:
        Callers must have authorized an administrator; this class performs no
        authorization itself.
    """

    repo: SubtreeRepoProtocol
    resource_storage: StorageGateway
    submission_storage: StorageGateway
    audit: Optional[AuditSink] = None
    max_workers: Optional[int] = None

    def preview(self, kind: SubtreeKind, entity_id: str) -> SubtreeInventory:
        inventory = self.repo.collect_subtree(kind, entity_id)
        if inventory is None:
            raise NotFound(f"{kind.value.capitalize()} not found.")
        return inventory

    def delete_subtree(self, kind: SubtreeKind, entity_id: str, *, force: bool = False, actor_id: str = "system") -> DeletionReport:
        inventory = self.preview(kind, entity_id)
        if inventory.dependent_count and not force:
            raise ConfirmationRequired(inventory.dependent_count)
        deleted = self.repo.delete_subtree(kind, entity_id, allow_dependents=force)
        if deleted is None:
            raise NotFound(f"{kind.value.capitalize()} not found.")
        outcomes = delete_per_store(
            [
                (self.resource_storage, deleted.resource_files),
                (self.submission_storage, deleted.submission_files),
            ],
            max_workers=self.max_workers,
        )
        report = DeletionReport.from_outcomes(outcomes, relational_delete_ok=True)
        _log.info(
            "deleted %s %s: modules=%s lessons=%s resources=%s submissions=%s files_attempted=%s files_failed=%s",
            kind.value, entity_id, deleted.module_count, deleted.lesson_count, deleted.resource_count, deleted.submission_count,
            report.files_attempted, report.files_failed,
        )
        record_safely(
            self.audit,
            actor=actor_id,
            action=CONTENT_DELETED,
            entity_type=kind.value,
            entity_id=entity_id,
            metadata={"kind": kind.value, "files_attempted": report.files_attempted, "files_failed": report.files_failed},
        )
        return report


__all__ = ["SubtreeRepoProtocol", "CascadingDeletionCoordinator"]
