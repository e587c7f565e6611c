"""
Postgres-backed repository for Teaching (resources, versions, content subtrees).

Design:
- Minimal psycopg3 usage; each call opens a short-lived connection.
- Multi-row changes (new version + live pointer, subtree delete + inventory)
  run in one transaction with the parent row locked `for update`.
- No storage calls happen here; the services call the stores strictly before
  or after these transactions.
"""
from __future__ import annotations

import os
from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple
from uuid import UUID, uuid4

from backend.errors import ConfirmationRequired, NotFileResource, NotFound
from backend.storage.cleanup import StoredFile, dedupe
from backend.teaching.models import ContentType, FileRef, Resource, ResourceVersion, SubtreeInventory, SubtreeKind, Visibility

try:
    import psycopg
    from psycopg import sql

    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional in some dev envs
    psycopg = None  # type: ignore
    sql = None  # type: ignore
    HAVE_PSYCOPG = False


def _dsn() -> str:
    """Resolve the DSN: TEACHING_DATABASE_URL, then DATABASE_URL."""
    for candidate in (os.getenv("TEACHING_DATABASE_URL"), os.getenv("DATABASE_URL")):
        if candidate:
            return candidate
    raise RuntimeError("Database DSN unavailable for DBTeachingRepo")


def _as_uuid(value: str) -> Optional[str]:
    try:
        return str(UUID(str(value)))
    except (ValueError, TypeError):
        return None


_ROOT_TABLE = {
    SubtreeKind.COURSE: "courses",
    SubtreeKind.MODULE: "modules",
    SubtreeKind.LESSON: "lessons",
    SubtreeKind.ASSIGNMENT: "assignments",
}

_RESOURCE_SELECT = """
    select r.id::text, r.lesson_id::text, r.title, r.content_type, r.version,
           r.visibility, r.reveal_at, r.downloadable, r.position,
           r.store_key, r.file_name, r.file_size, r.mime_type, r.content,
           m.course_id::text, r.created_at, r.updated_at
      from public.resources r
      join public.lessons l on l.id = r.lesson_id
      join public.modules m on m.id = l.module_id
"""


def _row_to_resource(row: Sequence[Any]) -> Resource:
    (rid, lesson_id, title, content_type, version, visibility, reveal_at, downloadable, position,
     store_key, file_name, file_size, mime_type, content, course_id, created_at, updated_at) = row
    file_ref = None
    if store_key:
        file_ref = FileRef(store_key=store_key, name=file_name or "", size=int(file_size or 0), mime=mime_type or "")
    return Resource(
        id=rid,
        lesson_id=lesson_id,
        title=title,
        content_type=ContentType(content_type),
        version=int(version),
        visibility=Visibility(visibility),
        reveal_at=reveal_at,
        downloadable=bool(downloadable),
        position=int(position),
        file=file_ref,
        content=content,
        course_id=course_id,
        created_at=created_at,
        updated_at=updated_at,
    )


class DBTeachingRepo:
    """Persistence adapter used by the resource and deletion services."""

    def __init__(self, dsn: Optional[str] = None) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBTeachingRepo")
        self._dsn = dsn or _dsn()

    # --- Shared lookups ----------------------------------------------------------

    def course_id_for_lesson(self, lesson_id: str) -> Optional[str]:
        lid = _as_uuid(lesson_id)
        if lid is None:
            return None
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    select m.course_id::text
                      from public.lessons l join public.modules m on m.id = l.module_id
                     where l.id = %s::uuid
                    """,
                    (lid,),
                )
                row = cur.fetchone()
        return row[0] if row else None

    def is_course_lecturer(self, course_id: str, user_id: str) -> bool:
        cid = _as_uuid(course_id)
        if cid is None:
            return False
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "select exists(select 1 from public.course_lecturers where course_id = %s::uuid and user_id = %s)",
                    (cid, user_id),
                )
                return bool(cur.fetchone()[0])

    def is_actively_enrolled(self, student_id: str, course_id: str) -> bool:
        cid = _as_uuid(course_id)
        if cid is None:
            return False
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    select exists(
                        select 1 from public.enrollments
                         where course_id = %s::uuid and student_id = %s and status <> 'DROPPED'
                    )
                    """,
                    (cid, student_id),
                )
                return bool(cur.fetchone()[0])

    # --- Resources ---------------------------------------------------------------

    def _fetch_resource(self, cur, resource_id: str) -> Optional[Resource]:
        cur.execute(_RESOURCE_SELECT + " where r.id = %s::uuid", (resource_id,))
        row = cur.fetchone()
        return _row_to_resource(row) if row else None

    @staticmethod
    def _insert_version(cur, resource_id: str, version: int, file: FileRef, uploaded_by: str, now: datetime) -> None:
        cur.execute(
            """
            insert into public.resource_versions
                (id, resource_id, version, store_key, file_name, file_size, mime_type, uploaded_by, created_at)
            values (%s::uuid, %s::uuid, %s, %s, %s, %s, %s, %s, %s)
            """,
            (str(uuid4()), resource_id, version, file.store_key, file.name, file.size, file.mime, uploaded_by, now),
        )

    def create_resource(
        self,
        *,
        resource_id: str,
        lesson_id: str,
        title: str,
        content_type: ContentType,
        visibility: Visibility,
        reveal_at: Optional[datetime],
        downloadable: bool,
        position: Optional[int],
        file: Optional[FileRef],
        content: Optional[str],
        created_by: str,
        now: datetime,
    ) -> Resource:
        lid = _as_uuid(lesson_id)
        if lid is None:
            raise NotFound("Lesson not found.")
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                # Serialize position assignment per lesson.
                cur.execute("select id from public.lessons where id = %s::uuid for update", (lid,))
                if cur.fetchone() is None:
                    raise NotFound("Lesson not found.")
                if position is None:
                    cur.execute(
                        "select coalesce(max(position) + 1, 0) from public.resources where lesson_id = %s::uuid",
                        (lid,),
                    )
                    position = int(cur.fetchone()[0])
                cur.execute(
                    """
                    insert into public.resources
                        (id, lesson_id, title, content_type, version, store_key, file_name, file_size, mime_type,
                         content, visibility, reveal_at, downloadable, position, created_at, updated_at)
                    values (%s::uuid, %s::uuid, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        resource_id, lid, title, content_type.value, 1 if file else 0,
                        file.store_key if file else None, file.name if file else None,
                        file.size if file else None, file.mime if file else None,
                        content, visibility.value, reveal_at, downloadable, position, now, now,
                    ),
                )
                if file is not None:
                    self._insert_version(cur, resource_id, 1, file, created_by, now)
                resource = self._fetch_resource(cur, resource_id)
            conn.commit()
        if resource is None:
            raise RuntimeError("resource write returned no row")
        return resource

    def add_resource_version(self, resource_id: str, *, file: FileRef, uploaded_by: str, now: datetime) -> Resource:
        rid = _as_uuid(resource_id)
        if rid is None:
            raise NotFound("Resource not found.")
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute("select content_type from public.resources where id = %s::uuid for update", (rid,))
                row = cur.fetchone()
                if row is None:
                    raise NotFound("Resource not found.")
                if row[0] != ContentType.FILE.value:
                    raise NotFileResource()
                cur.execute(
                    "select coalesce(max(version), 0) + 1 from public.resource_versions where resource_id = %s::uuid",
                    (rid,),
                )
                next_version = int(cur.fetchone()[0])
                self._insert_version(cur, rid, next_version, file, uploaded_by, now)
                cur.execute(
                    """
                    update public.resources
                       set version = %s, store_key = %s, file_name = %s, file_size = %s, mime_type = %s, updated_at = %s
                     where id = %s::uuid
                    """,
                    (next_version, file.store_key, file.name, file.size, file.mime, now, rid),
                )
                resource = self._fetch_resource(cur, rid)
            conn.commit()
        if resource is None:
            raise RuntimeError("resource write returned no row")
        return resource

    def get_resource(self, resource_id: str) -> Optional[Resource]:
        rid = _as_uuid(resource_id)
        if rid is None:
            return None
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                return self._fetch_resource(cur, rid)

    def list_resource_versions(self, resource_id: str) -> List[ResourceVersion]:
        rid = _as_uuid(resource_id)
        if rid is None:
            return []
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    select v.id::text, v.resource_id::text, v.version, v.store_key, v.file_name, v.file_size,
                           v.mime_type, v.uploaded_by, v.created_at, (v.version = r.version)
                      from public.resource_versions v
                      join public.resources r on r.id = v.resource_id
                     where v.resource_id = %s::uuid
                     order by v.version desc
                    """,
                    (rid,),
                )
                rows = cur.fetchall()
        return [
            ResourceVersion(
                id=r[0], resource_id=r[1], version=int(r[2]), store_key=r[3], name=r[4], size=int(r[5]),
                mime=r[6], uploaded_by=r[7], created_at=r[8], is_latest=bool(r[9]),
            )
            for r in rows
        ]

    def delete_resource(self, resource_id: str) -> Optional[List[StoredFile]]:
        rid = _as_uuid(resource_id)
        if rid is None:
            return None
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute("select store_key from public.resources where id = %s::uuid for update", (rid,))
                row = cur.fetchone()
                if row is None:
                    return None
                cur.execute("select store_key from public.resource_versions where resource_id = %s::uuid", (rid,))
                keys = [r[0] for r in cur.fetchall()]
                if row[0]:
                    keys.append(row[0])
                cur.execute("delete from public.resources where id = %s::uuid", (rid,))
            conn.commit()
        return dedupe(StoredFile(k) for k in keys)

    # --- Subtrees ----------------------------------------------------------------

    def _scope(self, cur, kind: SubtreeKind, root: str) -> Tuple[List[str], List[str]]:
        if kind == SubtreeKind.COURSE:
            cur.execute(
                """
                select l.id::text from public.lessons l
                  join public.modules m on m.id = l.module_id
                 where m.course_id = %s::uuid
                """,
                (root,),
            )
        elif kind == SubtreeKind.MODULE:
            cur.execute("select id::text from public.lessons where module_id = %s::uuid", (root,))
        elif kind == SubtreeKind.LESSON:
            cur.execute("select id::text from public.lessons where id = %s::uuid", (root,))
        else:
            return [], [root]
        lesson_ids = [r[0] for r in cur.fetchall()]
        cur.execute("select id::text from public.assignments where lesson_id = any(%s::uuid[])", (lesson_ids,))
        return lesson_ids, [r[0] for r in cur.fetchall()]

    def _inventory(self, cur, kind: SubtreeKind, root: str) -> SubtreeInventory:
        lesson_ids, assignment_ids = self._scope(cur, kind, root)
        cur.execute(
            """
            select r.store_key from public.resources r
             where r.lesson_id = any(%s::uuid[]) and r.store_key is not null
            union
            select v.store_key from public.resource_versions v
              join public.resources r on r.id = v.resource_id
             where r.lesson_id = any(%s::uuid[])
            """,
            (lesson_ids, lesson_ids),
        )
        resource_files = [StoredFile(r[0]) for r in cur.fetchall()]
        cur.execute("select count(*) from public.resources where lesson_id = any(%s::uuid[])", (lesson_ids,))
        resource_count = int(cur.fetchone()[0])
        cur.execute("select count(*) from public.submissions where assignment_id = any(%s::uuid[])", (assignment_ids,))
        submission_count = int(cur.fetchone()[0])
        cur.execute(
            """
            select a.store_key, a.external_id
              from public.submission_attachments a
              join public.submissions s on s.id = a.submission_id
             where s.assignment_id = any(%s::uuid[])
            """,
            (assignment_ids,),
        )
        submission_files = [StoredFile(r[0], r[1]) for r in cur.fetchall()]
        module_count = 0
        if kind == SubtreeKind.COURSE:
            cur.execute("select count(*) from public.modules where course_id = %s::uuid", (root,))
            module_count = int(cur.fetchone()[0])
        return SubtreeInventory(
            kind=kind,
            root_id=root,
            module_count=module_count,
            lesson_count=len(lesson_ids) - (1 if kind == SubtreeKind.LESSON else 0),
            resource_count=resource_count,
            submission_count=submission_count,
            resource_files=dedupe(resource_files),
            submission_files=dedupe(submission_files),
        )

    def _lock_root(self, cur, kind: SubtreeKind, root: str, *, lock: bool) -> bool:
        query = sql.SQL("select id from public.{} where id = %s::uuid" + (" for update" if lock else "")).format(
            sql.Identifier(_ROOT_TABLE[kind])
        )
        cur.execute(query, (root,))
        return cur.fetchone() is not None

    def collect_subtree(self, kind: SubtreeKind, entity_id: str) -> Optional[SubtreeInventory]:
        root = _as_uuid(entity_id)
        if root is None:
            return None
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                if not self._lock_root(cur, kind, root, lock=False):
                    return None
                return self._inventory(cur, kind, root)

    def delete_subtree(self, kind: SubtreeKind, entity_id: str, *, allow_dependents: bool) -> Optional[SubtreeInventory]:
        """Delete the root row (cascading to descendants) and return what it held."""
        root = _as_uuid(entity_id)
        if root is None:
            return None
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                if not self._lock_root(cur, kind, root, lock=True):
                    return None
                inventory = self._inventory(cur, kind, root)
                if inventory.dependent_count and not allow_dependents:
                    raise ConfirmationRequired(inventory.dependent_count)
                cur.execute(
                    sql.SQL("delete from public.{} where id = %s::uuid").format(sql.Identifier(_ROOT_TABLE[kind])),
                    (root,),
                )
            conn.commit()
        return inventory


__all__ = ["DBTeachingRepo", "HAVE_PSYCOPG"]
