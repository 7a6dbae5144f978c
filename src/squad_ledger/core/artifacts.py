"""Artifacts produced by tasks, with versioning and review."""

import hashlib
import logging
import sqlite3
import uuid
from datetime import datetime, timezone

from squad_ledger.core.errors import InvalidTransitionError, NotFoundError, ValidationError
from squad_ledger.core.tasks import _log_event, get_task
from squad_ledger.db.models import ARTIFACT_TYPES, Artifact

logger = logging.getLogger(__name__)

# Review moves; superseding is allowed from any non-superseded status.
ARTIFACT_TRANSITIONS: dict[str, frozenset[str]] = {
    "draft": frozenset({"pending", "approved", "rejected", "superseded"}),
    "pending": frozenset({"approved", "rejected", "superseded"}),
    "approved": frozenset({"superseded"}),
    "rejected": frozenset({"pending", "superseded"}),
    "superseded": frozenset(),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _digest(content: str | None) -> tuple[str | None, int]:
    if content is None:
        return None, 0
    raw = content.encode("utf-8")
    return hashlib.sha256(raw).hexdigest(), len(raw)


def add_artifact(
    db: sqlite3.Connection,
    task_id: str,
    creator_agent_id: str,
    filename: str,
    type: str = "other",
    content: str | None = None,
    workflow_id: str | None = None,
    creator_role_id: str | None = None,
    path: str | None = None,
    mime_type: str | None = None,
) -> Artifact:
    """Attach a new draft artifact to a task."""
    task = get_task(db, task_id)
    if not task:
        raise NotFoundError("Task", task_id)
    if not creator_agent_id:
        raise ValidationError("Creator agent ID is required")
    if not filename or not filename.strip():
        raise ValidationError("Artifact filename is required")
    if type not in ARTIFACT_TYPES:
        raise ValidationError(f"Unknown artifact type: {type}")

    artifact_id = str(uuid.uuid4())
    content_hash, size = _digest(content)
    now = _now().isoformat()

    db.execute(
        """INSERT INTO artifacts
           (id, project_id, task_id, workflow_id, creator_agent_id, creator_role_id,
            filename, path, type, mime_type, content, content_hash, size_bytes,
            created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (artifact_id, task.project_id, task_id, workflow_id or task.workflow_id,
         creator_agent_id, creator_role_id, filename.strip(), path, type, mime_type,
         content, content_hash, size, now, now),
    )
    db.execute("UPDATE tasks SET updated_at = ? WHERE id = ?", (now, task_id))
    _log_event(db, task_id, "artifact_added", None, filename.strip())
    db.commit()
    logger.info("Artifact %s added to task %s", filename, task_id)
    return get_artifact(db, artifact_id)


def get_artifact(db: sqlite3.Connection, artifact_id: str) -> Artifact | None:
    row = db.execute("SELECT * FROM artifacts WHERE id = ?", (artifact_id,)).fetchone()
    if not row:
        return None
    return _row_to_artifact(row)


def list_artifacts(
    db: sqlite3.Connection,
    project_id: str | None = None,
    task_id: str | None = None,
    status: str | None = None,
) -> list[Artifact]:
    query = "SELECT * FROM artifacts WHERE 1=1"
    params: list = []

    if project_id:
        query += " AND project_id = ?"
        params.append(project_id)
    if task_id:
        query += " AND task_id = ?"
        params.append(task_id)
    if status:
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY created_at, rowid"
    return [_row_to_artifact(r) for r in db.execute(query, params).fetchall()]


def update_artifact_content(
    db: sqlite3.Connection,
    artifact_id: str,
    content: str,
) -> Artifact:
    """Replace the content. The version only moves when the bytes differ."""
    artifact = _require_artifact(db, artifact_id)
    content_hash, size = _digest(content)
    if content_hash == artifact.content_hash:
        return artifact

    db.execute(
        """UPDATE artifacts
           SET content = ?, content_hash = ?, size_bytes = ?, version = version + 1,
               updated_at = ?
           WHERE id = ?""",
        (content, content_hash, size, _now().isoformat(), artifact_id),
    )
    db.commit()
    return get_artifact(db, artifact_id)


def submit_artifact(db: sqlite3.Connection, artifact_id: str) -> Artifact:
    """Send a draft (or rejected) artifact for review."""
    return _move(db, artifact_id, "pending")


def approve_artifact(
    db: sqlite3.Connection,
    artifact_id: str,
    reviewed_by: str,
    comments: str | None = None,
) -> Artifact:
    if not reviewed_by:
        raise ValidationError("Reviewer is required")
    return _move(db, artifact_id, "approved", reviewed_by, comments)


def reject_artifact(
    db: sqlite3.Connection,
    artifact_id: str,
    reviewed_by: str,
    comments: str,
) -> Artifact:
    """Reject an artifact; a reason must be given."""
    if not reviewed_by:
        raise ValidationError("Reviewer is required")
    if not comments or not comments.strip():
        raise ValidationError("Rejection comments are required")
    return _move(db, artifact_id, "rejected", reviewed_by, comments)


def supersede_artifact(db: sqlite3.Connection, artifact_id: str) -> Artifact:
    return _move(db, artifact_id, "superseded")


def delete_artifact(db: sqlite3.Connection, artifact_id: str) -> None:
    artifact = _require_artifact(db, artifact_id)
    db.execute("DELETE FROM artifacts WHERE id = ?", (artifact_id,))
    db.execute(
        "UPDATE tasks SET updated_at = ? WHERE id = ?",
        (_now().isoformat(), artifact.task_id),
    )
    db.commit()
    logger.info("Deleted artifact %s", artifact_id)


def _move(
    db: sqlite3.Connection,
    artifact_id: str,
    status: str,
    reviewed_by: str | None = None,
    comments: str | None = None,
) -> Artifact:
    artifact = _require_artifact(db, artifact_id)
    if status not in ARTIFACT_TRANSITIONS[artifact.status]:
        raise InvalidTransitionError("artifact", artifact_id, artifact.status, status)

    now = _now().isoformat()
    if status in ("approved", "rejected"):
        db.execute(
            """UPDATE artifacts
               SET status = ?, reviewed_by = ?, reviewed_at = ?, review_comments = ?,
                   updated_at = ?
               WHERE id = ?""",
            (status, reviewed_by, now, comments, now, artifact_id),
        )
    else:
        db.execute(
            "UPDATE artifacts SET status = ?, updated_at = ? WHERE id = ?",
            (status, now, artifact_id),
        )
    db.commit()
    logger.info("Artifact %s: %s -> %s", artifact_id, artifact.status, status)
    return get_artifact(db, artifact_id)


def _require_artifact(db: sqlite3.Connection, artifact_id: str) -> Artifact:
    artifact = get_artifact(db, artifact_id)
    if not artifact:
        raise NotFoundError("Artifact", artifact_id)
    return artifact


def _row_to_artifact(row: sqlite3.Row) -> Artifact:
    return Artifact(
        id=row["id"],
        project_id=row["project_id"],
        task_id=row["task_id"],
        creator_agent_id=row["creator_agent_id"],
        filename=row["filename"],
        type=row["type"],
        workflow_id=row["workflow_id"],
        creator_role_id=row["creator_role_id"],
        path=row["path"],
        mime_type=row["mime_type"],
        content=row["content"],
        content_hash=row["content_hash"],
        size_bytes=row["size_bytes"],
        version=row["version"],
        status=row["status"],
        review_comments=row["review_comments"],
        reviewed_by=row["reviewed_by"],
        reviewed_at=_parse_dt(row["reviewed_at"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
