"""Whole-store export and import.

A snapshot is a JSON-ready dict with one collection per entity, each keyed
by id. Task ``blocks`` lists are exported for readers but ignored on
import: dependency edges are rebuilt from ``dependencies`` alone, and an
edge that would be refused by ``add_dependency`` is dropped.
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone

from squad_ledger.core.artifacts import list_artifacts
from squad_ledger.core.errors import ValidationError
from squad_ledger.core.interactions import list_interactions
from squad_ledger.core.projects import list_projects
from squad_ledger.core.relationships import list_relationships
from squad_ledger.core.tasks import get_task, list_tasks, validate_dependency
from squad_ledger.db.serialize import edge_dict, to_dict

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1
_COLLECTIONS = ("projects", "tasks", "artifacts", "relationships", "interactions")

_PROJECT_COLUMNS = (
    "id", "slug", "name", "description", "mode", "repo", "folder", "status",
    "token_budget", "tokens_used", "cost_budget_cents", "cost_spent_cents",
    "created_at", "updated_at", "completed_at",
)
_TASK_COLUMNS = (
    "id", "project_id", "workflow_id", "title", "description", "status", "priority",
    "assigned_agent_id", "assigned_role_id", "attempts", "max_attempts", "last_error",
    "estimated_duration_minutes", "actual_duration_minutes",
    "created_at", "updated_at", "started_at", "completed_at",
)
_ARTIFACT_COLUMNS = (
    "id", "project_id", "task_id", "workflow_id", "creator_agent_id", "creator_role_id",
    "filename", "path", "type", "mime_type", "content", "content_hash", "size_bytes",
    "version", "status", "review_comments", "reviewed_by", "reviewed_at",
    "created_at", "updated_at",
)


def export_snapshot(db: sqlite3.Connection) -> dict:
    """Dump every project, task, artifact, relationship and interaction."""
    tasks = {}
    for project in list_projects(db):
        for task in list_tasks(db, project.id):
            tasks[task.id] = to_dict(task)

    return {
        "version": SNAPSHOT_VERSION,
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "projects": {p.id: to_dict(p) for p in list_projects(db)},
        "tasks": tasks,
        "artifacts": {a.id: to_dict(a) for a in list_artifacts(db)},
        "relationships": {r.id: edge_dict(r) for r in list_relationships(db)},
        "interactions": {i.id: to_dict(i) for i in list_interactions(db)},
    }


def import_snapshot(db: sqlite3.Connection, data: dict, replace: bool = True) -> dict:
    """Load a snapshot in one transaction and return per-collection counts.

    With ``replace`` the current contents are discarded first. Rows that
    point at ids absent from both the snapshot and the database are dropped
    with a warning; interactions lose dangling task/relationship links instead.
    """
    if not isinstance(data, dict):
        raise ValidationError("Snapshot must be a JSON object")
    version = data.get("version", SNAPSHOT_VERSION)
    if version != SNAPSHOT_VERSION:
        raise ValidationError(f"Unsupported snapshot version: {version}")
    for key in _COLLECTIONS:
        collection = data.get(key) or {}
        if not isinstance(collection, dict) or not all(isinstance(v, dict) for v in collection.values()):
            raise ValidationError(f"Snapshot collection '{key}' must map ids to objects")

    projects = data.get("projects") or {}
    tasks = data.get("tasks") or {}
    artifacts = data.get("artifacts") or {}
    rels = data.get("relationships") or {}
    interactions = data.get("interactions") or {}
    counts = dict.fromkeys(
        ("projects", "tasks", "dependencies", "subtasks", "artifacts",
         "relationships", "interactions"), 0
    )

    try:
        if replace:
            for table in ("interactions", "relationships", "artifacts", "task_dependencies",
                          "subtasks", "task_events", "tasks", "projects"):
                db.execute(f"DELETE FROM {table}")

        for project in projects.values():
            _insert(db, "projects", {k: project.get(k) for k in _PROJECT_COLUMNS})
            counts["projects"] += 1

        for task in tasks.values():
            if not _exists(db, "projects", task["project_id"]):
                logger.warning("Dropping task %s: project %s missing", task["id"], task["project_id"])
                continue
            _insert(db, "tasks", {k: task.get(k) for k in _TASK_COLUMNS})
            counts["tasks"] += 1
            db.execute("DELETE FROM subtasks WHERE task_id = ?", (task["id"],))
            for subtask in task.get("subtasks") or []:
                db.execute(
                    "INSERT INTO subtasks (task_id, title, completed, completed_at) VALUES (?, ?, ?, ?)",
                    (task["id"], subtask["title"], int(bool(subtask.get("completed"))),
                     subtask.get("completed_at")),
                )
                counts["subtasks"] += 1

        for task in tasks.values():
            if not _exists(db, "tasks", task["id"]):
                continue
            for dep_id in task.get("dependencies") or []:
                current = get_task(db, task["id"])
                dep = get_task(db, dep_id)
                if dep is None:
                    logger.warning("Dropping dependency %s -> %s: task missing", task["id"], dep_id)
                    continue
                if dep_id in current.dependencies:
                    continue
                try:
                    validate_dependency(db, current, dep)
                except ValidationError as e:
                    logger.warning("Dropping dependency %s -> %s: %s", task["id"], dep_id, e)
                    continue
                db.execute(
                    """INSERT OR IGNORE INTO task_dependencies (task_id, depends_on_task_id)
                       VALUES (?, ?)""",
                    (task["id"], dep_id),
                )
                counts["dependencies"] += 1

        for artifact in artifacts.values():
            if not _exists(db, "tasks", artifact["task_id"]):
                logger.warning("Dropping artifact %s: task %s missing", artifact["id"], artifact["task_id"])
                continue
            _insert(db, "artifacts", {k: artifact.get(k) for k in _ARTIFACT_COLUMNS})
            counts["artifacts"] += 1

        for rel in rels.values():
            _insert(db, "relationships", _relationship_row(rel))
            counts["relationships"] += 1

        for interaction in interactions.values():
            _insert(db, "interactions", _interaction_row(db, interaction))
            counts["interactions"] += 1

        db.commit()
    except KeyError as e:
        db.rollback()
        raise ValidationError(f"Invalid snapshot: missing field {e}") from e
    except (sqlite3.Error, TypeError, AttributeError) as e:
        db.rollback()
        raise ValidationError(f"Invalid snapshot: {e}") from e

    logger.info("Imported snapshot: %s", counts)
    return counts


def _relationship_row(rel: dict) -> dict:
    metrics = rel.get("metrics") or {}
    return {
        "id": rel["id"],
        "source_agent_id": rel["source_agent_id"],
        "target_agent_id": rel["target_agent_id"],
        "relationship_type": rel["type"],
        "authority_delta": rel.get("authority_delta", 0),
        "bidirectional": int(bool(rel.get("bidirectional"))),
        "auto_approval": int(bool(rel.get("auto_approval", True))),
        "max_interactions_per_workflow": rel.get("max_interactions_per_workflow"),
        "priority": rel.get("priority", 0),
        "description": rel.get("description"),
        "conditions_json": json.dumps(rel.get("conditions") or []),
        "total_interactions": metrics.get("total_interactions", 0),
        "successful_interactions": metrics.get("successful_interactions", 0),
        "failed_interactions": metrics.get("failed_interactions", 0),
        "avg_response_time": metrics.get("avg_response_time", 0.0),
        "timed_interactions": metrics.get(
            "timed_interactions", metrics.get("total_interactions", 0)
        ),
        "last_interaction_at": metrics.get("last_interaction_at"),
        "created_at": rel["created_at"],
        "updated_at": rel["updated_at"],
    }


def _interaction_row(db: sqlite3.Connection, ix: dict) -> dict:
    task_id = ix.get("task_id")
    if task_id and not _exists(db, "tasks", task_id):
        task_id = None
    relationship_id = ix.get("relationship_id")
    if relationship_id and not _exists(db, "relationships", relationship_id):
        relationship_id = None
    tokens = ix.get("token_usage") or {}
    return {
        "id": ix["id"],
        "workflow_id": ix["workflow_id"],
        "initiator_agent_id": ix["initiator_agent_id"],
        "target_agent_id": ix["target_agent_id"],
        "interaction_type": ix["interaction_type"],
        "task_id": task_id,
        "relationship_id": relationship_id,
        "parent_interaction_id": ix.get("parent_interaction_id"),
        "status": ix.get("status", "pending"),
        "priority": ix.get("priority", 3),
        "message": ix["message"],
        "thinking": ix.get("thinking"),
        "response_json": _json_or_none(ix.get("response")),
        "error_json": _json_or_none(ix.get("error")),
        "user_intervention_json": _json_or_none(ix.get("user_intervention")),
        "input_tokens": tokens.get("input"),
        "output_tokens": tokens.get("output"),
        "total_tokens": tokens.get("total"),
        "duration_ms": ix.get("duration_ms"),
        "retry_count": ix.get("retry_count", 0),
        "created_at": ix["created_at"],
        "started_at": ix.get("started_at"),
        "completed_at": ix.get("completed_at"),
    }


def _insert(db: sqlite3.Connection, table: str, row: dict):
    # Existing rows are updated in place; deleting them would cascade.
    columns = ", ".join(row)
    placeholders = ", ".join("?" for _ in row)
    updates = ", ".join(f"{k} = excluded.{k}" for k in row if k != "id")
    db.execute(
        f"""INSERT INTO {table} ({columns}) VALUES ({placeholders})
            ON CONFLICT(id) DO UPDATE SET {updates}""",
        list(row.values()),
    )


def _exists(db: sqlite3.Connection, table: str, row_id: str) -> bool:
    return db.execute(f"SELECT 1 FROM {table} WHERE id = ?", (row_id,)).fetchone() is not None


def _json_or_none(value) -> str | None:
    return json.dumps(value) if value is not None else None
