"""Task graph operations: tasks, dependency edges, status lifecycle, subtasks.

A dependency edge lives in exactly one row of ``task_dependencies``
(task depends on depends_on_task). ``Task.dependencies`` and ``Task.blocks``
are both read back from that row set, so the two views cannot drift apart.
"""

import logging
import re
import sqlite3
from datetime import datetime, timezone

from squad_ledger.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    TaskBlockedError,
    ValidationError,
)
from squad_ledger.db.models import TASK_STATUSES, SubTask, Task, TaskEvent

logger = logging.getLogger(__name__)

TASK_TRANSITIONS: dict[str, frozenset[str]] = {
    "backlog": frozenset({"todo", "blocked"}),
    "todo": frozenset({"backlog", "in_progress", "blocked"}),
    "in_progress": frozenset({"review", "todo", "blocked"}),
    "review": frozenset({"in_progress", "done", "blocked"}),
    "blocked": frozenset({"backlog", "todo", "in_progress", "review", "archived"}),
    "done": frozenset({"archived"}),
    "archived": frozenset(),
}

_UPDATABLE_FIELDS = {"title", "description", "priority", "estimated_duration_minutes", "workflow_id"}

# Statuses a task can only enter once all of its dependencies are done.
_REQUIRES_READY = frozenset({"in_progress", "review", "done"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60] or "task"


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    existing = db.execute(
        "SELECT id FROM tasks WHERE id = ?", (base_slug,)
    ).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute(
            "SELECT id FROM tasks WHERE id = ?", (candidate,)
        ).fetchone()
        if not existing:
            return candidate
        i += 1


def create_task(
    db: sqlite3.Connection,
    project_id: str,
    title: str,
    description: str = "",
    priority: int = 3,
    assigned_agent_id: str | None = None,
    assigned_role_id: str | None = None,
    workflow_id: str | None = None,
    estimated_duration_minutes: int | None = None,
    depends_on: list[str] | None = None,
) -> Task:
    """Create a new task in the 'backlog' status."""
    if not title or not title.strip():
        raise ValidationError("Task title is required")
    if not db.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,)).fetchone():
        raise NotFoundError("Project", project_id)

    deps = list(dict.fromkeys(depends_on or []))
    for dep_id in deps:
        dep = _require_task(db, dep_id)
        if dep.project_id != project_id:
            raise ValidationError(
                f"Dependency {dep_id} belongs to another project ({dep.project_id})"
            )

    task_id = _unique_id(db, slugify(title))
    priority = max(0, min(6, priority))
    now = _now().isoformat()

    db.execute(
        """INSERT INTO tasks
           (id, project_id, workflow_id, title, description, priority,
            assigned_agent_id, assigned_role_id, estimated_duration_minutes,
            created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (task_id, project_id, workflow_id, title.strip(), description, priority,
         assigned_agent_id, assigned_role_id, estimated_duration_minutes, now, now),
    )
    _log_event(db, task_id, "created", None, "backlog")

    for dep_id in deps:
        db.execute(
            "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
            (task_id, dep_id),
        )
        _log_event(db, task_id, "dependency_added", None, dep_id)

    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its edges, artifacts and subtasks."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _hydrate(db, _row_to_task(row))


def list_tasks(
    db: sqlite3.Connection,
    project_id: str,
    status: str | None = None,
    assigned_agent_id: str | None = None,
) -> list[Task]:
    """List a project's tasks with optional filters, highest priority first."""
    query = "SELECT * FROM tasks WHERE project_id = ?"
    params: list = [project_id]

    if status:
        query += " AND status = ?"
        params.append(status)

    if assigned_agent_id:
        query += " AND assigned_agent_id = ?"
        params.append(assigned_agent_id)

    query += " ORDER BY priority ASC, created_at ASC, rowid ASC"
    rows = db.execute(query, params).fetchall()
    return [_hydrate(db, _row_to_task(r)) for r in rows]


def update_task(db: sqlite3.Connection, task_id: str, **kwargs) -> Task:
    """Update descriptive task fields. Status and timestamps are not touched."""
    task = _require_task(db, task_id)
    updates = {k: v for k, v in kwargs.items() if k in _UPDATABLE_FIELDS and v is not None}
    if "title" in updates:
        if not str(updates["title"]).strip():
            raise ValidationError("Task title is required")
        updates["title"] = updates["title"].strip()
    if "priority" in updates:
        updates["priority"] = max(0, min(6, int(updates["priority"])))
    if not updates:
        return task

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [_now().isoformat(), task_id]
    db.execute(f"UPDATE tasks SET {set_clause}, updated_at = ? WHERE id = ?", values)
    for key, value in updates.items():
        old = getattr(task, key)
        if old != value:
            _log_event(db, task_id, f"{key}_changed", _str_or_none(old), _str_or_none(value))
    db.commit()
    return get_task(db, task_id)


def assign_task(
    db: sqlite3.Connection,
    task_id: str,
    agent_id: str,
    role_id: str | None = None,
) -> Task:
    """Assign a task to an agent (and optionally a role)."""
    task = _require_task(db, task_id)
    if not agent_id:
        raise ValidationError("Agent ID is required")
    db.execute(
        """UPDATE tasks
           SET assigned_agent_id = ?, assigned_role_id = COALESCE(?, assigned_role_id),
               updated_at = ?
           WHERE id = ?""",
        (agent_id, role_id, _now().isoformat(), task_id),
    )
    _log_event(db, task_id, "assigned", task.assigned_agent_id, agent_id)
    db.commit()
    return get_task(db, task_id)


# ── Status lifecycle ──────────────────────────────────────────────────────────


def set_task_status(db: sqlite3.Connection, task_id: str, status: str) -> Task:
    """Move a task through its lifecycle.

    Re-entering the current status is a no-op, so the timestamps and duration
    written when a task first reached 'done' never change afterwards.
    Starting, reviewing or finishing work requires every dependency to be done.
    """
    task = _require_task(db, task_id)
    if status not in TASK_STATUSES:
        raise ValidationError(f"Unknown task status: {status}")
    if status == task.status:
        return task
    if status not in TASK_TRANSITIONS[task.status]:
        raise InvalidTransitionError("task", task_id, task.status, status)

    if status in _REQUIRES_READY:
        blocking = [t.id for t in get_blocking_tasks(db, task_id)]
        if blocking:
            logger.warning("Task %s cannot enter %s, blocked by %s", task_id, status, blocking)
            raise TaskBlockedError(task_id, task.status, blocking, status)

    now = _now()
    updates = {"status": status}

    if status == "in_progress" and task.started_at is None:
        updates["started_at"] = now.isoformat()

    if status == "done":
        updates["completed_at"] = now.isoformat()
        if task.started_at is not None:
            elapsed = (now - task.started_at).total_seconds()
            updates["actual_duration_minutes"] = round(elapsed / 60)

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = ?")
    values = list(updates.values()) + [now.isoformat(), task_id]

    db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
        values,
    )
    _log_event(db, task_id, "status_changed", task.status, status)
    db.commit()
    logger.info("Task %s: %s -> %s", task_id, task.status, status)
    return get_task(db, task_id)


def record_attempt(
    db: sqlite3.Connection,
    task_id: str,
    error: str | None = None,
) -> Task:
    """Count an execution attempt; a task out of attempts after an error is blocked."""
    task = _require_task(db, task_id)
    attempts = task.attempts + 1
    db.execute(
        """UPDATE tasks
           SET attempts = ?, last_error = COALESCE(?, last_error), updated_at = ?
           WHERE id = ?""",
        (attempts, error, _now().isoformat(), task_id),
    )
    _log_event(db, task_id, "attempt_recorded", str(task.attempts), str(attempts))
    db.commit()

    if error and attempts >= task.max_attempts and "blocked" in TASK_TRANSITIONS[task.status]:
        logger.warning("Task %s exhausted %d attempts, blocking", task_id, attempts)
        return set_task_status(db, task_id, "blocked")
    return get_task(db, task_id)


# ── Dependencies ──────────────────────────────────────────────────────────────


def add_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> Task:
    """Make task_id depend on depends_on_id (and depends_on_id block task_id)."""
    task = _require_task(db, task_id)
    dep = _require_task(db, depends_on_id)
    if depends_on_id in task.dependencies:
        return task  # Already exists
    validate_dependency(db, task, dep)

    db.execute(
        "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
        (task_id, depends_on_id),
    )
    _touch(db, task_id, depends_on_id)
    _log_event(db, task_id, "dependency_added", None, depends_on_id)
    db.commit()
    return get_task(db, task_id)


def remove_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> Task:
    """Remove a dependency edge; both views lose it together."""
    task = _require_task(db, task_id)
    _require_task(db, depends_on_id)
    if depends_on_id not in task.dependencies:
        return task

    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
        (task_id, depends_on_id),
    )
    _touch(db, task_id, depends_on_id)
    _log_event(db, task_id, "dependency_removed", depends_on_id, None)
    db.commit()
    return get_task(db, task_id)


def get_blocking_tasks(db: sqlite3.Connection, task_id: str) -> list[Task]:
    """Dependencies of a task that have not reached 'done'."""
    rows = db.execute(
        """SELECT t.* FROM task_dependencies d
           JOIN tasks t ON t.id = d.depends_on_task_id
           WHERE d.task_id = ? AND t.status != 'done'
           ORDER BY d.rowid""",
        (task_id,),
    ).fetchall()
    return [_hydrate(db, _row_to_task(r)) for r in rows]


def get_ready_tasks(db: sqlite3.Connection, project_id: str) -> list[Task]:
    """Tasks in backlog/todo whose dependencies are all done."""
    candidates = [
        t for t in list_tasks(db, project_id) if t.status in ("backlog", "todo")
    ]
    return [t for t in candidates if not get_blocking_tasks(db, t.id)]


def validate_dependency(db: sqlite3.Connection, task: Task, dep: Task) -> None:
    """Raise ValidationError unless ``task`` may gain a dependency on ``dep``.

    Edges stay inside one project and never form a cycle (self-edges included).
    """
    if task.id == dep.id:
        raise ValidationError(f"Task {task.id} cannot depend on itself")
    if dep.project_id != task.project_id:
        raise ValidationError(
            f"Cannot link tasks across projects ({task.project_id} / {dep.project_id})"
        )
    if _depends_transitively(db, dep.id, task.id):
        raise ValidationError(f"Dependency {task.id} -> {dep.id} would create a cycle")


def _depends_transitively(db: sqlite3.Connection, start: str, target: str) -> bool:
    """True if ``start`` reaches ``target`` by following dependency edges."""
    stack = [start]
    seen: set[str] = set()
    while stack:
        current = stack.pop()
        if current == target:
            return True
        if current in seen:
            continue
        seen.add(current)
        rows = db.execute(
            "SELECT depends_on_task_id FROM task_dependencies WHERE task_id = ?",
            (current,),
        ).fetchall()
        stack.extend(r["depends_on_task_id"] for r in rows)
    return False


# ── Deletion ──────────────────────────────────────────────────────────────────


def delete_task(db: sqlite3.Connection, task_id: str) -> Task:
    """Delete a task, its edges in both directions, artifacts and subtasks.

    Returns the task as it was just before deletion.
    """
    task = _require_task(db, task_id)

    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? OR depends_on_task_id = ?",
        (task_id, task_id),
    )
    db.execute("DELETE FROM artifacts WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM subtasks WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM task_events WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    logger.info("Deleted task %s", task_id)
    return task


# ── Subtasks ──────────────────────────────────────────────────────────────────


def add_subtask(db: sqlite3.Connection, task_id: str, title: str) -> SubTask:
    """Append a checklist item to a task."""
    _require_task(db, task_id)
    if not title or not title.strip():
        raise ValidationError("Subtask title is required")
    cur = db.execute(
        "INSERT INTO subtasks (task_id, title) VALUES (?, ?)",
        (task_id, title.strip()),
    )
    _touch(db, task_id)
    _log_event(db, task_id, "subtask_added", None, title.strip())
    db.commit()
    return _get_subtask(db, task_id, cur.lastrowid)


def complete_subtask(db: sqlite3.Connection, task_id: str, subtask_id: int) -> SubTask:
    """Tick a checklist item. Completing it twice keeps the first timestamp."""
    _require_task(db, task_id)
    subtask = _get_subtask(db, task_id, subtask_id)
    if not subtask:
        raise NotFoundError("Subtask", subtask_id)
    if subtask.completed:
        return subtask

    now = _now().isoformat()
    db.execute(
        "UPDATE subtasks SET completed = 1, completed_at = ? WHERE id = ?",
        (now, subtask_id),
    )
    _touch(db, task_id)
    _log_event(db, task_id, "subtask_completed", None, subtask.title)
    db.commit()
    return _get_subtask(db, task_id, subtask_id)


def _get_subtask(db: sqlite3.Connection, task_id: str, subtask_id: int) -> SubTask | None:
    row = db.execute(
        "SELECT * FROM subtasks WHERE id = ? AND task_id = ?", (subtask_id, task_id)
    ).fetchone()
    if not row:
        return None
    return _row_to_subtask(row)


# ── Events & helpers ──────────────────────────────────────────────────────────


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def compute_project_completion(tasks: list[Task]) -> int:
    """Percentage of tasks that are done, rounded; 0 for no tasks."""
    if not tasks:
        return 0
    done = sum(1 for t in tasks if t.status == "done")
    return round(100 * done / len(tasks))


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _touch(db: sqlite3.Connection, *task_ids: str):
    now = _now().isoformat()
    for task_id in task_ids:
        db.execute("UPDATE tasks SET updated_at = ? WHERE id = ?", (now, task_id))


def _require_task(db: sqlite3.Connection, task_id: str) -> Task:
    task = get_task(db, task_id)
    if not task:
        raise NotFoundError("Task", task_id)
    return task


def _hydrate(db: sqlite3.Connection, task: Task) -> Task:
    deps = db.execute(
        "SELECT depends_on_task_id FROM task_dependencies WHERE task_id = ? ORDER BY rowid",
        (task.id,),
    ).fetchall()
    task.dependencies = [d["depends_on_task_id"] for d in deps]

    blocked = db.execute(
        "SELECT task_id FROM task_dependencies WHERE depends_on_task_id = ? ORDER BY rowid",
        (task.id,),
    ).fetchall()
    task.blocks = [b["task_id"] for b in blocked]

    artifacts = db.execute(
        "SELECT id FROM artifacts WHERE task_id = ? ORDER BY created_at, rowid",
        (task.id,),
    ).fetchall()
    task.artifact_ids = [a["id"] for a in artifacts]

    subtasks = db.execute(
        "SELECT * FROM subtasks WHERE task_id = ? ORDER BY id",
        (task.id,),
    ).fetchall()
    task.subtasks = [_row_to_subtask(s) for s in subtasks]
    return task


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"] or "",
        status=row["status"],
        priority=row["priority"] if row["priority"] is not None else 3,
        workflow_id=row["workflow_id"],
        assigned_agent_id=row["assigned_agent_id"],
        assigned_role_id=row["assigned_role_id"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        last_error=row["last_error"],
        estimated_duration_minutes=row["estimated_duration_minutes"],
        actual_duration_minutes=row["actual_duration_minutes"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _row_to_subtask(row: sqlite3.Row) -> SubTask:
    return SubTask(
        id=row["id"],
        task_id=row["task_id"],
        title=row["title"],
        completed=bool(row["completed"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _str_or_none(val) -> str | None:
    return None if val is None else str(val)


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
