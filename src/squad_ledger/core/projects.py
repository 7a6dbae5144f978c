"""Project management operations."""

import logging
import re
import sqlite3
import uuid
from datetime import datetime, timezone

from squad_ledger.core.errors import NotFoundError, ValidationError
from squad_ledger.db.models import PROJECT_MODES, PROJECT_STATUSES, Project

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def slugify_name(name: str) -> str:
    """Lower-case the name and collapse runs of non-alphanumerics into '-'."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower())
    return slug.strip("-") or "project"


def _unique_slug(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique project slug, appending a number if needed."""
    candidate = base_slug
    i = 2
    while db.execute("SELECT 1 FROM projects WHERE slug = ?", (candidate,)).fetchone():
        candidate = f"{base_slug}-{i}"
        i += 1
    return candidate


def create_project(
    db: sqlite3.Connection,
    name: str,
    mode: str = "local",
    description: str = "",
    repo: str | None = None,
    folder: str | None = None,
    token_budget: int | None = None,
    cost_budget_cents: int | None = None,
) -> Project:
    """Create a new project in the 'planning' status."""
    if not name or not name.strip():
        raise ValidationError("Project name is required")
    if mode not in PROJECT_MODES:
        raise ValidationError(f"Unknown project mode: {mode}")

    project_id = str(uuid.uuid4())
    slug = _unique_slug(db, slugify_name(name))
    now = _now().isoformat()

    db.execute(
        """INSERT INTO projects
           (id, slug, name, description, mode, repo, folder, token_budget,
            cost_budget_cents, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (project_id, slug, name.strip(), description, mode, repo, folder,
         token_budget, cost_budget_cents, now, now),
    )
    db.commit()
    logger.info("Created project %s (%s)", slug, project_id)
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def get_project_by_slug(db: sqlite3.Connection, slug: str) -> Project | None:
    row = db.execute("SELECT * FROM projects WHERE slug = ?", (slug,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def resolve_project(db: sqlite3.Connection, id_or_slug: str) -> Project | None:
    """Look a project up by ID first, then by slug."""
    return get_project(db, id_or_slug) or get_project_by_slug(db, id_or_slug)


def list_projects(db: sqlite3.Connection, status: str | None = None) -> list[Project]:
    """List all projects, newest first."""
    query = "SELECT * FROM projects"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY created_at DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_project(r) for r in rows]


def update_project(
    db: sqlite3.Connection,
    project_id: str,
    **kwargs,
) -> Project:
    """Update project fields."""
    _require_project(db, project_id)
    allowed = {"name", "description", "repo", "folder", "token_budget", "cost_budget_cents"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if "name" in updates and not str(updates["name"]).strip():
        raise ValidationError("Project name is required")
    if not updates:
        return get_project(db, project_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [_now().isoformat(), project_id]
    db.execute(
        f"UPDATE projects SET {set_clause}, updated_at = ? WHERE id = ?",
        values,
    )
    db.commit()
    return get_project(db, project_id)


def set_project_status(db: sqlite3.Connection, project_id: str, status: str) -> Project:
    """Change a project's status; 'completed' stamps completed_at."""
    project = _require_project(db, project_id)
    if status not in PROJECT_STATUSES:
        raise ValidationError(f"Unknown project status: {status}")

    now = _now().isoformat()
    completed_at = project.completed_at.isoformat() if project.completed_at else None
    if status == "completed":
        completed_at = now
    db.execute(
        "UPDATE projects SET status = ?, completed_at = ?, updated_at = ? WHERE id = ?",
        (status, completed_at, now, project_id),
    )
    db.commit()
    logger.info("Project %s: %s -> %s", project.slug, project.status, status)
    return get_project(db, project_id)


def record_usage(
    db: sqlite3.Connection,
    project_id: str,
    tokens: int = 0,
    cost_cents: int = 0,
) -> Project:
    """Add token and cost consumption to the project's running counters."""
    _require_project(db, project_id)
    if tokens < 0 or cost_cents < 0:
        raise ValidationError("Usage amounts must be non-negative")
    db.execute(
        """UPDATE projects
           SET tokens_used = tokens_used + ?, cost_spent_cents = cost_spent_cents + ?,
               updated_at = ?
           WHERE id = ?""",
        (tokens, cost_cents, _now().isoformat(), project_id),
    )
    db.commit()
    return get_project(db, project_id)


def delete_project(db: sqlite3.Connection, project_id: str) -> None:
    """Delete a project together with its tasks and artifacts."""
    project = _require_project(db, project_id)
    # Tasks, artifacts, edges, subtasks and events go via ON DELETE CASCADE.
    db.execute("DELETE FROM projects WHERE id = ?", (project_id,))
    db.commit()
    logger.info("Deleted project %s", project.slug)


def _require_project(db: sqlite3.Connection, project_id: str) -> Project:
    project = get_project(db, project_id)
    if not project:
        raise NotFoundError("Project", project_id)
    return project


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        slug=row["slug"],
        name=row["name"],
        description=row["description"] or "",
        mode=row["mode"],
        repo=row["repo"],
        folder=row["folder"],
        status=row["status"],
        token_budget=row["token_budget"],
        tokens_used=row["tokens_used"],
        cost_budget_cents=row["cost_budget_cents"],
        cost_spent_cents=row["cost_spent_cents"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
