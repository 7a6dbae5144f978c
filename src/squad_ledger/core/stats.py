"""Aggregate statistics over the ledger and task graph. Recomputed on every call."""

import sqlite3

from squad_ledger.core.errors import NotFoundError
from squad_ledger.core.projects import get_project
from squad_ledger.core.tasks import compute_project_completion, list_tasks
from squad_ledger.db.models import AgentStats, InteractionStats, ProjectStats


def interaction_stats(
    db: sqlite3.Connection,
    workflow_id: str | None = None,
) -> InteractionStats:
    """Status counts, mean duration of completed interactions, and token total."""
    where = "WHERE workflow_id = ?" if workflow_id else ""
    params = (workflow_id,) if workflow_id else ()
    row = db.execute(
        f"""SELECT
               COUNT(*) AS total,
               SUM(status = 'pending') AS pending,
               SUM(status = 'in_progress') AS in_progress,
               SUM(status = 'completed') AS completed,
               SUM(status = 'failed') AS failed,
               AVG(CASE WHEN status = 'completed' THEN duration_ms END) AS avg_duration,
               SUM(COALESCE(total_tokens, 0)) AS tokens
           FROM interactions {where}""",
        params,
    ).fetchone()
    return InteractionStats(
        total=row["total"],
        pending=row["pending"] or 0,
        in_progress=row["in_progress"] or 0,
        completed=row["completed"] or 0,
        failed=row["failed"] or 0,
        avg_duration_ms=row["avg_duration"] or 0.0,
        total_tokens=row["tokens"] or 0,
    )


def project_stats(db: sqlite3.Connection, project_id: str) -> ProjectStats:
    project = get_project(db, project_id)
    if not project:
        raise NotFoundError("Project", project_id)

    tasks = list_tasks(db, project_id)
    done = [t for t in tasks if t.status == "done"]
    durations = [t.actual_duration_minutes for t in done if t.actual_duration_minutes is not None]

    artifacts = db.execute(
        """SELECT COUNT(*) AS total, SUM(status = 'approved') AS approved
           FROM artifacts WHERE project_id = ?""",
        (project_id,),
    ).fetchone()

    return ProjectStats(
        total_tasks=len(tasks),
        completed_tasks=len(done),
        in_progress_tasks=sum(1 for t in tasks if t.status == "in_progress"),
        blocked_tasks=sum(1 for t in tasks if t.status == "blocked"),
        total_artifacts=artifacts["total"],
        approved_artifacts=artifacts["approved"] or 0,
        total_tokens_used=project.tokens_used,
        total_cost_cents=project.cost_spent_cents,
        avg_task_duration_minutes=sum(durations) / len(durations) if durations else 0.0,
        completion_percentage=compute_project_completion(tasks),
    )


def agent_stats(db: sqlite3.Connection, agent_id: str) -> AgentStats:
    row = db.execute(
        """SELECT
               SUM(initiator_agent_id = :agent) AS initiated,
               SUM(target_agent_id = :agent) AS received,
               SUM(status = 'completed') AS completed,
               SUM(status = 'failed') AS failed,
               AVG(CASE WHEN status = 'completed' THEN duration_ms END) AS avg_duration
           FROM interactions
           WHERE initiator_agent_id = :agent OR target_agent_id = :agent""",
        {"agent": agent_id},
    ).fetchone()
    return AgentStats(
        agent_id=agent_id,
        initiated=row["initiated"] or 0,
        received=row["received"] or 0,
        completed=row["completed"] or 0,
        failed=row["failed"] or 0,
        avg_duration_ms=row["avg_duration"] or 0.0,
    )
