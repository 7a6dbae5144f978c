"""MCP server exposing the squad ledger to an execution engine."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from squad_ledger.config import Config, get_config
from squad_ledger.core import artifacts as artifacts_mod
from squad_ledger.core import interactions as interactions_mod
from squad_ledger.core import projects as projects_mod
from squad_ledger.core import relationships as relationships_mod
from squad_ledger.core import stats as stats_mod
from squad_ledger.core import tasks as tasks_mod
from squad_ledger.db.engine import init_db
from squad_ledger.db.models import InteractionResponse
from squad_ledger.db.serialize import edge_dict, to_dict


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    try:
        yield AppContext(db=db, config=config)
    finally:
        db.close()


mcp = FastMCP("squad-ledger", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _project_id(app: AppContext, project: str) -> str | None:
    found = projects_mod.resolve_project(app.db, project)
    return found.id if found else None


# ── Project Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def create_project(
    ctx: Context,
    name: str,
    mode: str | None = None,
    description: str = "",
    repo: str | None = None,
    folder: str | None = None,
) -> dict:
    """Create a project. Mode is local, github or hybrid."""
    app = _ctx(ctx)
    try:
        project = projects_mod.create_project(
            app.db, name, mode or app.config.default_project_mode, description,
            repo=repo, folder=folder,
        )
    except ValueError as e:
        return {"error": str(e)}
    return to_dict(project)


@mcp.tool()
def list_projects(ctx: Context, status: str | None = None) -> list[dict]:
    """List projects, newest first."""
    app = _ctx(ctx)
    return [to_dict(p) for p in projects_mod.list_projects(app.db, status=status)]


@mcp.tool()
def project_stats(ctx: Context, project: str) -> dict:
    """Task, artifact and usage statistics for a project (ID or slug)."""
    app = _ctx(ctx)
    project_id = _project_id(app, project)
    if not project_id:
        return {"error": f"Project not found: {project}"}
    return to_dict(stats_mod.project_stats(app.db, project_id))


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    project: str,
    title: str,
    description: str = "",
    depends_on: list[str] | None = None,
    priority: int = 3,
    assigned_agent_id: str | None = None,
    workflow_id: str | None = None,
) -> dict:
    """Create a new task in a project. Priority: P0 (highest) to P6 (lowest), default P3."""
    app = _ctx(ctx)
    project_id = _project_id(app, project)
    if not project_id:
        return {"error": f"Project not found: {project}"}
    try:
        task = tasks_mod.create_task(
            app.db, project_id, title, description, priority=priority,
            assigned_agent_id=assigned_agent_id, workflow_id=workflow_id,
            depends_on=depends_on,
        )
    except ValueError as e:
        return {"error": str(e)}
    return to_dict(task)


@mcp.tool()
def list_tasks(
    ctx: Context,
    project: str,
    status: str | None = None,
    assigned_agent_id: str | None = None,
) -> list[dict]:
    """List a project's tasks, optionally filtered by status or agent."""
    app = _ctx(ctx)
    project_id = _project_id(app, project)
    if not project_id:
        return []
    tasks = tasks_mod.list_tasks(
        app.db, project_id, status=status, assigned_agent_id=assigned_agent_id
    )
    return [to_dict(t) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get full details of a task including dependencies, blocks and subtasks."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    result = to_dict(task)
    result["blocking"] = [t.id for t in tasks_mod.get_blocking_tasks(app.db, task_id)]
    return result


@mcp.tool()
def set_task_status(ctx: Context, task_id: str, status: str) -> dict:
    """Move a task to a new status.

    Valid statuses: backlog, todo, in_progress, review, blocked, done, archived.
    A task cannot enter in_progress while any dependency is not done.
    """
    app = _ctx(ctx)
    try:
        task = tasks_mod.set_task_status(app.db, task_id, status)
    except ValueError as e:
        return {"error": str(e)}
    return to_dict(task)


@mcp.tool()
def record_attempt(ctx: Context, task_id: str, error: str | None = None) -> dict:
    """Count an execution attempt on a task; pass the error if it failed."""
    app = _ctx(ctx)
    try:
        return to_dict(tasks_mod.record_attempt(app.db, task_id, error))
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def add_dependency(ctx: Context, task_id: str, depends_on_id: str) -> dict:
    """Add a dependency to a task. The task cannot start until the dependency is done."""
    app = _ctx(ctx)
    try:
        return to_dict(tasks_mod.add_dependency(app.db, task_id, depends_on_id))
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def remove_dependency(ctx: Context, task_id: str, depends_on_id: str) -> dict:
    """Remove a dependency from a task."""
    app = _ctx(ctx)
    try:
        return to_dict(tasks_mod.remove_dependency(app.db, task_id, depends_on_id))
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def get_ready_tasks(ctx: Context, project: str) -> list[dict]:
    """Get backlog/todo tasks whose dependencies are all done."""
    app = _ctx(ctx)
    project_id = _project_id(app, project)
    if not project_id:
        return []
    return [to_dict(t) for t in tasks_mod.get_ready_tasks(app.db, project_id)]


@mcp.tool()
def add_subtask(ctx: Context, task_id: str, title: str) -> dict:
    """Add a checklist item to a task."""
    app = _ctx(ctx)
    try:
        return to_dict(tasks_mod.add_subtask(app.db, task_id, title))
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def complete_subtask(ctx: Context, task_id: str, subtask_id: int) -> dict:
    """Tick a checklist item."""
    app = _ctx(ctx)
    try:
        return to_dict(tasks_mod.complete_subtask(app.db, task_id, subtask_id))
    except ValueError as e:
        return {"error": str(e)}


# ── Artifact Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def add_artifact(
    ctx: Context,
    task_id: str,
    creator_agent_id: str,
    filename: str,
    content: str | None = None,
    type: str = "other",
) -> dict:
    """Attach an artifact produced by an agent to a task."""
    app = _ctx(ctx)
    try:
        artifact = artifacts_mod.add_artifact(
            app.db, task_id, creator_agent_id, filename, type=type, content=content
        )
    except ValueError as e:
        return {"error": str(e)}
    return to_dict(artifact)


@mcp.tool()
def review_artifact(
    ctx: Context,
    artifact_id: str,
    reviewed_by: str,
    approved: bool,
    comments: str | None = None,
) -> dict:
    """Approve or reject an artifact. Rejections need comments."""
    app = _ctx(ctx)
    try:
        if approved:
            artifact = artifacts_mod.approve_artifact(app.db, artifact_id, reviewed_by, comments)
        else:
            artifact = artifacts_mod.reject_artifact(app.db, artifact_id, reviewed_by, comments)
    except ValueError as e:
        return {"error": str(e)}
    return to_dict(artifact)


# ── Relationship Tools ────────────────────────────────────────────────────────


@mcp.tool()
def create_relationship(
    ctx: Context,
    source_agent_id: str,
    target_agent_id: str,
    type: str,
    authority_delta: int | None = None,
    max_interactions_per_workflow: int | None = None,
    bidirectional: bool | None = None,
    description: str | None = None,
) -> dict:
    """Create a relationship edge. Unset policy fields take the type's defaults."""
    app = _ctx(ctx)
    try:
        edge = relationships_mod.create_relationship(
            app.db, source_agent_id, target_agent_id, type,
            authority_delta=authority_delta,
            max_interactions_per_workflow=max_interactions_per_workflow,
            bidirectional=bidirectional,
            description=description,
        )
    except ValueError as e:
        return {"error": str(e)}
    return edge_dict(edge)


@mcp.tool()
def list_relationships(
    ctx: Context,
    agent_id: str | None = None,
    type: str | None = None,
) -> list[dict]:
    """List relationship edges, optionally those touching one agent."""
    app = _ctx(ctx)
    edges = relationships_mod.list_relationships(app.db, agent_id=agent_id, type=type)
    return [edge_dict(e) for e in edges]


@mcp.tool()
def find_relationship(
    ctx: Context,
    initiator_agent_id: str,
    target_agent_id: str,
    type: str | None = None,
) -> dict:
    """Find the edge an initiator would use to reach a target."""
    app = _ctx(ctx)
    edge = relationships_mod.find_relationship(app.db, initiator_agent_id, target_agent_id, type)
    if not edge:
        return {"error": f"No relationship from {initiator_agent_id} to {target_agent_id}"}
    return edge_dict(edge)


# ── Interaction Tools ─────────────────────────────────────────────────────────


@mcp.tool()
def create_interaction(
    ctx: Context,
    workflow_id: str,
    initiator_agent_id: str,
    target_agent_id: str,
    interaction_type: str,
    message: str,
    task_id: str | None = None,
    relationship_id: str | None = None,
    parent_interaction_id: str | None = None,
    priority: int = 3,
    thinking: str | None = None,
) -> dict:
    """Record a new pending interaction between two agents.

    If relationship_id is given, the edge's policy (direction, per-workflow
    cap, authority, conditions) is enforced unless disabled in config.
    """
    app = _ctx(ctx)
    try:
        ix = interactions_mod.create_interaction(
            app.db, workflow_id, initiator_agent_id, target_agent_id, interaction_type,
            message, task_id=task_id, relationship_id=relationship_id,
            parent_interaction_id=parent_interaction_id, priority=priority,
            thinking=thinking, enforce_policy=app.config.enforce_policy,
        )
    except ValueError as e:
        return {"error": str(e)}
    return to_dict(ix)


@mcp.tool()
def start_interaction(ctx: Context, interaction_id: str) -> dict:
    """Mark a pending interaction as in progress."""
    app = _ctx(ctx)
    try:
        return to_dict(interactions_mod.start_interaction(app.db, interaction_id))
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def complete_interaction(
    ctx: Context,
    interaction_id: str,
    message: str,
    status: str = "success",
    artifacts: list[str] | None = None,
    metadata: dict | None = None,
) -> dict:
    """Complete an interaction with the target's response."""
    app = _ctx(ctx)
    response = InteractionResponse(
        message=message, status=status, artifacts=artifacts or [], metadata=metadata or {}
    )
    try:
        return to_dict(interactions_mod.complete_interaction(app.db, interaction_id, response))
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def fail_interaction(
    ctx: Context,
    interaction_id: str,
    code: str,
    message: str,
    recoverable: bool = False,
) -> dict:
    """Fail an interaction with an error code and message."""
    app = _ctx(ctx)
    try:
        return to_dict(
            interactions_mod.fail_interaction(app.db, interaction_id, code, message, recoverable)
        )
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def cancel_interaction(ctx: Context, interaction_id: str) -> dict:
    """Cancel a pending or in-progress interaction."""
    app = _ctx(ctx)
    try:
        return to_dict(interactions_mod.cancel_interaction(app.db, interaction_id))
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def timeout_interaction(ctx: Context, interaction_id: str) -> dict:
    """Declare that a pending or in-progress interaction timed out."""
    app = _ctx(ctx)
    try:
        return to_dict(interactions_mod.timeout_interaction(app.db, interaction_id))
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def add_user_intervention(
    ctx: Context,
    interaction_id: str,
    type: str,
    message: str,
    urgency: str = "suggestion",
    paused_execution: bool = False,
) -> dict:
    """Attach a human intervention (guidance, override, approval, rejection, cancel)."""
    app = _ctx(ctx)
    try:
        ix = interactions_mod.add_user_intervention(
            app.db, interaction_id, type, message, urgency, paused_execution
        )
    except ValueError as e:
        return {"error": str(e)}
    return to_dict(ix)


@mcp.tool()
def record_token_usage(
    ctx: Context,
    interaction_id: str,
    input_tokens: int,
    output_tokens: int,
) -> dict:
    """Record model token usage for an interaction."""
    app = _ctx(ctx)
    try:
        ix = interactions_mod.record_token_usage(app.db, interaction_id, input_tokens, output_tokens)
    except ValueError as e:
        return {"error": str(e)}
    return to_dict(ix)


@mcp.tool()
def get_interaction_chain(ctx: Context, interaction_id: str) -> list[dict]:
    """Get an interaction and its ancestors, root first."""
    app = _ctx(ctx)
    return [to_dict(i) for i in interactions_mod.get_chain(app.db, interaction_id)]


@mcp.tool()
def get_workflow_timeline(ctx: Context, workflow_id: str) -> list[dict]:
    """Get every interaction of a workflow, oldest first."""
    app = _ctx(ctx)
    return [to_dict(i) for i in interactions_mod.get_workflow_timeline(app.db, workflow_id)]


@mcp.tool()
def get_pending_interactions(ctx: Context, workflow_id: str | None = None) -> list[dict]:
    """Get interactions still waiting to be started, most urgent first."""
    app = _ctx(ctx)
    return [to_dict(i) for i in interactions_mod.get_pending_interactions(app.db, workflow_id)]


@mcp.tool()
def interaction_stats(ctx: Context, workflow_id: str | None = None) -> dict:
    """Status counts, average completion time and token total."""
    app = _ctx(ctx)
    return to_dict(stats_mod.interaction_stats(app.db, workflow_id))
