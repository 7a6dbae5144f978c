"""CLI entry point for the squad ledger."""

import json
import logging
import sys

import click

from squad_ledger.config import get_config
from squad_ledger.core import artifacts as artifacts_mod
from squad_ledger.core import interactions as interactions_mod
from squad_ledger.core import projects as projects_mod
from squad_ledger.core import relationships as relationships_mod
from squad_ledger.core import snapshot as snapshot_mod
from squad_ledger.core import stats as stats_mod
from squad_ledger.core import tasks as tasks_mod
from squad_ledger.db.engine import get_db
from squad_ledger.db.models import (
    ARTIFACT_TYPES,
    INTERACTION_STATUSES,
    INTERACTION_TYPES,
    InteractionResponse,
    PROJECT_MODES,
    PROJECT_STATUSES,
    RELATIONSHIP_TYPES,
    RESPONSE_STATUSES,
    TASK_STATUSES,
)
from squad_ledger.db.serialize import edge_dict, to_dict


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(message: str):
    click.echo(message, err=True)
    sys.exit(1)


def _echo_json(data):
    click.echo(json.dumps(data, indent=2))


def _resolve_project(db, ref: str):
    project = projects_mod.resolve_project(db, ref)
    if not project:
        _fail(f"Project not found: {ref}")
    return project


@click.group()
def main():
    """sq - Squad Ledger CLI"""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Project Commands ──────────────────────────────────────────────────────────


@main.group("project")
def project_group():
    """Manage projects."""
    pass


@project_group.command("create")
@click.argument("name")
@click.option("--mode", type=click.Choice(PROJECT_MODES), default=None, help="Project mode")
@click.option("--description", "-d", default="", help="Project description")
@click.option("--repo", default=None, help="Repository URL (github/hybrid mode)")
@click.option("--folder", default=None, help="Local folder (local/hybrid mode)")
@click.option("--token-budget", type=int, default=None, help="Token budget")
def project_create(name, mode, description, repo, folder, token_budget):
    """Create a new project."""
    config = get_config()
    with _get_db() as db:
        try:
            project = projects_mod.create_project(
                db, name, mode or config.default_project_mode, description,
                repo=repo, folder=folder, token_budget=token_budget,
            )
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Project created: {project.slug} ({project.id})")
        click.echo(f"  Mode: {project.mode}")
        click.echo(f"  Status: {project.status}")


@project_group.command("list")
@click.option("--status", type=click.Choice(PROJECT_STATUSES), default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def project_list(status, json_output):
    """List projects."""
    with _get_db() as db:
        projects = projects_mod.list_projects(db, status=status)

        if json_output:
            _echo_json([to_dict(p) for p in projects])
            return

        if not projects:
            click.echo("No projects found.")
            return

        for project in projects:
            click.echo(f"  {project.slug}: {project.name} ({project.status}, {project.mode})")


@project_group.command("show")
@click.argument("project")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def project_show(project, json_output):
    """Show project details."""
    with _get_db() as db:
        p = _resolve_project(db, project)
        if json_output:
            _echo_json(to_dict(p))
            return

        tasks = tasks_mod.list_tasks(db, p.id)
        click.echo(f"Project: {p.name}")
        click.echo(f"  ID: {p.id}")
        click.echo(f"  Slug: {p.slug}")
        click.echo(f"  Mode: {p.mode}")
        click.echo(f"  Status: {p.status}")
        if p.description:
            click.echo(f"  Description: {p.description}")
        if p.repo:
            click.echo(f"  Repo: {p.repo}")
        if p.folder:
            click.echo(f"  Folder: {p.folder}")
        budget = f" / {p.token_budget}" if p.token_budget else ""
        click.echo(f"  Tokens: {p.tokens_used}{budget}")
        click.echo(f"  Tasks: {len(tasks)} ({tasks_mod.compute_project_completion(tasks)}% done)")


@project_group.command("status")
@click.argument("project")
@click.argument("status", type=click.Choice(PROJECT_STATUSES))
def project_status(project, status):
    """Change a project's status."""
    with _get_db() as db:
        p = _resolve_project(db, project)
        p = projects_mod.set_project_status(db, p.id, status)
        click.echo(f"Project {p.slug} is now {p.status}")


@project_group.command("stats")
@click.argument("project")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def project_stats(project, json_output):
    """Show task and artifact statistics for a project."""
    with _get_db() as db:
        p = _resolve_project(db, project)
        stats = stats_mod.project_stats(db, p.id)

        if json_output:
            _echo_json(to_dict(stats))
            return

        click.echo(f"Project: {p.name}")
        click.echo(f"  Completion: {stats.completion_percentage}%")
        click.echo(f"  Tasks: {stats.total_tasks} total, {stats.completed_tasks} done, "
                   f"{stats.in_progress_tasks} in progress, {stats.blocked_tasks} blocked")
        click.echo(f"  Artifacts: {stats.total_artifacts} total, {stats.approved_artifacts} approved")
        click.echo(f"  Avg task duration: {stats.avg_task_duration_minutes:.1f} min")
        click.echo(f"  Usage: {stats.total_tokens_used} tokens, {stats.total_cost_cents}c")


@project_group.command("delete")
@click.argument("project")
@click.confirmation_option(prompt="Delete this project with all its tasks and artifacts?")
def project_delete(project):
    """Delete a project."""
    with _get_db() as db:
        p = _resolve_project(db, project)
        projects_mod.delete_project(db, p.id)
        click.echo(f"Deleted project: {p.slug}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--project", required=True, help="Project ID or slug")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
@click.option("--priority", "-p", default=3, type=int, help="Priority P0 (highest) to P6 (lowest)")
@click.option("--agent", default=None, help="Assigned agent ID")
@click.option("--workflow", default=None, help="Workflow ID")
def task_add(title, project, description, depends_on, priority, agent, workflow):
    """Create a new task."""
    deps = [d.strip() for d in depends_on.split(",")] if depends_on else None

    with _get_db() as db:
        p = _resolve_project(db, project)
        try:
            task = tasks_mod.create_task(
                db, p.id, title, description, priority=priority,
                assigned_agent_id=agent, workflow_id=workflow, depends_on=deps,
            )
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: P{task.priority}")
        click.echo(f"  Status: {task.status}")
        if task.dependencies:
            click.echo(f"  Depends on: {', '.join(task.dependencies)}")


@task_group.command("list")
@click.option("--project", required=True, help="Project ID or slug")
@click.option("--status", type=click.Choice(TASK_STATUSES), default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project, status, json_output):
    """List tasks."""
    with _get_db() as db:
        p = _resolve_project(db, project)
        tasks = tasks_mod.list_tasks(db, p.id, status=status)

        if json_output:
            _echo_json([to_dict(t) for t in tasks])
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        status_icons = {
            "backlog": "·",
            "todo": "○",
            "in_progress": "●",
            "review": "◐",
            "done": "✓",
            "blocked": "✗",
            "archived": "-",
        }

        for task in tasks:
            icon = status_icons.get(task.status, "?")
            deps = f" [depends: {', '.join(task.dependencies)}]" if task.dependencies else ""
            agent = f" @{task.assigned_agent_id}" if task.assigned_agent_id else ""
            click.echo(f"  {icon} P{task.priority} {task.id}: {task.title} ({task.status}){agent}{deps}")
            for sub in task.subtasks:
                mark = "x" if sub.completed else " "
                click.echo(f"      [{mark}] {sub.id}: {sub.title}")


@task_group.command("show")
@click.argument("task_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_show(task_id, json_output):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")

        if json_output:
            _echo_json(to_dict(task))
            return

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: P{task.priority}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Project: {task.project_id}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.assigned_agent_id:
            click.echo(f"  Agent: {task.assigned_agent_id}")
        if task.dependencies:
            click.echo(f"  Depends on: {', '.join(task.dependencies)}")
        if task.blocks:
            click.echo(f"  Blocks: {', '.join(task.blocks)}")
        if task.artifact_ids:
            click.echo(f"  Artifacts: {len(task.artifact_ids)}")
        if task.subtasks:
            click.echo("  Subtasks:")
            for sub in task.subtasks:
                mark = "x" if sub.completed else " "
                click.echo(f"    [{mark}] {sub.id}: {sub.title}")
        if task.started_at:
            click.echo(f"  Started: {task.started_at.isoformat()}")
        if task.completed_at:
            click.echo(f"  Completed: {task.completed_at.isoformat()}")
        if task.actual_duration_minutes is not None:
            click.echo(f"  Duration: {task.actual_duration_minutes} min")

        events = tasks_mod.get_task_events(db, task_id)
        if events:
            click.echo("  History:")
            for ev in events:
                change = f"{ev.old_value or ''} -> {ev.new_value or ''}"
                click.echo(f"    {ev.created_at.isoformat() if ev.created_at else ''} {ev.event_type} {change}")


@task_group.command("status")
@click.argument("task_id")
@click.argument("status", type=click.Choice(TASK_STATUSES))
def task_status(task_id, status):
    """Move a task to a new status."""
    with _get_db() as db:
        try:
            task = tasks_mod.set_task_status(db, task_id, status)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Task {task.id} is now {task.status}")
        if task.status == "done" and task.actual_duration_minutes is not None:
            click.echo(f"  Took {task.actual_duration_minutes} min")


@task_group.command("assign")
@click.argument("task_id")
@click.argument("agent_id")
@click.option("--role", default=None, help="Role ID")
def task_assign(task_id, agent_id, role):
    """Assign a task to an agent."""
    with _get_db() as db:
        try:
            task = tasks_mod.assign_task(db, task_id, agent_id, role)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Assigned {task.id} to {task.assigned_agent_id}")


@task_group.command("add-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_add_dep(task_id, depends_on_id):
    """Add a dependency to a task."""
    with _get_db() as db:
        try:
            task = tasks_mod.add_dependency(db, task_id, depends_on_id)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Added dependency: {task_id} now depends on {depends_on_id}")
        click.echo(f"  Depends on: {', '.join(task.dependencies)}")


@task_group.command("remove-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_remove_dep(task_id, depends_on_id):
    """Remove a dependency from a task."""
    with _get_db() as db:
        try:
            task = tasks_mod.remove_dependency(db, task_id, depends_on_id)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Removed dependency: {task_id} no longer depends on {depends_on_id}")
        if task.dependencies:
            click.echo(f"  Remaining deps: {', '.join(task.dependencies)}")
        else:
            click.echo("  No remaining dependencies")


@task_group.command("blocking")
@click.argument("task_id")
def task_blocking(task_id):
    """Show the dependencies still keeping a task from starting."""
    with _get_db() as db:
        if not tasks_mod.get_task(db, task_id):
            _fail(f"Task not found: {task_id}")
        blocking = tasks_mod.get_blocking_tasks(db, task_id)
        if not blocking:
            click.echo(f"{task_id} is not blocked.")
            return
        for t in blocking:
            click.echo(f"  {t.id}: {t.title} ({t.status})")


@task_group.command("ready")
@click.option("--project", required=True, help="Project ID or slug")
def task_ready(project):
    """List tasks whose dependencies are all done."""
    with _get_db() as db:
        p = _resolve_project(db, project)
        ready = tasks_mod.get_ready_tasks(db, p.id)
        if not ready:
            click.echo("No ready tasks.")
            return
        for t in ready:
            click.echo(f"  P{t.priority} {t.id}: {t.title} ({t.status})")


@task_group.command("subtask")
@click.argument("task_id")
@click.argument("title")
def task_subtask(task_id, title):
    """Add a checklist item to a task."""
    with _get_db() as db:
        try:
            sub = tasks_mod.add_subtask(db, task_id, title)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Added subtask {sub.id} to {task_id}: {sub.title}")


@task_group.command("subtask-done")
@click.argument("task_id")
@click.argument("subtask_id", type=int)
def task_subtask_done(task_id, subtask_id):
    """Tick a checklist item."""
    with _get_db() as db:
        try:
            sub = tasks_mod.complete_subtask(db, task_id, subtask_id)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Completed subtask {sub.id}: {sub.title}")


@task_group.command("delete")
@click.argument("task_id")
def task_delete(task_id):
    """Delete a task together with its edges and artifacts."""
    with _get_db() as db:
        try:
            task = tasks_mod.delete_task(db, task_id)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Deleted task: {task.id}")
        if task.blocks:
            click.echo(f"  Unblocked: {', '.join(task.blocks)}")


# ── Artifact Commands ─────────────────────────────────────────────────────────


@main.group("artifact")
def artifact_group():
    """Manage task artifacts."""
    pass


@artifact_group.command("add")
@click.argument("task_id")
@click.argument("filename")
@click.option("--agent", required=True, help="Creator agent ID")
@click.option("--type", "artifact_type", type=click.Choice(ARTIFACT_TYPES), default="other")
@click.option("--content-file", type=click.File("r"), default=None, help="Read content from a file")
def artifact_add(task_id, filename, agent, artifact_type, content_file):
    """Attach an artifact to a task."""
    content = content_file.read() if content_file else None
    with _get_db() as db:
        try:
            artifact = artifacts_mod.add_artifact(
                db, task_id, agent, filename, type=artifact_type, content=content
            )
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Added artifact: {artifact.id}")
        click.echo(f"  File: {artifact.filename} ({artifact.size_bytes} bytes)")


@artifact_group.command("approve")
@click.argument("artifact_id")
@click.option("--by", "reviewer", required=True, help="Reviewer ID")
@click.option("--comments", default=None, help="Review comments")
def artifact_approve(artifact_id, reviewer, comments):
    """Approve an artifact."""
    with _get_db() as db:
        try:
            artifact = artifacts_mod.approve_artifact(db, artifact_id, reviewer, comments)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Approved {artifact.filename} (v{artifact.version})")


@artifact_group.command("reject")
@click.argument("artifact_id")
@click.option("--by", "reviewer", required=True, help="Reviewer ID")
@click.option("--comments", required=True, help="Reason for rejection")
def artifact_reject(artifact_id, reviewer, comments):
    """Reject an artifact."""
    with _get_db() as db:
        try:
            artifact = artifacts_mod.reject_artifact(db, artifact_id, reviewer, comments)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Rejected {artifact.filename} (v{artifact.version})")


# ── Relationship Commands ─────────────────────────────────────────────────────


@main.group("rel")
def rel_group():
    """Manage agent relationships."""
    pass


@rel_group.command("add")
@click.argument("source")
@click.argument("target")
@click.argument("rel_type", type=click.Choice(RELATIONSHIP_TYPES))
@click.option("--authority-delta", type=int, default=None, help="Override authority delta (-5..5)")
@click.option("--max-interactions", type=int, default=None, help="Cap per workflow")
@click.option("--bidirectional/--one-way", default=None, help="Override direction")
@click.option("--auto-approval/--manual-approval", default=None, help="Override approval")
@click.option("--priority", type=int, default=None, help="Edge priority")
@click.option("--description", "-d", default=None, help="Description")
def rel_add(source, target, rel_type, authority_delta, max_interactions, bidirectional,
            auto_approval, priority, description):
    """Create a relationship edge between two agents."""
    with _get_db() as db:
        try:
            edge = relationships_mod.create_relationship(
                db, source, target, rel_type,
                authority_delta=authority_delta,
                max_interactions_per_workflow=max_interactions,
                bidirectional=bidirectional,
                auto_approval=auto_approval,
                priority=priority,
                description=description,
            )
        except ValueError as e:
            _fail(f"Error: {e}")
        arrow = "<->" if edge.bidirectional else "->"
        click.echo(f"Created relationship: {edge.id}")
        click.echo(f"  {edge.source_agent_id} {arrow} {edge.target_agent_id} ({edge.type})")
        click.echo(f"  Authority: {edge.authority_delta:+d}")


@rel_group.command("list")
@click.option("--agent", default=None, help="Only edges touching this agent")
@click.option("--type", "rel_type", type=click.Choice(RELATIONSHIP_TYPES), default=None)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def rel_list(agent, rel_type, json_output):
    """List relationships."""
    with _get_db() as db:
        edges = relationships_mod.list_relationships(db, agent_id=agent, type=rel_type)

        if json_output:
            _echo_json([edge_dict(e) for e in edges])
            return

        if not edges:
            click.echo("No relationships found.")
            return

        for edge in edges:
            arrow = "<->" if edge.bidirectional else "->"
            click.echo(
                f"  {edge.id}: {edge.source_agent_id} {arrow} {edge.target_agent_id} "
                f"({edge.type}, {edge.authority_delta:+d})"
            )


@rel_group.command("show")
@click.argument("relationship_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def rel_show(relationship_id, json_output):
    """Show a relationship with its metrics."""
    with _get_db() as db:
        edge = relationships_mod.get_relationship(db, relationship_id)
        if not edge:
            _fail(f"Relationship not found: {relationship_id}")

        if json_output:
            _echo_json(edge_dict(edge))
            return

        m = edge.metrics
        click.echo(f"Relationship: {edge.id}")
        click.echo(f"  {edge.source_agent_id} -> {edge.target_agent_id} ({edge.type})")
        click.echo(f"  Authority: {edge.authority_delta:+d}")
        click.echo(f"  Bidirectional: {edge.bidirectional}")
        click.echo(f"  Auto approval: {edge.auto_approval}")
        if edge.max_interactions_per_workflow:
            click.echo(f"  Max per workflow: {edge.max_interactions_per_workflow}")
        for cond in edge.conditions:
            click.echo(f"  Condition: {cond.type} = {cond.value}")
        click.echo(f"  Interactions: {m.total_interactions} "
                   f"({m.successful_interactions} ok, {m.failed_interactions} failed)")
        if m.success_rate is not None:
            click.echo(f"  Success rate: {m.success_rate:.0%}")
            click.echo(f"  Avg response: {m.avg_response_time:.0f} ms")


# ── Interaction Commands ──────────────────────────────────────────────────────


@main.group("ix")
def ix_group():
    """Record and inspect agent interactions."""
    pass


@ix_group.command("create")
@click.argument("workflow_id")
@click.argument("initiator")
@click.argument("target")
@click.argument("ix_type", type=click.Choice(INTERACTION_TYPES))
@click.argument("message")
@click.option("--task", default=None, help="Linked task ID")
@click.option("--relationship", default=None, help="Relationship edge ID")
@click.option("--parent", default=None, help="Parent interaction ID")
@click.option("--priority", "-p", default=3, type=int, help="Priority 1 (urgent) to 5")
@click.option("--no-policy", is_flag=True, help="Skip relationship policy checks")
def ix_create(workflow_id, initiator, target, ix_type, message, task, relationship, parent,
              priority, no_policy):
    """Record a new interaction."""
    config = get_config()
    with _get_db() as db:
        try:
            ix = interactions_mod.create_interaction(
                db, workflow_id, initiator, target, ix_type, message,
                task_id=task, relationship_id=relationship, parent_interaction_id=parent,
                priority=priority, enforce_policy=config.enforce_policy and not no_policy,
            )
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Created interaction: {ix.id}")


@ix_group.command("start")
@click.argument("interaction_id")
def ix_start(interaction_id):
    """Mark an interaction as in progress."""
    with _get_db() as db:
        try:
            ix = interactions_mod.start_interaction(db, interaction_id)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Interaction {ix.id} is {ix.status}")


@ix_group.command("complete")
@click.argument("interaction_id")
@click.argument("message")
@click.option("--status", type=click.Choice(RESPONSE_STATUSES), default="success")
def ix_complete(interaction_id, message, status):
    """Complete an interaction with a response."""
    with _get_db() as db:
        try:
            ix = interactions_mod.complete_interaction(
                db, interaction_id, InteractionResponse(message=message, status=status)
            )
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Interaction {ix.id} completed in {ix.duration_ms} ms")


@ix_group.command("fail")
@click.argument("interaction_id")
@click.argument("code")
@click.argument("message")
@click.option("--recoverable", is_flag=True, help="The failure can be retried")
def ix_fail(interaction_id, code, message, recoverable):
    """Fail an interaction."""
    with _get_db() as db:
        try:
            ix = interactions_mod.fail_interaction(db, interaction_id, code, message, recoverable)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Interaction {ix.id} failed ({code}) after {ix.duration_ms} ms")


@ix_group.command("cancel")
@click.argument("interaction_id")
def ix_cancel(interaction_id):
    """Cancel an open interaction."""
    with _get_db() as db:
        try:
            ix = interactions_mod.cancel_interaction(db, interaction_id)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Interaction {ix.id} cancelled")


@ix_group.command("timeout")
@click.argument("interaction_id")
def ix_timeout(interaction_id):
    """Declare that an open interaction timed out."""
    with _get_db() as db:
        try:
            ix = interactions_mod.timeout_interaction(db, interaction_id)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Interaction {ix.id} timed out")


@ix_group.command("chain")
@click.argument("interaction_id")
def ix_chain(interaction_id):
    """Show an interaction and its ancestors, root first."""
    with _get_db() as db:
        chain = interactions_mod.get_chain(db, interaction_id)
        if not chain:
            _fail(f"Interaction not found: {interaction_id}")
        for depth, ix in enumerate(chain):
            indent = "  " * (depth + 1)
            click.echo(f"{indent}{ix.id} {ix.interaction_type} "
                       f"{ix.initiator_agent_id} -> {ix.target_agent_id} ({ix.status})")


@ix_group.command("list")
@click.option("--workflow", default=None, help="Workflow ID")
@click.option("--agent", default=None, help="Initiator or target agent")
@click.option("--type", "ix_type", type=click.Choice(INTERACTION_TYPES), default=None)
@click.option("--status", type=click.Choice(INTERACTION_STATUSES), default=None)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def ix_list(workflow, agent, ix_type, status, json_output):
    """List interactions, oldest first."""
    with _get_db() as db:
        found = interactions_mod.filter_interactions(
            db, workflow_id=workflow, agent_id=agent, interaction_type=ix_type, status=status
        )

        if json_output:
            _echo_json([to_dict(i) for i in found])
            return

        if not found:
            click.echo("No interactions found.")
            return

        for ix in found:
            duration = f" {ix.duration_ms} ms" if ix.duration_ms is not None else ""
            click.echo(f"  {ix.id} [{ix.workflow_id}] {ix.interaction_type} "
                       f"{ix.initiator_agent_id} -> {ix.target_agent_id} ({ix.status}){duration}")


@ix_group.command("stats")
@click.option("--workflow", default=None, help="Workflow ID")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def ix_stats(workflow, json_output):
    """Show interaction statistics."""
    with _get_db() as db:
        stats = stats_mod.interaction_stats(db, workflow)

        if json_output:
            _echo_json(to_dict(stats))
            return

        click.echo(f"Interactions: {stats.total}")
        click.echo(f"  Pending: {stats.pending}")
        click.echo(f"  In progress: {stats.in_progress}")
        click.echo(f"  Completed: {stats.completed}")
        click.echo(f"  Failed: {stats.failed}")
        click.echo(f"  Avg duration: {stats.avg_duration_ms:.0f} ms")
        click.echo(f"  Tokens: {stats.total_tokens}")


# ── Snapshot Commands ─────────────────────────────────────────────────────────


@main.group("snapshot")
def snapshot_group():
    """Export or import the whole ledger."""
    pass


@snapshot_group.command("export")
@click.argument("output", type=click.File("w"), default="-")
def snapshot_export(output):
    """Write a JSON snapshot (to stdout by default)."""
    with _get_db() as db:
        data = snapshot_mod.export_snapshot(db)
    json.dump(data, output, indent=2)
    output.write("\n")


@snapshot_group.command("import")
@click.argument("source", type=click.File("r"))
@click.option("--merge", is_flag=True, help="Keep existing rows instead of replacing everything")
def snapshot_import(source, merge):
    """Load a JSON snapshot."""
    try:
        data = json.load(source)
    except json.JSONDecodeError as e:
        _fail(f"Error: invalid snapshot: {e}")
    with _get_db() as db:
        try:
            counts = snapshot_mod.import_snapshot(db, data, replace=not merge)
        except ValueError as e:
            _fail(f"Error: {e}")
    click.echo("Imported: " + ", ".join(f"{v} {k}" for k, v in counts.items()))


# ── Server Commands ──────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Serve the read-only reporting API."""
    from squad_ledger.web.app import run_server

    click.echo(f"Serving reporting API at http://{host}:{port}/api")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from squad_ledger.mcp.server import mcp
    from squad_ledger.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
