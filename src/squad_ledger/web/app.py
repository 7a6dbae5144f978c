"""Read-only reporting API for the squad ledger."""

from datetime import datetime

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from squad_ledger.config import get_config
from squad_ledger.core import interactions as interactions_mod
from squad_ledger.core import projects as projects_mod
from squad_ledger.core import relationships as relationships_mod
from squad_ledger.core import stats as stats_mod
from squad_ledger.core import tasks as tasks_mod
from squad_ledger.db.engine import init_db
from squad_ledger.db.serialize import edge_dict, to_dict


def _get_db():
    config = get_config()
    return init_db(config.db_path)


def _not_found(kind: str) -> JSONResponse:
    return JSONResponse({"error": f"{kind} not found"}, status_code=404)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    status_filter = request.query_params.get("status")
    db = _get_db()
    try:
        projects = projects_mod.list_projects(db, status=status_filter)
        return JSONResponse([to_dict(p) for p in projects])
    finally:
        db.close()


async def api_get_project(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        project = projects_mod.resolve_project(db, project_id)
        if not project:
            return _not_found("Project")
        tasks = tasks_mod.list_tasks(db, project.id)
        pd = to_dict(project)
        pd["task_count"] = len(tasks)
        pd["completion_percentage"] = tasks_mod.compute_project_completion(tasks)
        return JSONResponse(pd)
    finally:
        db.close()


async def api_project_tasks(request: Request):
    project_id = request.path_params["project_id"]
    status_filter = request.query_params.get("status")
    db = _get_db()
    try:
        project = projects_mod.resolve_project(db, project_id)
        if not project:
            return _not_found("Project")
        tasks = tasks_mod.list_tasks(db, project.id, status=status_filter)
        return JSONResponse([to_dict(t) for t in tasks])
    finally:
        db.close()


async def api_project_stats(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        project = projects_mod.resolve_project(db, project_id)
        if not project:
            return _not_found("Project")
        return JSONResponse(to_dict(stats_mod.project_stats(db, project.id)))
    finally:
        db.close()


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            return _not_found("Task")
        td = to_dict(task)
        td["blocking"] = [t.id for t in tasks_mod.get_blocking_tasks(db, task_id)]
        td["events"] = [to_dict(e) for e in tasks_mod.get_task_events(db, task_id)]
        return JSONResponse(td)
    finally:
        db.close()


async def api_list_relationships(request: Request):
    agent_id = request.query_params.get("agent")
    rel_type = request.query_params.get("type")
    db = _get_db()
    try:
        edges = relationships_mod.list_relationships(db, agent_id=agent_id, type=rel_type)
        return JSONResponse([edge_dict(e) for e in edges])
    finally:
        db.close()


async def api_list_interactions(request: Request):
    params = request.query_params
    try:
        from_date = _parse_date(params.get("from"))
        to_date = _parse_date(params.get("to"))
    except ValueError:
        return JSONResponse({"error": "Dates must be ISO-8601"}, status_code=400)

    intervention = params.get("intervention")
    has_intervention = None if intervention is None else intervention.lower() in ("1", "true", "yes")

    db = _get_db()
    try:
        found = interactions_mod.filter_interactions(
            db,
            workflow_id=params.get("workflow"),
            agent_id=params.get("agent"),
            interaction_type=params.get("type"),
            status=params.get("status"),
            from_date=from_date,
            to_date=to_date,
            has_user_intervention=has_intervention,
        )
        return JSONResponse([to_dict(i) for i in found])
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    finally:
        db.close()


async def api_interaction_chain(request: Request):
    interaction_id = request.path_params["interaction_id"]
    db = _get_db()
    try:
        chain = interactions_mod.get_chain(db, interaction_id)
        if not chain:
            return _not_found("Interaction")
        return JSONResponse([to_dict(i) for i in chain])
    finally:
        db.close()


async def api_interaction_stats(request: Request):
    workflow_id = request.query_params.get("workflow")
    db = _get_db()
    try:
        return JSONResponse(to_dict(stats_mod.interaction_stats(db, workflow_id)))
    finally:
        db.close()


async def api_agent_stats(request: Request):
    agent_id = request.path_params["agent_id"]
    db = _get_db()
    try:
        return JSONResponse(to_dict(stats_mod.agent_stats(db, agent_id)))
    finally:
        db.close()


def _parse_date(val: str | None) -> datetime | None:
    if not val:
        return None
    return datetime.fromisoformat(val)


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{project_id}", api_get_project),
        Route("/api/projects/{project_id}/tasks", api_project_tasks),
        Route("/api/projects/{project_id}/stats", api_project_stats),
        Route("/api/tasks/{task_id}", api_get_task),
        Route("/api/relationships", api_list_relationships),
        Route("/api/interactions", api_list_interactions),
        Route("/api/interactions/{interaction_id}/chain", api_interaction_chain),
        Route("/api/stats/interactions", api_interaction_stats),
        Route("/api/agents/{agent_id}/stats", api_agent_stats),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
