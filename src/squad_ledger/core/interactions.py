"""Interaction ledger: append-mostly log of agent-to-agent messages.

Lifecycle::

    pending -> in_progress -> completed | failed
    pending | in_progress -> cancelled | timeout

``duration_ms`` measures creation to result and is set for ``completed``
and ``failed`` only. Timeouts are declared by the caller; the ledger keeps
no timers.
"""

import json
import logging
import sqlite3
import uuid
from dataclasses import asdict, replace
from datetime import datetime, timezone

from squad_ledger.core import relationships
from squad_ledger.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from squad_ledger.core.tasks import get_task
from squad_ledger.db.models import (
    INTERACTION_STATUSES,
    INTERACTION_TYPES,
    INTERVENTION_TYPES,
    INTERVENTION_URGENCIES,
    RESPONSE_STATUSES,
    TERMINAL_INTERACTION_STATUSES,
    Interaction,
    InteractionError,
    InteractionResponse,
    RelationshipEdge,
    TokenUsage,
    UserIntervention,
)

logger = logging.getLogger(__name__)

# Interaction types that exercise authority over the target.
AUTHORITY_TYPES = frozenset({"task_assign", "handoff", "approve", "reject"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


def create_interaction(
    db: sqlite3.Connection,
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
    enforce_policy: bool = True,
) -> Interaction:
    """Record a new pending interaction.

    With ``enforce_policy`` and a ``relationship_id``, the edge's policy must
    allow the interaction or ``PolicyViolationError`` is raised and nothing
    is written.
    """
    if not workflow_id:
        raise ValidationError("Workflow ID is required")
    if not initiator_agent_id or not target_agent_id:
        raise ValidationError("Initiator and target agent IDs are required")
    if interaction_type not in INTERACTION_TYPES:
        raise ValidationError(f"Unknown interaction type: {interaction_type}")
    if not message or not message.strip():
        raise ValidationError("Interaction message is required")

    if task_id and not get_task(db, task_id):
        raise NotFoundError("Task", task_id)
    if parent_interaction_id and not get_interaction(db, parent_interaction_id):
        raise NotFoundError("Interaction", parent_interaction_id)
    if relationship_id:
        edge = relationships.get_relationship(db, relationship_id)
        if not edge:
            raise NotFoundError("Relationship", relationship_id)
        if enforce_policy:
            _check_policy(db, edge, workflow_id, initiator_agent_id, target_agent_id,
                          interaction_type, task_id)

    interaction_id = str(uuid.uuid4())
    priority = max(1, min(5, priority))
    db.execute(
        """INSERT INTO interactions
           (id, workflow_id, initiator_agent_id, target_agent_id, interaction_type,
            task_id, relationship_id, parent_interaction_id, priority, message,
            thinking, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (interaction_id, workflow_id, initiator_agent_id, target_agent_id, interaction_type,
         task_id, relationship_id, parent_interaction_id, priority, message, thinking,
         _now().isoformat()),
    )
    db.commit()
    logger.info(
        "Interaction %s (%s) %s -> %s", interaction_id, interaction_type,
        initiator_agent_id, target_agent_id,
    )
    return get_interaction(db, interaction_id)


def _check_policy(
    db: sqlite3.Connection,
    edge: RelationshipEdge,
    workflow_id: str,
    initiator_agent_id: str,
    target_agent_id: str,
    interaction_type: str,
    task_id: str | None,
):
    if not relationships.connects(edge, initiator_agent_id, target_agent_id):
        raise PolicyViolationError(
            f"Relationship {edge.id} does not connect {initiator_agent_id} to {target_agent_id}"
        )

    cap = edge.max_interactions_per_workflow
    if cap is not None:
        used = db.execute(
            """SELECT COUNT(*) FROM interactions
               WHERE relationship_id = ? AND workflow_id = ? AND status != 'cancelled'""",
            (edge.id, workflow_id),
        ).fetchone()[0]
        if used >= cap:
            raise PolicyViolationError(
                f"Relationship {edge.id} allows {cap} interactions per workflow; "
                f"{used} already recorded in {workflow_id}"
            )

    if interaction_type in AUTHORITY_TYPES:
        authority = relationships.effective_authority(edge, initiator_agent_id)
        if authority < 0:
            raise PolicyViolationError(
                f"{initiator_agent_id} lacks authority for {interaction_type} "
                f"over relationship {edge.id} (authority {authority})"
            )

    task = get_task(db, task_id) if task_id else None
    for cond in edge.conditions:
        if cond.type == "task_status":
            if not task or task.status != cond.value:
                raise PolicyViolationError(
                    f"Relationship {edge.id} requires the linked task to be {cond.value}"
                )
        elif cond.type == "artifact_exists":
            if not task or not task.artifact_ids:
                raise PolicyViolationError(
                    f"Relationship {edge.id} requires the linked task to have an artifact"
                )


# ── Transitions ───────────────────────────────────────────────────────────────


def start_interaction(db: sqlite3.Connection, interaction_id: str) -> Interaction:
    """pending -> in_progress. Any other status is left alone."""
    interaction = _require_interaction(db, interaction_id)
    if interaction.status != "pending":
        logger.warning(
            "Ignoring start of interaction %s in status %s", interaction_id, interaction.status
        )
        return interaction

    db.execute(
        "UPDATE interactions SET status = 'in_progress', started_at = ? WHERE id = ?",
        (_now().isoformat(), interaction_id),
    )
    db.commit()
    return get_interaction(db, interaction_id)


def complete_interaction(
    db: sqlite3.Connection,
    interaction_id: str,
    response: InteractionResponse | str,
) -> Interaction:
    """Finish an open interaction with a response and credit the edge."""
    interaction = _require_open(db, interaction_id, "completed")
    if isinstance(response, str):
        response = InteractionResponse(message=response)
    if response.status not in RESPONSE_STATUSES:
        raise ValidationError(f"Unknown response status: {response.status}")

    now = _now()
    if response.timestamp is None:
        response = replace(response, timestamp=now)
    duration_ms = _elapsed_ms(interaction.created_at, now)

    db.execute(
        """UPDATE interactions
           SET status = 'completed', response_json = ?, completed_at = ?, duration_ms = ?
           WHERE id = ?""",
        (json.dumps(_response_to_json(response)), now.isoformat(), duration_ms, interaction_id),
    )
    db.commit()
    _feed_edge(db, interaction, True, duration_ms)
    logger.info("Interaction %s completed in %d ms", interaction_id, duration_ms)
    return get_interaction(db, interaction_id)


def fail_interaction(
    db: sqlite3.Connection,
    interaction_id: str,
    code: str,
    message: str,
    recoverable: bool = False,
) -> Interaction:
    interaction = _require_open(db, interaction_id, "failed")
    if not code:
        raise ValidationError("Error code is required")

    now = _now()
    duration_ms = _elapsed_ms(interaction.created_at, now)
    error = InteractionError(code=code, message=message, recoverable=recoverable)
    db.execute(
        """UPDATE interactions
           SET status = 'failed', error_json = ?, completed_at = ?, duration_ms = ?
           WHERE id = ?""",
        (json.dumps(asdict(error)), now.isoformat(), duration_ms, interaction_id),
    )
    db.commit()
    _feed_edge(db, interaction, False, duration_ms)
    logger.info("Interaction %s failed: %s", interaction_id, code)
    return get_interaction(db, interaction_id)


def cancel_interaction(db: sqlite3.Connection, interaction_id: str) -> Interaction:
    """Withdraw an open interaction. Cancelled interactions carry no duration."""
    _require_open(db, interaction_id, "cancelled")
    db.execute(
        "UPDATE interactions SET status = 'cancelled', completed_at = ? WHERE id = ?",
        (_now().isoformat(), interaction_id),
    )
    db.commit()
    logger.info("Interaction %s cancelled", interaction_id)
    return get_interaction(db, interaction_id)


def timeout_interaction(db: sqlite3.Connection, interaction_id: str) -> Interaction:
    """Mark an open interaction as timed out; counts as a failure on its edge."""
    interaction = _require_open(db, interaction_id, "timeout")
    db.execute(
        "UPDATE interactions SET status = 'timeout', completed_at = ? WHERE id = ?",
        (_now().isoformat(), interaction_id),
    )
    db.commit()
    _feed_edge(db, interaction, False, None)
    logger.warning("Interaction %s timed out", interaction_id)
    return get_interaction(db, interaction_id)


def add_user_intervention(
    db: sqlite3.Connection,
    interaction_id: str,
    type: str,
    message: str,
    urgency: str = "suggestion",
    paused_execution: bool = False,
) -> Interaction:
    """Attach a human intervention. The interaction's status is not changed."""
    _require_interaction(db, interaction_id)
    if type not in INTERVENTION_TYPES:
        raise ValidationError(f"Unknown intervention type: {type}")
    if urgency not in INTERVENTION_URGENCIES:
        raise ValidationError(f"Unknown intervention urgency: {urgency}")

    intervention = {
        "type": type,
        "message": message,
        "urgency": urgency,
        "paused_execution": paused_execution,
        "timestamp": _now().isoformat(),
    }
    db.execute(
        "UPDATE interactions SET user_intervention_json = ? WHERE id = ?",
        (json.dumps(intervention), interaction_id),
    )
    db.commit()
    return get_interaction(db, interaction_id)


def record_token_usage(
    db: sqlite3.Connection,
    interaction_id: str,
    input_tokens: int,
    output_tokens: int,
) -> Interaction:
    _require_interaction(db, interaction_id)
    if input_tokens < 0 or output_tokens < 0:
        raise ValidationError("Token counts must be non-negative")
    db.execute(
        """UPDATE interactions
           SET input_tokens = ?, output_tokens = ?, total_tokens = ?
           WHERE id = ?""",
        (input_tokens, output_tokens, input_tokens + output_tokens, interaction_id),
    )
    db.commit()
    return get_interaction(db, interaction_id)


def _require_open(db: sqlite3.Connection, interaction_id: str, new_status: str) -> Interaction:
    interaction = _require_interaction(db, interaction_id)
    if interaction.status in TERMINAL_INTERACTION_STATUSES:
        raise InvalidTransitionError("interaction", interaction_id, interaction.status, new_status)
    return interaction


def _feed_edge(
    db: sqlite3.Connection,
    interaction: Interaction,
    success: bool,
    duration_ms: int | None,
):
    if interaction.relationship_id and relationships.get_relationship(db, interaction.relationship_id):
        relationships.record_outcome(db, interaction.relationship_id, success, duration_ms)


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return round((end - start).total_seconds() * 1000)


# ── Queries ───────────────────────────────────────────────────────────────────


def get_interaction(db: sqlite3.Connection, interaction_id: str) -> Interaction | None:
    row = db.execute(
        "SELECT * FROM interactions WHERE id = ?", (interaction_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_interaction(row)


def list_interactions(
    db: sqlite3.Connection,
    workflow_id: str | None = None,
) -> list[Interaction]:
    if workflow_id:
        rows = db.execute(
            "SELECT * FROM interactions WHERE workflow_id = ? ORDER BY created_at, rowid",
            (workflow_id,),
        ).fetchall()
    else:
        rows = db.execute("SELECT * FROM interactions ORDER BY created_at, rowid").fetchall()
    return [_row_to_interaction(r) for r in rows]


def get_agent_interactions(db: sqlite3.Connection, agent_id: str) -> list[Interaction]:
    """Interactions the agent initiated or received."""
    rows = db.execute(
        """SELECT * FROM interactions
           WHERE initiator_agent_id = ? OR target_agent_id = ?
           ORDER BY created_at, rowid""",
        (agent_id, agent_id),
    ).fetchall()
    return [_row_to_interaction(r) for r in rows]


def get_pending_interactions(
    db: sqlite3.Connection,
    workflow_id: str | None = None,
) -> list[Interaction]:
    """Interactions not yet started, most urgent (lowest priority number) first."""
    query = "SELECT * FROM interactions WHERE status = 'pending'"
    params: list = []
    if workflow_id:
        query += " AND workflow_id = ?"
        params.append(workflow_id)
    query += " ORDER BY priority ASC, created_at, rowid"
    return [_row_to_interaction(r) for r in db.execute(query, params).fetchall()]


def get_workflow_timeline(db: sqlite3.Connection, workflow_id: str) -> list[Interaction]:
    """A workflow's interactions, oldest first."""
    return list_interactions(db, workflow_id)


def get_chain(db: sqlite3.Connection, interaction_id: str) -> list[Interaction]:
    """Ancestors of an interaction via parent links, root first, ending with it.

    Stops at a missing parent or at the first repeated id.
    """
    chain: list[Interaction] = []
    seen: set[str] = set()
    current_id = interaction_id
    while current_id and current_id not in seen:
        interaction = get_interaction(db, current_id)
        if not interaction:
            break
        seen.add(current_id)
        chain.append(interaction)
        current_id = interaction.parent_interaction_id
    if current_id and current_id in seen:
        logger.warning("Interaction chain from %s loops back to %s", interaction_id, current_id)
    chain.reverse()
    return chain


def filter_interactions(
    db: sqlite3.Connection,
    workflow_id: str | None = None,
    agent_id: str | None = None,
    interaction_type: str | None = None,
    status: str | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    has_user_intervention: bool | None = None,
) -> list[Interaction]:
    """Interactions matching every given criterion. Date bounds are inclusive."""
    if status and status not in INTERACTION_STATUSES:
        raise ValidationError(f"Unknown interaction status: {status}")

    query = "SELECT * FROM interactions WHERE 1=1"
    params: list = []

    if workflow_id:
        query += " AND workflow_id = ?"
        params.append(workflow_id)
    if agent_id:
        query += " AND (initiator_agent_id = ? OR target_agent_id = ?)"
        params.extend([agent_id, agent_id])
    if interaction_type:
        query += " AND interaction_type = ?"
        params.append(interaction_type)
    if status:
        query += " AND status = ?"
        params.append(status)
    if has_user_intervention is True:
        query += " AND user_intervention_json IS NOT NULL"
    elif has_user_intervention is False:
        query += " AND user_intervention_json IS NULL"

    query += " ORDER BY created_at, rowid"
    results = [_row_to_interaction(r) for r in db.execute(query, params).fetchall()]

    # Compared as datetimes so mixed offsets order correctly.
    if from_date:
        results = [i for i in results if i.created_at >= _aware(from_date)]
    if to_date:
        results = [i for i in results if i.created_at <= _aware(to_date)]
    return results


def clear_workflow_interactions(db: sqlite3.Connection, workflow_id: str) -> int:
    """Delete every interaction of a workflow; returns how many were removed."""
    cur = db.execute("DELETE FROM interactions WHERE workflow_id = ?", (workflow_id,))
    db.commit()
    logger.info("Cleared %d interactions from workflow %s", cur.rowcount, workflow_id)
    return cur.rowcount


def _require_interaction(db: sqlite3.Connection, interaction_id: str) -> Interaction:
    interaction = get_interaction(db, interaction_id)
    if not interaction:
        raise NotFoundError("Interaction", interaction_id)
    return interaction


def _aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _response_to_json(response: InteractionResponse) -> dict:
    data = asdict(response)
    data["timestamp"] = response.timestamp.isoformat() if response.timestamp else None
    return data


def _row_to_interaction(row: sqlite3.Row) -> Interaction:
    response = None
    if row["response_json"]:
        data = json.loads(row["response_json"])
        response = InteractionResponse(
            message=data["message"],
            status=data.get("status", "success"),
            artifacts=data.get("artifacts") or [],
            metadata=data.get("metadata") or {},
            timestamp=_parse_dt(data.get("timestamp")),
        )

    error = None
    if row["error_json"]:
        error = InteractionError(**json.loads(row["error_json"]))

    intervention = None
    if row["user_intervention_json"]:
        data = json.loads(row["user_intervention_json"])
        intervention = UserIntervention(
            type=data["type"],
            message=data["message"],
            urgency=data.get("urgency", "suggestion"),
            paused_execution=bool(data.get("paused_execution")),
            timestamp=_parse_dt(data.get("timestamp")),
        )

    token_usage = None
    if row["total_tokens"] is not None:
        token_usage = TokenUsage(
            input=row["input_tokens"] or 0,
            output=row["output_tokens"] or 0,
            total=row["total_tokens"],
        )

    return Interaction(
        id=row["id"],
        workflow_id=row["workflow_id"],
        initiator_agent_id=row["initiator_agent_id"],
        target_agent_id=row["target_agent_id"],
        interaction_type=row["interaction_type"],
        message=row["message"],
        status=row["status"],
        priority=row["priority"],
        task_id=row["task_id"],
        relationship_id=row["relationship_id"],
        parent_interaction_id=row["parent_interaction_id"],
        thinking=row["thinking"],
        response=response,
        error=error,
        user_intervention=intervention,
        token_usage=token_usage,
        duration_ms=row["duration_ms"],
        retry_count=row["retry_count"],
        created_at=_parse_dt(row["created_at"]),
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
