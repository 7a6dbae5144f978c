"""Relationship graph: typed, policy-carrying edges between agents."""

import json
import logging
import sqlite3
import uuid
from dataclasses import asdict
from datetime import datetime, timezone

from squad_ledger.core.errors import NotFoundError, ValidationError
from squad_ledger.db.models import (
    CONDITION_TYPES,
    RELATIONSHIP_TYPES,
    RelationshipCondition,
    RelationshipEdge,
    RelationshipMetrics,
)

logger = logging.getLogger(__name__)

RELATIONSHIP_DEFAULTS: dict[str, dict] = {
    "delegation": {"authority_delta": 1, "bidirectional": False, "auto_approval": True},
    "collaboration": {"authority_delta": 0, "bidirectional": True, "auto_approval": True},
    "review": {"authority_delta": 1, "bidirectional": False, "auto_approval": False},
    "escalation": {"authority_delta": -2, "bidirectional": False, "auto_approval": True},
    "consultation": {"authority_delta": 0, "bidirectional": True, "auto_approval": True},
    "dependency": {"authority_delta": 0, "bidirectional": False, "auto_approval": True},
    "supervision": {"authority_delta": 2, "bidirectional": False, "auto_approval": True},
}

POLICY_FIELDS = (
    "authority_delta",
    "bidirectional",
    "auto_approval",
    "max_interactions_per_workflow",
    "priority",
    "description",
    "conditions",
)

# Policy fields that always hold a value; the rest may be cleared with None.
_REQUIRED_POLICY_FIELDS = ("authority_delta", "bidirectional", "auto_approval", "priority")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def default_relationship(type: str) -> dict:
    """Default policy for a relationship type."""
    if type not in RELATIONSHIP_DEFAULTS:
        raise ValidationError(f"Unknown relationship type: {type}")
    return {
        "type": type,
        **RELATIONSHIP_DEFAULTS[type],
        "max_interactions_per_workflow": None,
        "priority": 0,
        "conditions": [],
    }


def validate_relationship(fields: dict) -> list[str]:
    """Return a list of problems with a relationship definition (empty if valid)."""
    errors = []

    rel_type = fields.get("type")
    if not rel_type:
        errors.append("Relationship type is required")
    elif rel_type not in RELATIONSHIP_TYPES:
        errors.append(f"Unknown relationship type: {rel_type}")

    delta = fields.get("authority_delta")
    if delta is not None and not (_is_int(delta) and -5 <= delta <= 5):
        errors.append("Authority delta must be between -5 and 5")

    cap = fields.get("max_interactions_per_workflow")
    if cap is not None and not (_is_int(cap) and cap >= 1):
        errors.append("Max interactions must be at least 1 or None for unlimited")

    priority = fields.get("priority")
    if priority is not None and not _is_int(priority):
        errors.append("Priority must be an integer")

    for flag in ("bidirectional", "auto_approval"):
        if fields.get(flag) is not None and not isinstance(fields[flag], bool):
            errors.append(f"{flag} must be true or false")

    for cond in fields.get("conditions") or []:
        cond_type = cond.type if isinstance(cond, RelationshipCondition) else cond.get("type")
        if cond_type not in CONDITION_TYPES:
            errors.append(f"Unknown condition type: {cond_type}")

    return errors


def create_relationship(
    db: sqlite3.Connection,
    source_agent_id: str,
    target_agent_id: str,
    type: str,
    **overrides,
) -> RelationshipEdge:
    """Create an edge from source to target, starting from the type's defaults."""
    if not source_agent_id or not target_agent_id:
        raise ValidationError("Source and target agent IDs are required")
    if source_agent_id == target_agent_id:
        raise ValidationError("An agent cannot have a relationship with itself")

    unknown = set(overrides) - set(POLICY_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown relationship fields: {', '.join(sorted(unknown))}")

    fields = default_relationship(type) if type in RELATIONSHIP_DEFAULTS else {"type": type}
    fields.update({k: v for k, v in overrides.items() if v is not None})
    errors = validate_relationship(fields)
    if errors:
        raise ValidationError("; ".join(errors))

    rel_id = str(uuid.uuid4())
    now = _now().isoformat()
    db.execute(
        """INSERT INTO relationships
           (id, source_agent_id, target_agent_id, relationship_type, authority_delta,
            bidirectional, auto_approval, max_interactions_per_workflow, priority,
            description, conditions_json, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (rel_id, source_agent_id, target_agent_id, type, fields["authority_delta"],
         int(fields["bidirectional"]), int(fields["auto_approval"]),
         fields.get("max_interactions_per_workflow"), fields.get("priority", 0),
         fields.get("description"), _dump_conditions(fields.get("conditions")), now, now),
    )
    db.commit()
    logger.info("Relationship %s: %s -[%s]-> %s", rel_id, source_agent_id, type, target_agent_id)
    return get_relationship(db, rel_id)


def get_relationship(db: sqlite3.Connection, relationship_id: str) -> RelationshipEdge | None:
    row = db.execute(
        "SELECT * FROM relationships WHERE id = ?", (relationship_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_edge(row)


def list_relationships(
    db: sqlite3.Connection,
    agent_id: str | None = None,
    type: str | None = None,
) -> list[RelationshipEdge]:
    """List edges, optionally those touching an agent at either end."""
    query = "SELECT * FROM relationships WHERE 1=1"
    params: list = []
    if agent_id:
        query += " AND (source_agent_id = ? OR target_agent_id = ?)"
        params.extend([agent_id, agent_id])
    if type:
        query += " AND relationship_type = ?"
        params.append(type)
    query += " ORDER BY priority DESC, created_at, rowid"
    return [_row_to_edge(r) for r in db.execute(query, params).fetchall()]


def find_relationship(
    db: sqlite3.Connection,
    initiator_agent_id: str,
    target_agent_id: str,
    type: str | None = None,
) -> RelationshipEdge | None:
    """Highest-priority edge an initiator can use to reach a target."""
    query = """SELECT * FROM relationships
               WHERE ((source_agent_id = ? AND target_agent_id = ?)
                      OR (bidirectional = 1 AND source_agent_id = ? AND target_agent_id = ?))"""
    params: list = [initiator_agent_id, target_agent_id, target_agent_id, initiator_agent_id]
    if type:
        query += " AND relationship_type = ?"
        params.append(type)
    query += " ORDER BY priority DESC, created_at, rowid LIMIT 1"
    row = db.execute(query, params).fetchone()
    if not row:
        return None
    return _row_to_edge(row)


def connects(edge: RelationshipEdge, initiator_agent_id: str, target_agent_id: str) -> bool:
    if edge.source_agent_id == initiator_agent_id and edge.target_agent_id == target_agent_id:
        return True
    return (
        edge.bidirectional
        and edge.source_agent_id == target_agent_id
        and edge.target_agent_id == initiator_agent_id
    )


def effective_authority(edge: RelationshipEdge, initiator_agent_id: str) -> int:
    """Authority delta as seen by the agent initiating over this edge.

    Traversing a bidirectional edge from its target end flips the sign.
    """
    if initiator_agent_id == edge.source_agent_id:
        return edge.authority_delta
    if edge.bidirectional and initiator_agent_id == edge.target_agent_id:
        return -edge.authority_delta
    raise ValidationError(
        f"Agent {initiator_agent_id} cannot initiate over relationship {edge.id}"
    )


def update_relationship_policy(
    db: sqlite3.Connection,
    relationship_id: str,
    **kwargs,
) -> RelationshipEdge:
    """Change an edge's policy. Source, target and type are fixed."""
    edge = _require_relationship(db, relationship_id)
    unknown = set(kwargs) - set(POLICY_FIELDS)
    if unknown:
        raise ValidationError(f"Cannot update relationship fields: {', '.join(sorted(unknown))}")

    missing = sorted(k for k in _REQUIRED_POLICY_FIELDS if k in kwargs and kwargs[k] is None)
    if missing:
        raise ValidationError(f"Relationship fields cannot be empty: {', '.join(missing)}")

    updates = dict(kwargs)
    merged = {
        "type": edge.type,
        "authority_delta": edge.authority_delta,
        "max_interactions_per_workflow": edge.max_interactions_per_workflow,
        "conditions": edge.conditions,
        **updates,
    }
    errors = validate_relationship(merged)
    if errors:
        raise ValidationError("; ".join(errors))
    if not updates:
        return edge

    columns = {}
    for key, value in updates.items():
        if key == "conditions":
            columns["conditions_json"] = _dump_conditions(value)
        elif key in ("bidirectional", "auto_approval"):
            columns[key] = int(bool(value))
        else:
            columns[key] = value

    set_clause = ", ".join(f"{k} = ?" for k in columns)
    values = list(columns.values()) + [_now().isoformat(), relationship_id]
    db.execute(f"UPDATE relationships SET {set_clause}, updated_at = ? WHERE id = ?", values)
    db.commit()
    return get_relationship(db, relationship_id)


def record_outcome(
    db: sqlite3.Connection,
    relationship_id: str,
    success: bool,
    response_time_ms: int | None = None,
) -> RelationshipEdge:
    """Fold one interaction outcome into the edge's metrics.

    The running average only covers outcomes that reported a response time.
    """
    edge = _require_relationship(db, relationship_id)
    avg = edge.metrics.avg_response_time
    timed = edge.metrics.timed_interactions
    if response_time_ms is not None:
        avg = (avg * timed + response_time_ms) / (timed + 1)
        timed += 1

    now = _now().isoformat()
    db.execute(
        """UPDATE relationships
           SET total_interactions = total_interactions + 1,
               successful_interactions = successful_interactions + ?,
               failed_interactions = failed_interactions + ?,
               avg_response_time = ?, timed_interactions = ?,
               last_interaction_at = ?, updated_at = ?
           WHERE id = ?""",
        (1 if success else 0, 0 if success else 1, avg, timed, now, now, relationship_id),
    )
    db.commit()
    return get_relationship(db, relationship_id)


def delete_relationship(db: sqlite3.Connection, relationship_id: str) -> None:
    _require_relationship(db, relationship_id)
    # Interactions keep their rows; relationship_id goes NULL via the FK.
    db.execute("DELETE FROM relationships WHERE id = ?", (relationship_id,))
    db.commit()
    logger.info("Deleted relationship %s", relationship_id)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _require_relationship(db: sqlite3.Connection, relationship_id: str) -> RelationshipEdge:
    edge = get_relationship(db, relationship_id)
    if not edge:
        raise NotFoundError("Relationship", relationship_id)
    return edge


def _dump_conditions(conditions) -> str:
    items = []
    for cond in conditions or []:
        if isinstance(cond, RelationshipCondition):
            items.append(asdict(cond))
        else:
            items.append(
                {"type": cond["type"], "value": cond.get("value"),
                 "description": cond.get("description")}
            )
    return json.dumps(items)


def _row_to_edge(row: sqlite3.Row) -> RelationshipEdge:
    conditions = [
        RelationshipCondition(type=c["type"], value=c.get("value"), description=c.get("description"))
        for c in json.loads(row["conditions_json"] or "[]")
    ]
    return RelationshipEdge(
        id=row["id"],
        source_agent_id=row["source_agent_id"],
        target_agent_id=row["target_agent_id"],
        type=row["relationship_type"],
        authority_delta=row["authority_delta"],
        bidirectional=bool(row["bidirectional"]),
        auto_approval=bool(row["auto_approval"]),
        max_interactions_per_workflow=row["max_interactions_per_workflow"],
        priority=row["priority"],
        description=row["description"],
        conditions=conditions,
        metrics=RelationshipMetrics(
            total_interactions=row["total_interactions"],
            successful_interactions=row["successful_interactions"],
            failed_interactions=row["failed_interactions"],
            avg_response_time=row["avg_response_time"],
            timed_interactions=row["timed_interactions"],
            last_interaction_at=_parse_dt(row["last_interaction_at"]),
        ),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
