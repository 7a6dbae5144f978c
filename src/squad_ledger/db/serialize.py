"""Conversion of model dataclasses into JSON-ready dicts."""

from dataclasses import fields, is_dataclass
from datetime import datetime


def to_dict(obj):
    """Recursively convert dataclasses, lists and datetimes for JSON output."""
    if obj is None:
        return None
    if isinstance(obj, datetime):
        return obj.isoformat()
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_dict(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, dict):
        return {k: to_dict(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_dict(v) for v in obj]
    return obj


def edge_dict(edge) -> dict:
    """Relationship edge dict, with the derived success rate included."""
    d = to_dict(edge)
    d["metrics"]["success_rate"] = edge.metrics.success_rate
    return d
