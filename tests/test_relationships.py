"""Tests for the relationship graph."""

import tempfile
from pathlib import Path

import pytest

from squad_ledger.core import relationships as rel_mod
from squad_ledger.core.errors import NotFoundError, ValidationError
from squad_ledger.db.engine import init_db
from squad_ledger.db.models import RelationshipCondition


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield conn
        conn.close()


class TestDefaults:
    @pytest.mark.parametrize(
        "rel_type, delta, bidirectional, auto_approval",
        [
            ("delegation", 1, False, True),
            ("collaboration", 0, True, True),
            ("review", 1, False, False),
            ("escalation", -2, False, True),
            ("consultation", 0, True, True),
            ("dependency", 0, False, True),
            ("supervision", 2, False, True),
        ],
    )
    def test_create_uses_type_defaults(self, db, rel_type, delta, bidirectional, auto_approval):
        edge = rel_mod.create_relationship(db, "lead", "dev", rel_type)
        assert edge.type == rel_type
        assert edge.authority_delta == delta
        assert edge.bidirectional is bidirectional
        assert edge.auto_approval is auto_approval
        assert edge.max_interactions_per_workflow is None
        assert edge.metrics.total_interactions == 0
        assert edge.metrics.success_rate is None

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            rel_mod.default_relationship("friendship")


class TestValidation:
    def test_valid(self):
        assert rel_mod.validate_relationship({"type": "review", "authority_delta": 5}) == []

    def test_collects_every_problem(self):
        errors = rel_mod.validate_relationship(
            {"authority_delta": 6, "max_interactions_per_workflow": 0}
        )
        assert "Relationship type is required" in errors
        assert "Authority delta must be between -5 and 5" in errors
        assert len(errors) == 3

    def test_unknown_condition_type(self):
        errors = rel_mod.validate_relationship(
            {"type": "review", "conditions": [{"type": "phase_of_moon", "value": "full"}]}
        )
        assert errors == ["Unknown condition type: phase_of_moon"]

    @pytest.mark.parametrize("delta", [-6, 6])
    def test_create_rejects_out_of_range_delta(self, db, delta):
        with pytest.raises(ValidationError, match="between -5 and 5"):
            rel_mod.create_relationship(db, "a", "b", "delegation", authority_delta=delta)
        assert rel_mod.list_relationships(db) == []

    @pytest.mark.parametrize(
        "overrides",
        [
            {"authority_delta": 0.5},
            {"max_interactions_per_workflow": 1.5},
            {"max_interactions_per_workflow": "3"},
            {"authority_delta": True},
            {"bidirectional": "yes"},
        ],
    )
    def test_create_rejects_non_integer_policy(self, db, overrides):
        with pytest.raises(ValidationError):
            rel_mod.create_relationship(db, "a", "b", "delegation", **overrides)
        assert rel_mod.list_relationships(db) == []

    def test_create_rejects_zero_cap(self, db):
        with pytest.raises(ValidationError, match="at least 1"):
            rel_mod.create_relationship(db, "a", "b", "review", max_interactions_per_workflow=0)

    def test_create_rejects_self_edge(self, db):
        with pytest.raises(ValidationError):
            rel_mod.create_relationship(db, "a", "a", "review")

    def test_create_rejects_empty_agent(self, db):
        with pytest.raises(ValidationError):
            rel_mod.create_relationship(db, "", "b", "review")


class TestLookup:
    def test_list_by_agent_and_type(self, db):
        e1 = rel_mod.create_relationship(db, "lead", "dev", "delegation")
        e2 = rel_mod.create_relationship(db, "qa", "lead", "review")
        rel_mod.create_relationship(db, "qa", "dev", "collaboration")
        assert {e.id for e in rel_mod.list_relationships(db, agent_id="lead")} == {e1.id, e2.id}
        assert [e.id for e in rel_mod.list_relationships(db, type="review")] == [e2.id]

    def test_find_respects_direction(self, db):
        edge = rel_mod.create_relationship(db, "lead", "dev", "delegation")
        assert rel_mod.find_relationship(db, "lead", "dev").id == edge.id
        assert rel_mod.find_relationship(db, "dev", "lead") is None

    def test_find_bidirectional_both_ways(self, db):
        edge = rel_mod.create_relationship(db, "alice", "bob", "collaboration")
        assert rel_mod.find_relationship(db, "bob", "alice").id == edge.id

    def test_find_prefers_priority(self, db):
        rel_mod.create_relationship(db, "lead", "dev", "delegation", priority=1)
        high = rel_mod.create_relationship(db, "lead", "dev", "supervision", priority=5)
        assert rel_mod.find_relationship(db, "lead", "dev").id == high.id


class TestAuthority:
    def test_forward(self, db):
        edge = rel_mod.create_relationship(db, "lead", "dev", "supervision")
        assert rel_mod.effective_authority(edge, "lead") == 2

    def test_reverse_on_bidirectional(self, db):
        edge = rel_mod.create_relationship(db, "a", "b", "collaboration", authority_delta=2)
        assert rel_mod.effective_authority(edge, "b") == -2

    def test_reverse_on_one_way(self, db):
        edge = rel_mod.create_relationship(db, "lead", "dev", "delegation")
        with pytest.raises(ValidationError):
            rel_mod.effective_authority(edge, "dev")


class TestPolicyUpdate:
    def test_update_policy(self, db):
        edge = rel_mod.create_relationship(db, "lead", "dev", "delegation")
        updated = rel_mod.update_relationship_policy(
            db, edge.id,
            authority_delta=3,
            max_interactions_per_workflow=2,
            conditions=[RelationshipCondition(type="task_status", value="review")],
        )
        assert updated.authority_delta == 3
        assert updated.max_interactions_per_workflow == 2
        assert updated.conditions == [RelationshipCondition(type="task_status", value="review")]

    def test_identity_is_fixed(self, db):
        edge = rel_mod.create_relationship(db, "lead", "dev", "delegation")
        with pytest.raises(ValidationError):
            rel_mod.update_relationship_policy(db, edge.id, target_agent_id="qa")

    def test_invalid_update_leaves_edge(self, db):
        edge = rel_mod.create_relationship(db, "lead", "dev", "delegation")
        with pytest.raises(ValidationError):
            rel_mod.update_relationship_policy(db, edge.id, authority_delta=9)
        assert rel_mod.get_relationship(db, edge.id).authority_delta == 1

    @pytest.mark.parametrize("field", ["authority_delta", "bidirectional", "auto_approval", "priority"])
    def test_required_fields_cannot_be_cleared(self, db, field):
        edge = rel_mod.create_relationship(db, "a", "b", "collaboration")
        with pytest.raises(ValidationError, match=field):
            rel_mod.update_relationship_policy(db, edge.id, **{field: None})
        assert rel_mod.get_relationship(db, edge.id) == edge

    def test_optional_fields_can_be_cleared(self, db):
        edge = rel_mod.create_relationship(
            db, "a", "b", "review", max_interactions_per_workflow=2, description="qa gate"
        )
        updated = rel_mod.update_relationship_policy(
            db, edge.id, max_interactions_per_workflow=None, description=None
        )
        assert updated.max_interactions_per_workflow is None
        assert updated.description is None

    def test_non_integer_update(self, db):
        edge = rel_mod.create_relationship(db, "a", "b", "review")
        with pytest.raises(ValidationError):
            rel_mod.update_relationship_policy(db, edge.id, max_interactions_per_workflow=2.5)

    def test_missing(self, db):
        with pytest.raises(NotFoundError):
            rel_mod.update_relationship_policy(db, "ghost", priority=1)


class TestMetrics:
    def test_record_outcomes(self, db):
        edge = rel_mod.create_relationship(db, "lead", "dev", "delegation")
        rel_mod.record_outcome(db, edge.id, True, 1000)
        rel_mod.record_outcome(db, edge.id, True, 3000)
        edge = rel_mod.record_outcome(db, edge.id, False, 2000)
        m = edge.metrics
        assert m.total_interactions == 3
        assert m.successful_interactions == 2
        assert m.failed_interactions == 1
        assert m.avg_response_time == pytest.approx(2000)
        assert m.success_rate == pytest.approx(2 / 3)
        assert m.last_interaction_at is not None

    def test_untimed_outcome_skips_average(self, db):
        edge = rel_mod.create_relationship(db, "lead", "dev", "delegation")
        rel_mod.record_outcome(db, edge.id, True, 500)
        edge = rel_mod.record_outcome(db, edge.id, False)
        assert edge.metrics.total_interactions == 2
        assert edge.metrics.avg_response_time == pytest.approx(500)
        assert edge.metrics.timed_interactions == 1


class TestDelete:
    def test_delete(self, db):
        edge = rel_mod.create_relationship(db, "lead", "dev", "delegation")
        rel_mod.delete_relationship(db, edge.id)
        assert rel_mod.get_relationship(db, edge.id) is None

    def test_delete_missing(self, db):
        with pytest.raises(NotFoundError):
            rel_mod.delete_relationship(db, "ghost")
