"""Tests for the interaction ledger."""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from squad_ledger.core import artifacts as artifacts_mod
from squad_ledger.core import interactions as ix_mod
from squad_ledger.core import projects as projects_mod
from squad_ledger.core import relationships as rel_mod
from squad_ledger.core import tasks as tasks_mod
from squad_ledger.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from squad_ledger.db.engine import init_db
from squad_ledger.db.models import InteractionResponse, RelationshipCondition

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        project = projects_mod.create_project(conn, "Ledger")
        tasks_mod.create_task(conn, project.id, "Ship feature")
        yield conn
        conn.close()


@pytest.fixture
def clock(monkeypatch):
    fake = FakeClock(T0)
    monkeypatch.setattr(ix_mod, "_now", fake)
    return fake


def _ix(db, workflow="wf-1", initiator="lead", target="dev", ix_type="notify", **kwargs):
    return ix_mod.create_interaction(db, workflow, initiator, target, ix_type, "hello", **kwargs)


def _count(db) -> int:
    return db.execute("SELECT COUNT(*) FROM interactions").fetchone()[0]


class TestCreate:
    def test_defaults(self, db, clock):
        ix = _ix(db)
        assert ix.status == "pending"
        assert ix.retry_count == 0
        assert ix.priority == 3
        assert ix.created_at == T0
        assert ix.started_at is None
        assert ix.duration_ms is None

    def test_priority_clamped(self, db):
        assert _ix(db, priority=0).priority == 1
        assert _ix(db, priority=9).priority == 5

    def test_unknown_type(self, db):
        with pytest.raises(ValidationError):
            _ix(db, ix_type="gossip")

    def test_empty_message(self, db):
        with pytest.raises(ValidationError):
            ix_mod.create_interaction(db, "wf-1", "lead", "dev", "notify", " ")

    @pytest.mark.parametrize(
        "ref", ["task_id", "relationship_id", "parent_interaction_id"]
    )
    def test_missing_references(self, db, ref):
        with pytest.raises(NotFoundError):
            _ix(db, **{ref: "ghost"})
        assert _count(db) == 0


class TestLifecycle:
    def test_start(self, db, clock):
        ix = _ix(db)
        clock.advance(seconds=2)
        started = ix_mod.start_interaction(db, ix.id)
        assert started.status == "in_progress"
        assert started.started_at == T0 + timedelta(seconds=2)

    def test_start_twice_is_noop(self, db, clock):
        ix = _ix(db)
        first = ix_mod.start_interaction(db, ix.id)
        clock.advance(seconds=5)
        second = ix_mod.start_interaction(db, ix.id)
        assert second.started_at == first.started_at

    def test_start_after_completion_is_noop(self, db):
        ix = _ix(db)
        ix_mod.complete_interaction(db, ix.id, "ok")
        assert ix_mod.start_interaction(db, ix.id).status == "completed"

    def test_complete_without_start_measures_from_creation(self, db, clock):
        ix = _ix(db)
        clock.advance(milliseconds=5000)
        done = ix_mod.complete_interaction(db, ix.id, InteractionResponse(message="done"))
        assert done.status == "completed"
        assert done.duration_ms == 5000
        assert done.completed_at == T0 + timedelta(seconds=5)
        assert done.response.message == "done"
        assert done.response.status == "success"
        assert done.response.timestamp == T0 + timedelta(seconds=5)

    def test_complete_after_start_still_measures_from_creation(self, db, clock):
        ix = _ix(db)
        clock.advance(seconds=1)
        ix_mod.start_interaction(db, ix.id)
        clock.advance(seconds=2)
        done = ix_mod.complete_interaction(db, ix.id, "done")
        assert done.duration_ms == 3000

    def test_complete_keeps_response_details(self, db):
        ix = _ix(db)
        response = InteractionResponse(
            message="partial result", status="partial", artifacts=["a1"], metadata={"k": 1}
        )
        done = ix_mod.complete_interaction(db, ix.id, response)
        assert done.response.status == "partial"
        assert done.response.artifacts == ["a1"]
        assert done.response.metadata == {"k": 1}

    def test_complete_leaves_caller_response_untouched(self, db, clock):
        ix = _ix(db)
        response = InteractionResponse(message="done")
        done = ix_mod.complete_interaction(db, ix.id, response)
        assert response.timestamp is None
        assert done.response.timestamp == T0

    def test_bad_response_status(self, db):
        ix = _ix(db)
        with pytest.raises(ValidationError):
            ix_mod.complete_interaction(db, ix.id, InteractionResponse(message="?", status="meh"))
        assert ix_mod.get_interaction(db, ix.id).status == "pending"

    def test_fail(self, db, clock):
        ix = _ix(db)
        clock.advance(milliseconds=750)
        failed = ix_mod.fail_interaction(db, ix.id, "E_TOOL", "tool crashed", recoverable=True)
        assert failed.status == "failed"
        assert failed.duration_ms == 750
        assert failed.error.code == "E_TOOL"
        assert failed.error.message == "tool crashed"
        assert failed.error.recoverable is True

    def test_cancel_has_no_duration(self, db, clock):
        ix = _ix(db)
        ix_mod.start_interaction(db, ix.id)
        clock.advance(seconds=4)
        cancelled = ix_mod.cancel_interaction(db, ix.id)
        assert cancelled.status == "cancelled"
        assert cancelled.completed_at == T0 + timedelta(seconds=4)
        assert cancelled.duration_ms is None

    def test_timeout_has_no_duration(self, db, clock):
        ix = _ix(db)
        clock.advance(minutes=10)
        timed_out = ix_mod.timeout_interaction(db, ix.id)
        assert timed_out.status == "timeout"
        assert timed_out.completed_at is not None
        assert timed_out.duration_ms is None

    @pytest.mark.parametrize("finish", ["complete", "fail", "cancel", "timeout"])
    def test_terminal_states_are_final(self, db, finish):
        ix = _ix(db)
        actions = {
            "complete": lambda: ix_mod.complete_interaction(db, ix.id, "ok"),
            "fail": lambda: ix_mod.fail_interaction(db, ix.id, "E", "bad"),
            "cancel": lambda: ix_mod.cancel_interaction(db, ix.id),
            "timeout": lambda: ix_mod.timeout_interaction(db, ix.id),
        }
        actions[finish]()
        final = ix_mod.get_interaction(db, ix.id)
        for action in actions.values():
            with pytest.raises(InvalidTransitionError):
                action()
        assert ix_mod.get_interaction(db, ix.id) == final

    def test_missing_interaction(self, db):
        with pytest.raises(NotFoundError):
            ix_mod.complete_interaction(db, "ghost", "ok")


class TestEdgeFeedback:
    def test_outcomes_reach_edge(self, db, clock):
        edge = rel_mod.create_relationship(db, "lead", "dev", "delegation")
        ok = _ix(db, relationship_id=edge.id)
        bad = _ix(db, relationship_id=edge.id)
        late = _ix(db, relationship_id=edge.id)
        clock.advance(seconds=2)
        ix_mod.complete_interaction(db, ok.id, "ok")
        ix_mod.fail_interaction(db, bad.id, "E", "bad")
        ix_mod.timeout_interaction(db, late.id)

        m = rel_mod.get_relationship(db, edge.id).metrics
        assert m.total_interactions == 3
        assert m.successful_interactions == 1
        assert m.failed_interactions == 2
        assert m.avg_response_time == pytest.approx(2000)

    def test_cancel_does_not_count(self, db):
        edge = rel_mod.create_relationship(db, "lead", "dev", "delegation")
        ix = _ix(db, relationship_id=edge.id)
        ix_mod.cancel_interaction(db, ix.id)
        assert rel_mod.get_relationship(db, edge.id).metrics.total_interactions == 0


class TestPolicy:
    def test_edge_must_connect_agents(self, db):
        edge = rel_mod.create_relationship(db, "lead", "dev", "delegation")
        with pytest.raises(PolicyViolationError, match="does not connect"):
            _ix(db, initiator="dev", target="lead", relationship_id=edge.id)
        assert _count(db) == 0

    def test_bidirectional_reverse_allowed(self, db):
        edge = rel_mod.create_relationship(db, "alice", "bob", "collaboration")
        ix = _ix(db, initiator="bob", target="alice", relationship_id=edge.id)
        assert ix.relationship_id == edge.id

    def test_cap_per_workflow(self, db):
        edge = rel_mod.create_relationship(
            db, "lead", "dev", "delegation", max_interactions_per_workflow=2
        )
        _ix(db, relationship_id=edge.id)
        _ix(db, relationship_id=edge.id)
        with pytest.raises(PolicyViolationError, match="per workflow"):
            _ix(db, relationship_id=edge.id)
        assert _count(db) == 2
        # Another workflow has its own budget.
        _ix(db, workflow="wf-2", relationship_id=edge.id)

    def test_cancelled_interactions_free_the_cap(self, db):
        edge = rel_mod.create_relationship(
            db, "lead", "dev", "delegation", max_interactions_per_workflow=1
        )
        first = _ix(db, relationship_id=edge.id)
        ix_mod.cancel_interaction(db, first.id)
        _ix(db, relationship_id=edge.id)

    def test_negative_authority_cannot_assign(self, db):
        edge = rel_mod.create_relationship(db, "dev", "lead", "escalation")
        with pytest.raises(PolicyViolationError, match="authority"):
            _ix(db, initiator="dev", target="lead", ix_type="task_assign", relationship_id=edge.id)
        ix = _ix(db, initiator="dev", target="lead", ix_type="escalate", relationship_id=edge.id)
        assert ix.interaction_type == "escalate"

    def test_task_status_condition(self, db):
        edge = rel_mod.create_relationship(
            db, "dev", "qa", "review",
            conditions=[RelationshipCondition(type="task_status", value="todo")],
        )
        with pytest.raises(PolicyViolationError):
            _ix(db, initiator="dev", target="qa", ix_type="request_review",
                relationship_id=edge.id, task_id="ship-feature")
        tasks_mod.set_task_status(db, "ship-feature", "todo")
        ix = _ix(db, initiator="dev", target="qa", ix_type="request_review",
                 relationship_id=edge.id, task_id="ship-feature")
        assert ix.task_id == "ship-feature"

    def test_artifact_exists_condition(self, db):
        edge = rel_mod.create_relationship(
            db, "dev", "qa", "review",
            conditions=[{"type": "artifact_exists", "value": True}],
        )
        with pytest.raises(PolicyViolationError, match="artifact"):
            _ix(db, initiator="dev", target="qa", relationship_id=edge.id, task_id="ship-feature")
        artifacts_mod.add_artifact(db, "ship-feature", "dev", "patch.diff")
        _ix(db, initiator="dev", target="qa", relationship_id=edge.id, task_id="ship-feature")

    def test_enforcement_can_be_disabled(self, db):
        edge = rel_mod.create_relationship(db, "lead", "dev", "delegation")
        ix = _ix(db, initiator="dev", target="lead", relationship_id=edge.id, enforce_policy=False)
        assert ix.status == "pending"


class TestAnnotations:
    def test_user_intervention(self, db, clock):
        ix = _ix(db)
        ix_mod.start_interaction(db, ix.id)
        updated = ix_mod.add_user_intervention(
            db, ix.id, "override", "use the staging db", "critical", paused_execution=True
        )
        assert updated.status == "in_progress"
        assert updated.user_intervention.type == "override"
        assert updated.user_intervention.urgency == "critical"
        assert updated.user_intervention.paused_execution is True
        assert updated.user_intervention.timestamp == T0

    def test_bad_intervention(self, db):
        ix = _ix(db)
        with pytest.raises(ValidationError):
            ix_mod.add_user_intervention(db, ix.id, "nudge", "hey")

    def test_token_usage(self, db):
        ix = _ix(db)
        updated = ix_mod.record_token_usage(db, ix.id, 120, 30)
        assert updated.token_usage.input == 120
        assert updated.token_usage.output == 30
        assert updated.token_usage.total == 150


class TestChain:
    def test_root_first(self, db):
        root = _ix(db)
        child = _ix(db, parent_interaction_id=root.id)
        grandchild = _ix(db, parent_interaction_id=child.id)
        chain = ix_mod.get_chain(db, grandchild.id)
        assert [i.id for i in chain] == [root.id, child.id, grandchild.id]

    def test_unknown_id(self, db):
        assert ix_mod.get_chain(db, "ghost") == []

    def test_cycle_terminates(self, db):
        a = _ix(db)
        b = _ix(db, parent_interaction_id=a.id)
        db.execute("UPDATE interactions SET parent_interaction_id = ? WHERE id = ?", (b.id, a.id))
        db.commit()
        chain = ix_mod.get_chain(db, b.id)
        assert [i.id for i in chain] == [a.id, b.id]


class TestQueries:
    def test_filter_and_semantics(self, db):
        _ix(db, initiator="lead", target="dev", ix_type="task_assign")
        _ix(db, initiator="dev", target="qa", ix_type="request_review")
        _ix(db, workflow="wf-2", initiator="dev", target="qa", ix_type="request_review")

        found = ix_mod.filter_interactions(
            db, workflow_id="wf-1", agent_id="dev", interaction_type="request_review"
        )
        assert len(found) == 1
        assert found[0].target_agent_id == "qa"
        assert len(ix_mod.filter_interactions(db, agent_id="dev")) == 3

    def test_filter_dates_inclusive(self, db, clock):
        first = _ix(db)
        clock.advance(minutes=1)
        second = _ix(db)
        clock.advance(minutes=1)
        _ix(db)

        found = ix_mod.filter_interactions(
            db, from_date=T0, to_date=T0 + timedelta(minutes=1)
        )
        assert [i.id for i in found] == [first.id, second.id]

    def test_filter_user_intervention(self, db):
        plain = _ix(db)
        flagged = _ix(db)
        ix_mod.add_user_intervention(db, flagged.id, "guidance", "try again")
        assert [i.id for i in ix_mod.filter_interactions(db, has_user_intervention=True)] == [flagged.id]
        assert [i.id for i in ix_mod.filter_interactions(db, has_user_intervention=False)] == [plain.id]

    def test_pending_by_priority(self, db):
        low = _ix(db, priority=5)
        urgent = _ix(db, priority=1)
        done = _ix(db)
        ix_mod.complete_interaction(db, done.id, "ok")
        started = _ix(db, priority=1)
        ix_mod.start_interaction(db, started.id)
        assert [i.id for i in ix_mod.get_pending_interactions(db)] == [urgent.id, low.id]

    def test_timeline_oldest_first(self, db, clock):
        first = _ix(db)
        clock.advance(seconds=1)
        second = _ix(db)
        _ix(db, workflow="wf-2")
        assert [i.id for i in ix_mod.get_workflow_timeline(db, "wf-1")] == [first.id, second.id]

    def test_agent_interactions(self, db):
        _ix(db, initiator="lead", target="dev")
        _ix(db, initiator="qa", target="lead")
        _ix(db, initiator="qa", target="dev")
        assert len(ix_mod.get_agent_interactions(db, "lead")) == 2

    def test_clear_workflow(self, db):
        _ix(db)
        _ix(db)
        keep = _ix(db, workflow="wf-2")
        assert ix_mod.clear_workflow_interactions(db, "wf-1") == 2
        assert [i.id for i in ix_mod.list_interactions(db)] == [keep.id]


class TestSoftReferences:
    def test_task_deletion_keeps_interaction(self, db):
        ix = _ix(db, task_id="ship-feature")
        tasks_mod.delete_task(db, "ship-feature")
        kept = ix_mod.get_interaction(db, ix.id)
        assert kept is not None
        assert kept.task_id is None

    def test_relationship_deletion_keeps_interaction(self, db):
        edge = rel_mod.create_relationship(db, "lead", "dev", "delegation")
        ix = _ix(db, relationship_id=edge.id)
        rel_mod.delete_relationship(db, edge.id)
        kept = ix_mod.get_interaction(db, ix.id)
        assert kept.relationship_id is None
        # Outcomes on an interaction whose edge is gone are still recorded.
        assert ix_mod.complete_interaction(db, ix.id, "ok").status == "completed"
