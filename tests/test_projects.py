"""Tests for project operations."""

import tempfile
from pathlib import Path

import pytest

from squad_ledger.core import artifacts as artifacts_mod
from squad_ledger.core import projects as projects_mod
from squad_ledger.core import tasks as tasks_mod
from squad_ledger.core.errors import NotFoundError, ValidationError
from squad_ledger.db.engine import init_db


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield conn
        conn.close()


class TestSlugs:
    def test_slugify_name(self):
        assert projects_mod.slugify_name("My Cool Project!") == "my-cool-project"

    def test_unique_slug(self, db):
        first = projects_mod.create_project(db, "Apollo")
        second = projects_mod.create_project(db, "apollo")
        assert first.slug == "apollo"
        assert second.slug == "apollo-2"
        assert first.id != second.id


class TestProjectCRUD:
    def test_create_defaults(self, db):
        project = projects_mod.create_project(db, "Apollo", description="moonshot")
        assert project.status == "planning"
        assert project.mode == "local"
        assert project.tokens_used == 0
        assert project.cost_spent_cents == 0
        assert project.description == "moonshot"

    def test_create_requires_name(self, db):
        with pytest.raises(ValidationError):
            projects_mod.create_project(db, "")

    def test_create_rejects_unknown_mode(self, db):
        with pytest.raises(ValidationError, match="mode"):
            projects_mod.create_project(db, "Bad", mode="cloud")

    def test_resolve_by_id_or_slug(self, db):
        project = projects_mod.create_project(db, "Gemini")
        assert projects_mod.resolve_project(db, project.id).id == project.id
        assert projects_mod.resolve_project(db, "gemini").id == project.id
        assert projects_mod.resolve_project(db, "mercury") is None

    def test_list_by_status(self, db):
        a = projects_mod.create_project(db, "A")
        projects_mod.create_project(db, "B")
        projects_mod.set_project_status(db, a.id, "active")
        active = projects_mod.list_projects(db, status="active")
        assert [p.id for p in active] == [a.id]
        assert len(projects_mod.list_projects(db)) == 2

    def test_update_project(self, db):
        project = projects_mod.create_project(db, "Old name")
        updated = projects_mod.update_project(db, project.id, name="New name", token_budget=1000)
        assert updated.name == "New name"
        assert updated.token_budget == 1000
        assert updated.slug == project.slug

    def test_update_missing(self, db):
        with pytest.raises(NotFoundError):
            projects_mod.update_project(db, "ghost", name="x")


class TestProjectStatus:
    def test_completed_stamps_time(self, db):
        project = projects_mod.create_project(db, "Finish")
        assert project.completed_at is None
        done = projects_mod.set_project_status(db, project.id, "completed")
        assert done.status == "completed"
        assert done.completed_at is not None

    def test_unknown_status(self, db):
        project = projects_mod.create_project(db, "Odd")
        with pytest.raises(ValidationError):
            projects_mod.set_project_status(db, project.id, "done")


class TestUsage:
    def test_record_usage_accumulates(self, db):
        project = projects_mod.create_project(db, "Spendy")
        projects_mod.record_usage(db, project.id, tokens=100, cost_cents=3)
        project = projects_mod.record_usage(db, project.id, tokens=50, cost_cents=2)
        assert project.tokens_used == 150
        assert project.cost_spent_cents == 5

    def test_negative_usage_rejected(self, db):
        project = projects_mod.create_project(db, "Refund")
        with pytest.raises(ValidationError):
            projects_mod.record_usage(db, project.id, tokens=-1)


class TestDeleteProject:
    def test_cascades(self, db):
        project = projects_mod.create_project(db, "Doomed")
        tasks_mod.create_task(db, project.id, "Base")
        tasks_mod.create_task(db, project.id, "Top", depends_on=["base"])
        tasks_mod.add_subtask(db, "top", "step")
        artifacts_mod.add_artifact(db, "top", "agent-1", "out.txt", content="x")

        projects_mod.delete_project(db, project.id)

        assert projects_mod.get_project(db, project.id) is None
        for table in ("tasks", "task_dependencies", "subtasks", "task_events", "artifacts"):
            assert db.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0] == 0

    def test_delete_missing(self, db):
        with pytest.raises(NotFoundError):
            projects_mod.delete_project(db, "ghost")
