"""Tests for whole-store export and import."""

import json
import tempfile
from pathlib import Path

import pytest

from squad_ledger.core import artifacts as artifacts_mod
from squad_ledger.core import interactions as ix_mod
from squad_ledger.core import projects as projects_mod
from squad_ledger.core import relationships as rel_mod
from squad_ledger.core import snapshot as snapshot_mod
from squad_ledger.core import tasks as tasks_mod
from squad_ledger.core.errors import ValidationError
from squad_ledger.db.engine import init_db


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def source(tmp_dir):
    conn = init_db(tmp_dir / "source.db")
    project = projects_mod.create_project(conn, "Snap")
    tasks_mod.create_task(conn, project.id, "Design")
    tasks_mod.create_task(conn, project.id, "Build", depends_on=["design"])
    tasks_mod.create_task(conn, project.id, "Ship", depends_on=["build", "design"])
    tasks_mod.add_subtask(conn, "build", "scaffold")
    artifacts_mod.add_artifact(conn, "design", "architect", "design.md", content="# Design")
    edge = rel_mod.create_relationship(conn, "lead", "dev", "delegation")
    root = ix_mod.create_interaction(
        conn, "wf-1", "lead", "dev", "task_assign", "build it",
        task_id="build", relationship_id=edge.id,
    )
    ix_mod.create_interaction(conn, "wf-1", "dev", "lead", "progress_update", "halfway",
                              parent_interaction_id=root.id)
    ix_mod.complete_interaction(conn, root.id, "done")
    yield conn
    conn.close()


@pytest.fixture
def target(tmp_dir):
    conn = init_db(tmp_dir / "target.db")
    yield conn
    conn.close()


class TestExport:
    def test_collections_keyed_by_id(self, source):
        data = snapshot_mod.export_snapshot(source)
        assert set(data["tasks"]) == {"design", "build", "ship"}
        for key in ("projects", "artifacts", "relationships", "interactions"):
            for entity_id, entity in data[key].items():
                assert entity["id"] == entity_id

    def test_json_ready(self, source):
        data = snapshot_mod.export_snapshot(source)
        assert json.loads(json.dumps(data)) == data


class TestImport:
    def test_round_trip_keeps_dependency_views(self, source, target):
        data = json.loads(json.dumps(snapshot_mod.export_snapshot(source)))
        snapshot_mod.import_snapshot(target, data)

        for task_id in ("design", "build", "ship"):
            before = tasks_mod.get_task(source, task_id)
            after = tasks_mod.get_task(target, task_id)
            assert sorted(after.dependencies) == sorted(before.dependencies)
            assert sorted(after.blocks) == sorted(before.blocks)
            assert after.status == before.status
            assert after.artifact_ids == before.artifact_ids
            assert [s.title for s in after.subtasks] == [s.title for s in before.subtasks]

    def test_round_trip_keeps_ledger(self, source, target):
        snapshot_mod.import_snapshot(target, snapshot_mod.export_snapshot(source))
        before = ix_mod.list_interactions(source)
        after = ix_mod.list_interactions(target)
        assert after == before
        edge_before = rel_mod.list_relationships(source)[0]
        edge_after = rel_mod.list_relationships(target)[0]
        assert edge_after.metrics == edge_before.metrics

    def test_blocks_are_rederived(self, source, target):
        data = snapshot_mod.export_snapshot(source)
        data["tasks"]["design"]["blocks"] = ["made-up"]
        snapshot_mod.import_snapshot(target, data)
        assert sorted(tasks_mod.get_task(target, "design").blocks) == ["build", "ship"]

    def test_dangling_dependency_dropped(self, source, target):
        data = snapshot_mod.export_snapshot(source)
        del data["tasks"]["design"]
        counts = snapshot_mod.import_snapshot(target, data)
        assert counts["tasks"] == 2
        assert tasks_mod.get_task(target, "ship").dependencies == ["build"]
        assert tasks_mod.get_task(target, "build").dependencies == []
        # The design artifact lost its task and is dropped too.
        assert counts["artifacts"] == 0

    def test_replace_discards_existing(self, source, target):
        stale = projects_mod.create_project(target, "Stale")
        snapshot_mod.import_snapshot(target, snapshot_mod.export_snapshot(source))
        assert projects_mod.get_project(target, stale.id) is None

    def test_merge_keeps_existing(self, source, target):
        kept = projects_mod.create_project(target, "Kept")
        snapshot_mod.import_snapshot(target, snapshot_mod.export_snapshot(source), replace=False)
        assert projects_mod.get_project(target, kept.id) is not None
        assert len(projects_mod.list_projects(target)) == 2

    def test_response_average_survives_round_trip(self, target, tmp_dir):
        conn = init_db(tmp_dir / "timing.db")
        edge = rel_mod.create_relationship(conn, "lead", "dev", "delegation")
        rel_mod.record_outcome(conn, edge.id, True, 1000)
        rel_mod.record_outcome(conn, edge.id, False)

        snapshot_mod.import_snapshot(target, snapshot_mod.export_snapshot(conn))
        for db in (conn, target):
            rel_mod.record_outcome(db, edge.id, True, 4000)

        for db in (conn, target):
            metrics = rel_mod.get_relationship(db, edge.id).metrics
            assert metrics.timed_interactions == 2
            assert metrics.avg_response_time == pytest.approx(2500)
        conn.close()

    def test_cycle_edges_dropped(self, source, target):
        data = snapshot_mod.export_snapshot(source)
        data["tasks"]["design"] = data["tasks"].pop("design")
        data["tasks"]["design"]["dependencies"] = ["ship"]
        counts = snapshot_mod.import_snapshot(target, data)
        assert counts["dependencies"] == 3
        assert tasks_mod.get_task(target, "design").dependencies == []
        assert sorted(tasks_mod.get_task(target, "ship").dependencies) == ["build", "design"]

    def test_cross_project_edges_dropped(self, source, target):
        data = snapshot_mod.export_snapshot(source)
        project_id = data["tasks"]["design"]["project_id"]
        data["projects"]["other"] = {
            **data["projects"][project_id], "id": "other", "slug": "other", "name": "Other",
        }
        data["tasks"]["stranger"] = {
            **data["tasks"]["design"], "id": "stranger", "project_id": "other",
            "dependencies": [], "subtasks": [],
        }
        data["tasks"]["build"]["dependencies"] = ["design", "stranger"]
        snapshot_mod.import_snapshot(target, data)
        assert tasks_mod.get_task(target, "build").dependencies == ["design"]
        assert tasks_mod.get_task(target, "stranger").blocks == []


class TestMalformedImport:
    @pytest.mark.parametrize(
        "data",
        [["not", "a", "snapshot"], {"tasks": ["design"]}, {"version": 99}],
    )
    def test_bad_shape(self, target, data):
        with pytest.raises(ValidationError):
            snapshot_mod.import_snapshot(target, data)

    def test_missing_field_rolls_back(self, source, target):
        kept = projects_mod.create_project(target, "Kept")
        data = snapshot_mod.export_snapshot(source)
        del data["tasks"]["build"]["project_id"]
        with pytest.raises(ValidationError, match="project_id"):
            snapshot_mod.import_snapshot(target, data)
        assert [p.id for p in projects_mod.list_projects(target)] == [kept.id]

    def test_slug_collision_on_merge(self, source, target):
        projects_mod.create_project(target, "Snap")
        with pytest.raises(ValidationError):
            snapshot_mod.import_snapshot(target, snapshot_mod.export_snapshot(source), replace=False)
        assert len(projects_mod.list_projects(target)) == 1
