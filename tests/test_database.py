"""
Tests for the project and workflow registry store.
"""

import logging

import pytest

from factory_gateway.database import ProjectStore
from factory_gateway.errors import ConflictError, DatabaseError
from factory_gateway.logging_utils import as_context_logger

INPUT_FILES = [{"key": "projects/p1/input/brief.pdf", "name": "brief.pdf", "size": 1024, "contentType": "application/pdf"}]


class TestProjectStore:
    """Tests for project_state access."""

    def test_create_and_get_project(self, store):
        created = store.create_project("p1", "Project One", "session_1", INPUT_FILES, {"description": "demo"})

        assert created["project_id"] == "p1"
        assert created["phase_status"] == "pending"
        assert created["current_phase"] == 0
        assert created["created_at"] is not None

        loaded = store.get_project("p1")
        assert loaded["input_files"] == INPUT_FILES
        assert loaded["config"] == {"description": "demo"}

    def test_duplicate_project_is_a_conflict(self, store):
        store.create_project("p1", "Project One", "session_1", INPUT_FILES)

        with pytest.raises(ConflictError) as exc_info:
            store.create_project("p1", "Project One", "session_2", INPUT_FILES)
        assert exc_info.value.status_code == 409

    def test_get_missing_project(self, store):
        assert store.get_project("nope") is None

    def test_mark_workflow_failed(self, store):
        store.create_project("p1", "Project One", "session_1", INPUT_FILES)

        store.mark_workflow_failed("p1", "n8n returned 500: boom")

        project = store.get_project("p1")
        assert project["phase_status"] == "workflow_failed"
        assert project["error_message"] == "n8n returned 500: boom"

    def test_health_check(self, store, tmp_path):
        assert store.health_check() is True

        broken = ProjectStore.from_url(f"sqlite:///{tmp_path / 'missing' / 'db.sqlite'}")
        assert broken.health_check() is False
        broken.dispose()

    def test_with_logger_shares_engine_and_tags_failures(self, tmp_path, caplog):
        caplog.set_level(logging.INFO, logger="factory_gateway")
        broken = ProjectStore.from_url(f"sqlite:///{tmp_path / 'missing' / 'db.sqlite'}")
        bound = broken.with_logger(as_context_logger(None, "request").bind(correlation_id="cid-db"))

        assert bound.engine is broken.engine
        assert bound.health_check() is False
        (record,) = [r for r in caplog.records if "health check failed" in r.getMessage()]
        assert record.context["correlation_id"] == "cid-db"
        broken.dispose()

    def test_driver_errors_become_database_errors(self, tmp_path):
        broken = ProjectStore.from_url(f"sqlite:///{tmp_path / 'missing' / 'db.sqlite'}")

        with pytest.raises(DatabaseError):
            broken.get_project("p1")
        broken.dispose()


class TestWorkflowRegistry:
    """Tests for workflow_registry access."""

    def test_record_and_list_imports(self, store):
        store.record_workflow_import("b-flow.json", "importing", workflow_name="B Flow")
        store.record_workflow_import("a-flow.json", "completed", workflow_name="A Flow", n8n_workflow_id="wf-1")

        imports = store.list_workflow_imports()

        assert [row["workflow_file"] for row in imports] == ["a-flow.json", "b-flow.json"]
        assert imports[0]["import_status"] == "completed"
        assert imports[0]["last_import_at"] is not None
        assert imports[1]["last_import_at"] is None

    def test_record_updates_existing_row(self, store):
        store.record_workflow_import("flow.json", "importing", workflow_name="Flow")
        store.record_workflow_import("flow.json", "failed", error="HTTP 400: bad workflow")

        (row,) = store.list_workflow_imports()
        assert row["import_status"] == "failed"
        assert row["last_error"] == "HTTP 400: bad workflow"
        assert row["workflow_name"] == "Flow"
