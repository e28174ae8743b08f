"""
Tests for the startup recovery of interrupted workflow imports.
"""

import logging

import pytest
from sqlalchemy import create_engine, insert, select

from factory_gateway import recovery
from factory_gateway.database import metadata, workflow_registry
from factory_gateway.recovery import RESET_MESSAGE, StartupRecovery


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'registry.db'}"


@pytest.fixture
def seeded_registry(database_url):
    """3 importing, 2 updating, 1 completed and 1 failed row."""
    engine = create_engine(database_url)
    metadata.create_all(engine)
    rows = (
        [{"workflow_file": f"import-{n}.json", "import_status": "importing", "last_error": None} for n in range(3)]
        + [{"workflow_file": f"update-{n}.json", "import_status": "updating", "last_error": None} for n in range(2)]
        + [
            {"workflow_file": "done.json", "import_status": "completed", "last_error": None},
            {"workflow_file": "broken.json", "import_status": "failed", "last_error": "HTTP 400"},
        ]
    )
    with engine.begin() as conn:
        conn.execute(insert(workflow_registry), rows)
    yield engine
    engine.dispose()


def statuses(engine):
    with engine.connect() as conn:
        rows = conn.execute(
            select(workflow_registry.c.workflow_file, workflow_registry.c.import_status, workflow_registry.c.last_error)
        ).all()
    return {row.workflow_file: (row.import_status, row.last_error) for row in rows}


class TestStartupRecovery:
    """Tests for StartupRecovery.run."""

    def test_resets_stuck_imports(self, database_url, seeded_registry):
        """Rows left importing or updating go back to pending with a reset note."""
        reset = StartupRecovery(database_url).run()

        assert reset == 5
        result = statuses(seeded_registry)
        for name in ["import-0.json", "import-1.json", "import-2.json", "update-0.json", "update-1.json"]:
            assert result[name] == ("pending", RESET_MESSAGE)
        assert result["done.json"] == ("completed", None)
        assert result["broken.json"] == ("failed", "HTTP 400")

    def test_is_idempotent(self, database_url, seeded_registry):
        """A second run finds nothing to reset and changes nothing."""
        StartupRecovery(database_url).run()
        after_first = statuses(seeded_registry)

        assert StartupRecovery(database_url).run() == 0
        assert statuses(seeded_registry) == after_first

    def test_logs_reset_workflows(self, database_url, seeded_registry, caplog):
        caplog.set_level(logging.INFO, logger="factory_gateway")

        StartupRecovery(database_url).run()

        summary = [record for record in caplog.records if "interrupted workflow import" in record.getMessage()]
        assert len(summary) == 1
        assert "import-0.json" in summary[0].context["workflows"]
        assert summary[0].context["operation"] == "startup-recovery"

    def test_without_database_url_no_engine_is_created(self):
        def engine_factory(*args, **kwargs):
            raise AssertionError("engine must not be created without a database URL")

        assert StartupRecovery(None, engine_factory=engine_factory).run() == 0
        assert StartupRecovery("", engine_factory=engine_factory).run() == 0

    def test_missing_table_is_skipped(self, database_url, caplog):
        caplog.set_level(logging.INFO, logger="factory_gateway")

        assert StartupRecovery(database_url).run() == 0
        assert any("table not found" in record.getMessage() for record in caplog.records)

    def test_unreachable_database_is_logged_not_raised(self, tmp_path, caplog):
        """A database that cannot be opened is reported as not ready."""
        caplog.set_level(logging.INFO, logger="factory_gateway")
        url = f"sqlite:///{tmp_path / 'missing-dir' / 'registry.db'}"

        assert StartupRecovery(url).run() == 0
        assert any("Database not ready" in record.getMessage() for record in caplog.records)

    def test_uses_engine_factory(self, database_url, seeded_registry):
        created = []

        def engine_factory(url):
            engine = create_engine(url)
            created.append(engine)
            return engine

        StartupRecovery(database_url, engine_factory=engine_factory).run()

        assert len(created) == 1
        assert created[0].url.database.endswith("registry.db")

    def test_plain_postgres_url_is_pinned_to_psycopg(self):
        requested = []

        def engine_factory(url):
            requested.append(url)
            raise ImportError("No module named 'psycopg'")

        assert StartupRecovery("postgres://factory:secret@db/factory", engine_factory=engine_factory).run() == 0
        assert requested == ["postgresql+psycopg://factory:secret@db/factory"]

    def test_reset_without_update_returning(self, database_url, seeded_registry):
        """Dialects without UPDATE .. RETURNING select the rows first."""
        with seeded_registry.begin() as conn:
            original = conn.dialect.update_returning
            conn.dialect.update_returning = False
            try:
                files = StartupRecovery(database_url).reset_stuck_imports(conn)
            finally:
                conn.dialect.update_returning = original

        assert sorted(files) == ["import-0.json", "import-1.json", "import-2.json", "update-0.json", "update-1.json"]
        assert statuses(seeded_registry)["update-1.json"] == ("pending", RESET_MESSAGE)


class TestRecoveryMain:
    """Tests for the factory-gateway-recover entry point."""

    def test_main_returns_zero_on_bad_database(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'no-such-dir' / 'db.sqlite'}")
        assert recovery.main() == 0

    def test_main_resets_rows(self, monkeypatch, database_url, seeded_registry):
        monkeypatch.setenv("DATABASE_URL", database_url)
        assert recovery.main() == 0
        assert statuses(seeded_registry)["import-1.json"] == ("pending", RESET_MESSAGE)

    def test_main_returns_zero_when_settings_fail(self, monkeypatch):
        def broken_settings():
            raise FileNotFoundError("Config override not found")

        monkeypatch.setattr(recovery, "load_settings", broken_settings)
        assert recovery.main() == 0
