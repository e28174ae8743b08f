"""
Startup recovery for interrupted workflow imports.

Importing a workflow into n8n is a multi-step operation that marks its
``workflow_registry`` row ``importing`` or ``updating`` while it runs. If the
process dies midway the row stays in that state forever and blocks the next
import. Before serving requests, every such row is put back to ``pending``.

Recovery never prevents startup: a missing database URL, a database that is
not reachable yet, or a missing table are logged and skipped.

Run standalone with ``factory-gateway-recover`` or
``python -m factory_gateway.recovery``.
"""

from __future__ import annotations

import logging
import sys
from typing import Callable, List, Optional

from sqlalchemy import create_engine, func, inspect, select, text, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from .configuration import load_settings, normalize_database_url
from .database import workflow_registry
from .logging_utils import as_context_logger, configure_logging

RESET_MESSAGE = "Reset: Previous import was interrupted"
STUCK_STATUSES = ("importing", "updating")


class StartupRecovery:
    def __init__(
        self,
        database_url: Optional[str],
        *,
        logger: Optional[logging.Logger | logging.LoggerAdapter] = None,
        engine_factory: Callable[..., Engine] = create_engine,
    ):
        self.database_url = normalize_database_url(database_url)
        self._logger = as_context_logger(logger, __name__).bind(operation="startup-recovery")
        self._engine_factory = engine_factory

    def run(self) -> int:
        """
        Reset stuck imports.

        Returns:
            The number of rows reset; 0 when recovery was skipped or failed
        """
        if not self.database_url:
            self._logger.info("DATABASE_URL not set, skipping startup recovery")
            return 0

        self._logger.info("Running startup recovery")
        engine: Optional[Engine] = None
        try:
            engine = self._engine_factory(self.database_url)
            with engine.begin() as conn:
                conn.execute(text("SELECT 1"))
                if not inspect(conn).has_table(workflow_registry.name):
                    self._logger.info("workflow_registry table not found, skipping recovery")
                    return 0
                reset = self.reset_stuck_imports(conn)
        except OperationalError as exc:
            self._logger.warning(f"Database not ready, skipping startup recovery: {exc.orig or exc}")
            return 0
        except SQLAlchemyError as exc:
            self._logger.error(f"Startup recovery failed: {exc}", exc_info=exc)
            return 0
        except ImportError as exc:
            self._logger.error(f"Database driver not installed, skipping startup recovery: {exc}")
            return 0
        finally:
            if engine is not None:
                engine.dispose()

        if reset:
            self._logger.info(
                f"Reset {len(reset)} interrupted workflow import(s) to pending",
                extra={"workflows": ",".join(reset)},
            )
        else:
            self._logger.info("No interrupted imports found")
        return len(reset)

    def reset_stuck_imports(self, conn: Connection) -> List[str]:
        """
        Move every ``importing``/``updating`` row back to ``pending``.

        Runs inside the caller's transaction and returns the affected
        ``workflow_file`` values. Dialects without ``UPDATE ... RETURNING``
        select the affected rows first, under the same transaction.
        """
        stuck = workflow_registry.c.import_status.in_(STUCK_STATUSES)
        statement = (
            update(workflow_registry)
            .where(stuck)
            .values(import_status="pending", last_error=RESET_MESSAGE, updated_at=func.now())
        )

        if conn.dialect.update_returning:
            rows = conn.execute(statement.returning(workflow_registry.c.workflow_file))
            return [row.workflow_file for row in rows]

        files = list(conn.execute(select(workflow_registry.c.workflow_file).where(stuck)).scalars())
        if files:
            conn.execute(statement.where(workflow_registry.c.workflow_file.in_(files)))
        return files


def main() -> int:
    """Console entry point; always exits 0 so a container can keep starting."""
    logger = logging.getLogger(__name__)
    try:
        settings = load_settings()
        configure_logging(settings.log_level, settings.log_format)
        StartupRecovery(settings.database_url, logger=logger).run()
    except Exception as exc:  # noqa: BLE001 - recovery must never block startup
        logger.error(f"Startup recovery aborted: {exc}", exc_info=exc)
    return 0


if __name__ == "__main__":
    sys.exit(main())
