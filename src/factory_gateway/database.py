"""
Relational persistence for project state and the workflow import registry.

Tables are declared with SQLAlchemy Core so the same code runs against
PostgreSQL in production and SQLite in tests. The schema itself is owned by
the deployment's migrations; ``init_schema`` exists for tests and local runs.
"""

from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.engine import Connection, Engine, RowMapping
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .configuration import normalize_database_url
from .errors import ConflictError, DatabaseError
from .logging_utils import as_context_logger

metadata = MetaData()

project_state = Table(
    "project_state",
    metadata,
    Column("project_id", String(255), primary_key=True),
    Column("project_name", String(255), nullable=False),
    Column("session_id", String(255), nullable=False),
    Column("current_phase", Integer, nullable=False, default=0),
    Column("phase_status", String(50), nullable=False, default="pending"),
    Column("input_files", JSON, nullable=False, default=list),
    Column("config", JSON, nullable=False, default=dict),
    Column("error_message", Text),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

workflow_registry = Table(
    "workflow_registry",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("workflow_file", String(255), nullable=False, unique=True),
    Column("workflow_name", String(255)),
    Column("n8n_workflow_id", String(255)),
    Column("import_status", String(20), nullable=False, default="pending"),
    Column("last_error", Text),
    Column("last_import_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Index("idx_workflow_registry_status", "import_status"),
)


class ProjectStore:
    """
    Access to ``project_state`` and ``workflow_registry``.

    Methods are synchronous; route handlers call them through a thread pool.
    Driver errors surface as ``DatabaseError`` so they render like any other
    application error.

    Route handlers work on ``store.with_logger(log)`` so failures are logged
    with the request's correlation id. The copy shares the engine.
    """

    def __init__(self, engine: Engine, logger: Optional[logging.Logger | logging.LoggerAdapter] = None):
        self.engine = engine
        self._logger = as_context_logger(logger, __name__)

    @classmethod
    def from_url(cls, database_url: str) -> "ProjectStore":
        return cls(create_engine(normalize_database_url(database_url), pool_pre_ping=True))

    def with_logger(self, logger: logging.Logger | logging.LoggerAdapter) -> "ProjectStore":
        bound = copy.copy(self)
        bound._logger = as_context_logger(logger, __name__)
        return bound

    @contextmanager
    def _get_connection(self) -> Iterator[Connection]:
        """Yield a connection inside a transaction that commits on success."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            self._logger.error(f"Database operation failed: {exc}")
            raise DatabaseError(f"Database operation failed: {exc.__class__.__name__}") from exc

    def init_schema(self) -> None:
        metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    def health_check(self) -> bool:
        """
        Run ``SELECT 1``.

        Returns:
            True if the database answered, False otherwise
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            self._logger.warning(f"Database health check failed: {exc}")
            return False
        return True

    def create_project(
        self,
        project_id: str,
        project_name: str,
        session_id: str,
        input_files: List[Dict[str, Any]],
        config: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Insert a new ``project_state`` row.

        Args:
            project_id: Primary key for the project
            project_name: Display name
            session_id: Chat session the project starts with
            input_files: Uploaded file descriptors (key, name, size, contentType)
            config: Free-form project settings

        Returns:
            The stored row as a dictionary

        Raises:
            ConflictError: A project with this id already exists
        """
        try:
            with self._get_connection() as conn:
                conn.execute(
                    insert(project_state).values(
                        project_id=project_id,
                        project_name=project_name,
                        session_id=session_id,
                        current_phase=0,
                        phase_status="pending",
                        input_files=input_files,
                        config=config or {},
                    )
                )
                row = conn.execute(
                    select(project_state).where(project_state.c.project_id == project_id)
                ).mappings().one()
        except IntegrityError as exc:
            raise ConflictError(
                "A project with this name already exists",
                details={"projectId": project_id},
            ) from exc
        return self._row_to_dict(row)

    def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                select(project_state).where(project_state.c.project_id == project_id)
            ).mappings().first()
        return self._row_to_dict(row) if row else None

    def mark_workflow_failed(self, project_id: str, error: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                update(project_state)
                .where(project_state.c.project_id == project_id)
                .values(phase_status="workflow_failed", error_message=error, updated_at=func.now())
            )

    def record_workflow_import(
        self,
        workflow_file: str,
        status: str,
        workflow_name: Optional[str] = None,
        n8n_workflow_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """
        Create or update the registry row for ``workflow_file``.

        ``last_import_at`` is stamped when the status becomes ``completed``.
        """
        values: Dict[str, Any] = {"import_status": status, "last_error": error, "updated_at": func.now()}
        if workflow_name is not None:
            values["workflow_name"] = workflow_name
        if n8n_workflow_id is not None:
            values["n8n_workflow_id"] = n8n_workflow_id
        if status == "completed":
            values["last_import_at"] = func.now()

        with self._get_connection() as conn:
            result = conn.execute(
                update(workflow_registry)
                .where(workflow_registry.c.workflow_file == workflow_file)
                .values(**values)
            )
            if result.rowcount == 0:
                conn.execute(insert(workflow_registry).values(workflow_file=workflow_file, **values))

    def list_workflow_imports(self) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                select(workflow_registry).order_by(workflow_registry.c.workflow_file)
            ).mappings().all()
        return [self._row_to_dict(row) for row in rows]

    def _row_to_dict(self, row: RowMapping) -> Dict[str, Any]:
        return {key: row[key] for key in row.keys()}
