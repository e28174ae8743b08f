from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from . import __version__
from .auth import ApiKeyVerifier, Session, SessionVerifier
from .configuration import Settings, get_settings
from .database import ProjectStore
from .errors import (
    AppError,
    DatabaseError,
    ExternalServiceError,
    ForwardingError,
    ServiceUnavailableError,
    UnauthorizedError,
    UpstreamTimeoutError,
    ValidationError,
)
from .logging_utils import configure_logging, get_logger
from .middleware import RequestContextMiddleware, get_request_context
from .models import (
    ChatRequest,
    ChatResponse,
    GovernanceAction,
    GovernanceResult,
    GovernanceSubmission,
    PresignedUrlRequest,
    PresignedUrlResponse,
    StartProjectRequest,
    StartProjectResponse,
    WorkflowImport,
    WorkflowImportList,
    WorkflowStatus,
)
from .n8n_client import N8nClient, ResilientClient, build_n8n_client
from .recovery import StartupRecovery
from .request_context import RequestContext, create_operation_logger
from .s3_service import StorageService
from .utils import make_project_id, make_session_id

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

NO_CACHE = "no-cache, no-store, must-revalidate"


def get_n8n(request: Request) -> N8nClient:
    return request.app.state.n8n


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


def get_store(request: Request) -> ProjectStore:
    store = request.app.state.store
    if store is None:
        raise ServiceUnavailableError("Database is not configured")
    return store


def require_session(request: Request) -> Session:
    session = request.app.state.session_verifier(request.headers)
    if session is None:
        raise UnauthorizedError()
    return session


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    ctx = getattr(request.state, "request_context", None)
    request_id = ctx.correlation_id if ctx else None
    return JSONResponse(exc.to_response(request_id), status_code=exc.status_code)


@router.get("/health")
async def health(request: Request, ctx: RequestContext = Depends(get_request_context)) -> JSONResponse:
    started = time.perf_counter()
    store: Optional[ProjectStore] = request.app.state.store
    database_ok = store is not None and await run_in_threadpool(
        store.with_logger(create_operation_logger(ctx, "health-check")).health_check
    )

    body = {
        "status": "healthy" if database_ok else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "responseTime": f"{(time.perf_counter() - started) * 1000:.0f}ms",
        "checks": {"database": {"status": "up" if database_ok else "down"}},
        "version": __version__,
    }
    return JSONResponse(
        content=body,
        status_code=200 if database_ok else 503,
        headers={"Cache-Control": NO_CACHE},
    )


@router.post("/governance", response_model=GovernanceResult)
async def submit_governance(
    submission: GovernanceSubmission,
    ctx: RequestContext = Depends(get_request_context),
    _session: Session = Depends(require_session),
    n8n: N8nClient = Depends(get_n8n),
) -> GovernanceResult:
    log = create_operation_logger(
        ctx,
        "governance-submit",
        project_id=submission.project_id,
        scavenging_id=submission.scavenging_id,
    )
    log.info(f"Processing {len(submission.decisions)} governance decision(s)")

    def on_retry(error: Exception, attempt: int) -> None:
        log.warning("n8n governance webhook retry", extra={"attempt": attempt, "error": str(error)})

    policy = n8n.policy("governance").with_callback(on_retry)
    try:
        result = await n8n.forward(
            "governance",
            submission.model_dump(mode="json", exclude_none=True),
            correlation_id=ctx.correlation_id,
            policy=policy,
        )
    except ForwardingError as exc:
        if exc.timed_out:
            raise UpstreamTimeoutError("n8n governance webhook", policy.timeout) from exc
        raise
    if not result.ok:
        log.error(
            "n8n governance webhook failed",
            extra={"status_code": result.status_code, "body": result.text[:500]},
        )
        raise ExternalServiceError(
            "n8n",
            f"governance webhook returned {result.status_code}",
            details={"statusCode": result.status_code},
        )

    approved = sum(1 for decision in submission.decisions if decision.action is GovernanceAction.APPROVE)
    log.info("Governance decisions submitted", extra={"approved_count": approved})
    return GovernanceResult(
        success=True,
        message=f"Submitted {len(submission.decisions)} decision(s)",
        scavenging_id=submission.scavenging_id,
        decisions_count=len(submission.decisions),
        approved_count=approved,
        n8n_response=result.payload(),
    )


@router.post("/start-project", response_model=StartProjectResponse, response_model_by_alias=True)
async def start_project(
    body: StartProjectRequest,
    ctx: RequestContext = Depends(get_request_context),
    _session: Session = Depends(require_session),
    store: ProjectStore = Depends(get_store),
    n8n: N8nClient = Depends(get_n8n),
) -> StartProjectResponse:
    log = create_operation_logger(ctx, "start-project")
    store = store.with_logger(log)

    project_name = body.project_name.strip()
    if not project_name:
        raise ValidationError("Project name is required")
    if not body.input_files:
        raise ValidationError("At least one input file is required")

    project_id = body.project_id or make_project_id(project_name)
    session_id = make_session_id()
    input_files = [item.model_dump(by_alias=True) for item in body.input_files]

    project = await run_in_threadpool(
        store.create_project,
        project_id,
        project_name,
        session_id,
        input_files,
        {"description": body.description} if body.description else {},
    )
    log = log.bind(project_id=project_id)
    log.info("Project created")

    workflow_status = WorkflowStatus.SKIPPED
    execution_id = None
    workflow_error = None

    if n8n.configured:
        result = await n8n.trigger_start_project(
            {
                "projectId": project_id,
                "projectName": project_name,
                "sessionId": session_id,
                "description": body.description,
                "inputFiles": input_files,
            },
            correlation_id=ctx.correlation_id,
        )
        if result.success:
            workflow_status = WorkflowStatus.STARTED
            execution_id = result.execution_id
        else:
            workflow_status = WorkflowStatus.FAILED
            workflow_error = result.error
            log.error(f"Failed to trigger workflow: {result.error}")
            try:
                await run_in_threadpool(store.mark_workflow_failed, project_id, result.error or "Workflow trigger failed")
            except DatabaseError as exc:
                log.error(f"Failed to record workflow failure: {exc}")
    else:
        log.warning("N8N_WEBHOOK_URL not configured, skipping workflow trigger")

    messages = {
        WorkflowStatus.STARTED: "Project created and workflow started",
        WorkflowStatus.FAILED: "Project created but workflow failed to start",
        WorkflowStatus.SKIPPED: "Project created; workflow engine not configured",
    }
    return StartProjectResponse(
        project_id=project_id,
        project_name=project_name,
        session_id=session_id,
        created_at=project.get("created_at"),
        workflow_status=workflow_status,
        execution_id=execution_id,
        workflow_error=workflow_error,
        message=messages[workflow_status],
    )


@router.post("/presigned-url", response_model=PresignedUrlResponse, response_model_by_alias=True)
async def presigned_url(
    body: PresignedUrlRequest,
    ctx: RequestContext = Depends(get_request_context),
    _session: Session = Depends(require_session),
    storage: StorageService = Depends(get_storage),
) -> PresignedUrlResponse:
    log = create_operation_logger(ctx, "presigned-url", project_id=body.project_id)
    upload = storage.with_logger(log).generate_upload_url(body.project_id, body.filename, body.content_type)
    return PresignedUrlResponse(
        upload_url=upload.upload_url,
        key=upload.key,
        expires_in=upload.expires_in,
        content_type=upload.content_type,
    )


@router.post("/chat", response_model=ChatResponse, response_model_by_alias=True)
async def chat(
    body: ChatRequest,
    ctx: RequestContext = Depends(get_request_context),
    _session: Session = Depends(require_session),
    n8n: N8nClient = Depends(get_n8n),
) -> ChatResponse:
    reply = await n8n.send_chat_message(
        body.message,
        body.project_id,
        body.session_id,
        correlation_id=ctx.correlation_id,
    )
    if reply.timed_out:
        raise UpstreamTimeoutError("n8n chat webhook", n8n.policy("chat").timeout)
    if reply.error:
        raise ExternalServiceError("n8n", reply.error)
    return ChatResponse(message=reply.message, session_id=reply.session_id, execution_id=reply.execution_id)


@router.get("/setup/workflows", response_model=WorkflowImportList)
async def list_workflows(
    ctx: RequestContext = Depends(get_request_context),
    _session: Session = Depends(require_session),
    store: ProjectStore = Depends(get_store),
) -> WorkflowImportList:
    store = store.with_logger(create_operation_logger(ctx, "list-workflows"))
    rows = await run_in_threadpool(store.list_workflow_imports)
    workflows = [WorkflowImport(**{key: row.get(key) for key in WorkflowImport.model_fields}) for row in rows]
    counts: Dict[str, int] = {}
    for workflow in workflows:
        counts[workflow.import_status.value] = counts.get(workflow.import_status.value, 0) + 1
    return WorkflowImportList(workflows=workflows, counts=counts)


def create_app(
    settings: Optional[Settings] = None,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    store: Optional[ProjectStore] = None,
    storage: Optional[StorageService] = None,
    session_verifier: Optional[SessionVerifier] = None,
) -> FastAPI:
    """
    Build the gateway application.

    Collaborators are created from ``settings`` unless injected. An injected
    HTTP client stays owned by the caller; one created here is closed when
    the app shuts down.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_format)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if settings.startup_recovery:
            await asyncio.to_thread(StartupRecovery(settings.database_url).run)
        logger.info(f"Factory gateway {__version__} ready")
        yield
        await app.state.forwarder.aclose()
        if app.state.owns_store and app.state.store is not None:
            app.state.store.dispose()

    app = FastAPI(title="Factory Gateway", version=__version__, lifespan=lifespan)

    forwarder = ResilientClient(http_client, logger=get_logger("n8n_client"))
    app.state.settings = settings
    app.state.forwarder = forwarder
    app.state.n8n = build_n8n_client(settings, forwarder, logger=get_logger("n8n_client"))
    app.state.owns_store = store is None
    app.state.store = store if store is not None else (
        ProjectStore.from_url(settings.database_url) if settings.database_url else None
    )
    app.state.storage = storage or StorageService(settings.storage)
    app.state.session_verifier = session_verifier or ApiKeyVerifier(settings.api_key)

    app.add_exception_handler(AppError, app_error_handler)
    app.include_router(router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["x-correlation-id"],
    )
    # Added last so it wraps CORS and tags preflight responses too
    app.add_middleware(RequestContextMiddleware, logger=get_logger("request"))

    return app


app = create_app()
