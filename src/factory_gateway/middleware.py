
import logging
import time
from typing import Iterable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from .errors import to_app_error
from .request_context import (
    RequestContext,
    create_request_context,
    log_request_complete,
    log_request_error,
    log_request_start,
    with_correlation_id,
)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Wraps every request with correlation and lifecycle logging.

    The request context is stored on ``request.state.request_context`` for
    handlers and exception handlers. Exceptions that escape the app are logged
    and turned into the standard error body, so even a crash answers with the
    correlation id the caller can quote.
    """

    def __init__(
        self,
        app: ASGIApp,
        quiet_paths: Iterable[str] = ("/api/health",),
        logger: Optional[logging.Logger | logging.LoggerAdapter] = None,
    ):
        super().__init__(app)
        # Polled endpoints skip the start line; completion is still logged
        self.quiet_paths = frozenset(quiet_paths)
        self._logger = logger

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        ctx = create_request_context(request, logger=self._logger)
        request.state.request_context = ctx
        started = time.perf_counter()

        if request.url.path not in self.quiet_paths:
            log_request_start(ctx)

        try:
            response = await call_next(request)
        except Exception as exc:  # noqa: BLE001 - rendered as a 500 below
            app_error = to_app_error(exc)
            log_request_error(ctx, exc, app_error.status_code)
            response = JSONResponse(app_error.to_response(ctx.correlation_id), status_code=app_error.status_code)

        log_request_complete(ctx, response.status_code, (time.perf_counter() - started) * 1000)
        return with_correlation_id(response, ctx.correlation_id)


def get_request_context(request: Request) -> RequestContext:
    ctx = getattr(request.state, "request_context", None)
    if ctx is None:
        ctx = create_request_context(request)
        request.state.request_context = ctx
    return ctx
