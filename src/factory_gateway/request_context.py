"""
Request correlation and lifecycle logging.

A correlation id is taken from the first tracing header the caller sent, or
generated when there is none. It is bound to a per-request logger, forwarded
to the workflow engine and echoed back in the ``x-correlation-id`` response
header.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from starlette.datastructures import Headers, MutableHeaders
from starlette.requests import Request
from starlette.responses import Response, StreamingResponse

from .logging_utils import ContextLoggerAdapter, as_context_logger, generate_correlation_id

CORRELATION_ID_HEADER = "x-correlation-id"

# Checked in order; the first present, non-empty header wins
CORRELATION_ID_HEADERS = ("x-correlation-id", "x-request-id", "x-trace-id", "traceparent")

CLIENT_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip", "true-client-ip")


def _as_headers(headers: Mapping[str, str]) -> Headers:
    if isinstance(headers, Headers):
        return headers
    return Headers(headers=dict(headers))


def extract_correlation_id(headers: Mapping[str, str]) -> str:
    headers = _as_headers(headers)
    for name in CORRELATION_ID_HEADERS:
        value = (headers.get(name) or "").strip()
        if not value:
            continue
        if name == "traceparent":
            # W3C format: version-traceid-parentid-flags
            parts = value.split("-")
            if len(parts) >= 2 and parts[1]:
                return parts[1]
        return value
    return generate_correlation_id()


def extract_client_ip(headers: Mapping[str, str]) -> Optional[str]:
    headers = _as_headers(headers)
    for name in CLIENT_IP_HEADERS:
        value = headers.get(name)
        if not value:
            continue
        if name == "x-forwarded-for":
            value = value.split(",")[0]
        value = value.strip()
        if value:
            return value
    return None


@dataclass(frozen=True)
class RequestContext:
    correlation_id: str
    method: str
    path: str
    logger: ContextLoggerAdapter
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None


def create_request_context(
    request: Request, logger: Optional[logging.Logger | logging.LoggerAdapter] = None
) -> RequestContext:
    correlation_id = extract_correlation_id(request.headers)
    base = as_context_logger(logger, "request")
    return RequestContext(
        correlation_id=correlation_id,
        method=request.method,
        path=request.url.path,
        logger=base.bind(correlation_id=correlation_id),
        client_ip=extract_client_ip(request.headers),
        user_agent=request.headers.get("user-agent"),
    )


def create_operation_logger(ctx: RequestContext, operation: str, **fields: Any) -> ContextLoggerAdapter:
    return ctx.logger.bind(operation=operation, **fields)


def log_request_start(ctx: RequestContext) -> None:
    ctx.logger.info(
        "Request started",
        extra={
            "method": ctx.method,
            "path": ctx.path,
            "user_agent": ctx.user_agent,
            "client_ip": ctx.client_ip,
        },
    )


def log_request_complete(ctx: RequestContext, status_code: int, duration_ms: float) -> None:
    level = logging.WARNING if status_code >= 400 else logging.INFO
    ctx.logger.log(
        level,
        "Request completed",
        extra={
            "method": ctx.method,
            "path": ctx.path,
            "status_code": status_code,
            "duration_ms": round(duration_ms, 1),
        },
    )


def log_request_error(ctx: RequestContext, error: BaseException, status_code: int = 500) -> None:
    ctx.logger.error(
        f"Request failed: {error}",
        exc_info=error,
        extra={
            "method": ctx.method,
            "path": ctx.path,
            "status_code": status_code,
            "error_type": type(error).__name__,
        },
    )


def create_response_headers(correlation_id: str, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    headers = {CORRELATION_ID_HEADER: correlation_id}
    if extra:
        headers.update(extra)
    return headers


def with_correlation_id(response: Response, correlation_id: str) -> Response:
    """
    Return a new response carrying ``x-correlation-id``.

    The original response's headers are copied rather than mutated. Streaming
    responses (as produced by ``BaseHTTPMiddleware``) keep their body iterator;
    buffered responses keep their rendered body.
    """
    headers = MutableHeaders(raw=list(response.raw_headers))
    headers[CORRELATION_ID_HEADER] = correlation_id

    body_iterator = getattr(response, "body_iterator", None)
    if body_iterator is not None:
        tagged: Response = StreamingResponse(
            body_iterator,
            status_code=response.status_code,
            background=getattr(response, "background", None),
        )
    else:
        tagged = Response(
            content=response.body,
            status_code=response.status_code,
            background=getattr(response, "background", None),
        )
    tagged.raw_headers = headers.raw
    return tagged
