"""
Outbound calls to the n8n workflow engine.

``ResilientClient`` owns the retry loop: every attempt is its own
``asyncio.wait_for`` with the policy's timeout, 5xx responses and transport
failures are retried with exponential backoff, and 4xx responses are handed
back untouched. ``N8nClient`` builds on it with the webhook operations the
dashboard uses (start a project, submit governance decisions, chat).
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import httpx

from .errors import ConfigurationError, ForwardingError, TransportFailure, UpstreamStatusError
from .logging_utils import as_context_logger
from .request_context import CORRELATION_ID_HEADER
from .retry import Attempt, AttemptOutcome, RetryPolicy, calculate_backoff, classify_exception, classify_status
from .utils import make_session_id

# Health checks use a short fixed timeout, independent of any retry policy
HEALTH_CHECK_TIMEOUT = 5.0

DEFAULT_WEBHOOK_PATHS: Dict[str, str] = {
    "chat": "ai-product-factory-chat",
    "governance": "governance-batch",
    "start_project": "webhook/start-project",
}

# Keys the chat workflow may use for its reply, in order of preference
CHAT_REPLY_KEYS = ("output", "text", "response", "message")


@dataclass
class ForwardResult:
    response: httpx.Response
    attempts: List[Attempt]

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def ok(self) -> bool:
        return self.response.is_success

    @property
    def text(self) -> str:
        return self.response.text

    def payload(self) -> Any:
        """Parsed JSON body, or ``None`` when the body is empty or not JSON."""
        try:
            return self.response.json()
        except ValueError:
            return None


class ResilientClient:
    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        logger: Optional[logging.Logger | logging.LoggerAdapter] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Any = random,
    ):
        self._owns_client = http_client is None
        self.http_client = http_client if http_client is not None else httpx.AsyncClient()
        self._logger = as_context_logger(logger, __name__)
        self._sleep = sleep
        self._rng = rng

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def __aenter__(self) -> "ResilientClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def send(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        policy: Optional[RetryPolicy] = None,
        correlation_id: Optional[str] = None,
    ) -> ForwardResult:
        """
        Send a request, retrying transient failures.

        Args:
            method: HTTP method
            url: Absolute URL
            json: Optional JSON body
            headers: Extra request headers
            policy: Retry policy; defaults to ``RetryPolicy()``
            correlation_id: Sent downstream as ``x-correlation-id`` and
                attached to every retry log line and callback error

        Returns:
            The first non-retryable response, or the last 5xx response once
            retries are exhausted, with the attempts that led to it.

        Raises:
            ForwardingError: No response could be obtained, either because a
                transport failure persisted through every attempt or because
                the failure is not retryable.
        """
        policy = policy or RetryPolicy()
        request_headers = dict(headers or {})
        if json is not None:
            request_headers.setdefault("Content-Type", "application/json")
        if correlation_id:
            request_headers[CORRELATION_ID_HEADER] = correlation_id

        log = self._logger.bind(correlation_id=correlation_id, url=url)
        attempts: List[Attempt] = []

        for index in range(policy.max_attempts):
            attempt = await self._attempt(index, method, url, json, request_headers, policy.timeout)
            attempts.append(attempt)
            is_last = index == policy.max_retries

            if attempt.response is not None:
                if attempt.outcome is not AttemptOutcome.RETRYABLE or is_last:
                    return ForwardResult(attempt.response, attempts)
                error: Exception = UpstreamStatusError(
                    attempt.response.status_code,
                    attempt.response.reason_phrase,
                    url=url,
                    correlation_id=correlation_id,
                )
            else:
                if attempt.outcome is AttemptOutcome.TERMINAL or is_last:
                    raise ForwardingError(url, attempts, correlation_id) from attempt.error
                error = TransportFailure(attempt.error_detail or "request failed", url=url, correlation_id=correlation_id)
                error.__cause__ = attempt.error

            delay = calculate_backoff(index, policy.base_delay, policy.max_delay, rng=self._rng)
            if policy.on_retry is not None:
                policy.on_retry(error, attempt.number)
            log.warning(
                "Request failed, retrying",
                extra={
                    "attempt": attempt.number,
                    "max_attempts": policy.max_attempts,
                    "delay_ms": int(delay * 1000),
                    "error": str(error),
                },
            )
            await self._sleep(delay)

        raise ForwardingError(url, attempts, correlation_id)

    async def _attempt(
        self,
        index: int,
        method: str,
        url: str,
        body: Any,
        headers: Dict[str, str],
        timeout: float,
    ) -> Attempt:
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self.http_client.request(method, url, json=body, headers=headers),
                timeout=timeout,
            )
        except Exception as exc:  # noqa: BLE001 - classified; send() raises the terminal ones
            return Attempt(index, classify_exception(exc), time.perf_counter() - started, error=exc)
        return Attempt(index, classify_status(response.status_code), time.perf_counter() - started, response=response)


@dataclass
class WorkflowTriggerResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None


@dataclass
class StartProjectResult:
    success: bool
    execution_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ChatReply:
    message: str
    session_id: str
    execution_id: Optional[str] = None
    error: Optional[str] = None
    timed_out: bool = False


class N8nClient:
    """
    Webhook operations on the n8n workflow engine.

    The base URL may be missing (the gateway still serves storage and health
    routes without an engine); operations that need it raise
    ``ConfigurationError`` before any request is made.
    """

    def __init__(
        self,
        base_url: Optional[str],
        forwarder: ResilientClient,
        *,
        paths: Optional[Mapping[str, str]] = None,
        policies: Optional[Mapping[str, RetryPolicy]] = None,
        logger: Optional[logging.Logger | logging.LoggerAdapter] = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.forwarder = forwarder
        self.paths = {**DEFAULT_WEBHOOK_PATHS, **(paths or {})}
        self.policies = dict(policies or {})
        self._logger = as_context_logger(logger, __name__)

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def webhook_url(self, path: str) -> str:
        if not self.base_url:
            raise ConfigurationError("N8N_WEBHOOK_URL environment variable is not set")
        return f"{self.base_url}/{path.lstrip('/')}"

    def policy(self, name: str) -> RetryPolicy:
        return self.policies.get(name) or self.policies.get("default") or RetryPolicy()

    async def forward(
        self,
        operation: str,
        payload: Any,
        *,
        correlation_id: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> ForwardResult:
        url = self.webhook_url(self.paths.get(operation, operation))
        return await self.forwarder.send(
            "POST",
            url,
            json=payload,
            policy=policy or self.policy(operation),
            correlation_id=correlation_id,
        )

    async def trigger_workflow(
        self,
        name: str,
        payload: Any,
        *,
        correlation_id: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> WorkflowTriggerResult:
        log = self._logger.bind(correlation_id=correlation_id, workflow=name)
        url = self.webhook_url(self.paths.get(name, name))
        try:
            result = await self.forwarder.send(
                "POST", url, json=payload, policy=policy or self.policy(name), correlation_id=correlation_id
            )
        except ForwardingError as exc:
            log.error(f"Workflow trigger failed: {exc.detail}")
            return WorkflowTriggerResult(success=False, error=f"Failed to trigger workflow: {exc.detail}")

        if not result.ok:
            log.error(f"Workflow trigger returned {result.status_code}")
            return WorkflowTriggerResult(
                success=False,
                error=f"n8n returned {result.status_code}: {result.text}",
                status_code=result.status_code,
            )
        return WorkflowTriggerResult(success=True, data=result.payload(), status_code=result.status_code)

    async def trigger_start_project(
        self,
        payload: Mapping[str, Any],
        *,
        correlation_id: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> StartProjectResult:
        log = self._logger.bind(
            correlation_id=correlation_id,
            operation="start-project",
            project_id=payload.get("projectId"),
        )
        url = self.webhook_url(self.paths["start_project"])
        base_policy = policy or self.policy("start_project")
        caller_on_retry = base_policy.on_retry

        def on_retry(error: Exception, attempt: int) -> None:
            log.warning("Start project webhook retry", extra={"attempt": attempt, "error": str(error)})
            if caller_on_retry is not None:
                caller_on_retry(error, attempt)

        try:
            result = await self.forwarder.send(
                "POST",
                url,
                json=dict(payload),
                policy=base_policy.with_callback(on_retry),
                correlation_id=correlation_id,
            )
        except ForwardingError as exc:
            log.error(f"Start project webhook error: {exc.detail}", exc_info=exc)
            return StartProjectResult(success=False, error=f"Failed to trigger start-project workflow: {exc.detail}")

        if not result.ok:
            log.error(
                "Start project webhook failed",
                extra={"status_code": result.status_code, "body": result.text[:500]},
            )
            return StartProjectResult(success=False, error=f"n8n returned {result.status_code}: {result.text}")

        data = result.payload()
        execution_id = None
        if isinstance(data, dict):
            execution_id = data.get("executionId") or data.get("execution_id")
        log.info("Start project workflow triggered", extra={"execution_id": execution_id})
        return StartProjectResult(success=True, execution_id=str(execution_id) if execution_id else None)

    async def send_chat_message(
        self,
        message: str,
        project_id: str,
        session_id: Optional[str] = None,
        *,
        correlation_id: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> ChatReply:
        session_id = session_id or make_session_id("dashboard")
        payload = {
            "chatInput": message,
            "projectId": project_id,
            "sessionId": session_id,
            "source": "dashboard",
        }
        log = self._logger.bind(correlation_id=correlation_id, operation="chat", project_id=project_id)
        try:
            result = await self.forward("chat", payload, correlation_id=correlation_id, policy=policy)
        except ForwardingError as exc:
            log.error(f"Chat webhook error: {exc.detail}")
            return ChatReply(
                message="",
                session_id=session_id,
                error=f"Failed to reach chat workflow: {exc.detail}",
                timed_out=exc.timed_out,
            )

        if not result.ok:
            log.error(f"Chat webhook returned {result.status_code}")
            return ChatReply(
                message="",
                session_id=session_id,
                error=f"n8n returned {result.status_code}: {result.text}",
            )

        data = result.payload()
        if not isinstance(data, dict):
            data = {}
        reply = next((str(data[key]) for key in CHAT_REPLY_KEYS if data.get(key)), "")
        execution_id = data.get("executionId")
        return ChatReply(
            message=reply,
            session_id=session_id,
            execution_id=str(execution_id) if execution_id else None,
        )

    async def check_health(self) -> bool:
        if not self.base_url:
            return False
        try:
            response = await asyncio.wait_for(self.forwarder.http_client.get(self.base_url), HEALTH_CHECK_TIMEOUT)
        except (httpx.HTTPError, asyncio.TimeoutError, OSError) as exc:
            self._logger.warning(f"n8n health check failed: {exc!r}")
            return False
        return response.status_code < 500


def build_n8n_client(
    settings: Any,
    forwarder: ResilientClient,
    logger: Optional[logging.Logger | logging.LoggerAdapter] = None,
) -> N8nClient:
    """Create an ``N8nClient`` from resolved ``Settings``."""
    return N8nClient(
        settings.webhook_url,
        forwarder,
        paths=settings.webhook_paths,
        policies=settings.retry_policies,
        logger=logger,
    )
