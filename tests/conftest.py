"""
Pytest configuration and fixtures for Factory Gateway tests.
"""

import os
from dataclasses import replace

import httpx
import pytest
from fastapi.testclient import TestClient

# The module-level app is built on import; keep it away from real services
os.environ["STARTUP_RECOVERY"] = "false"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("N8N_WEBHOOK_URL", None)

from factory_gateway.configuration import Settings, StorageSettings
from factory_gateway.database import ProjectStore
from factory_gateway.main import create_app
from factory_gateway.retry import RetryPolicy

API_KEY = "test-api-key-12345"
WEBHOOK_BASE = "http://n8n.test/webhook"


class FakeWebhook:
    """
    Scripted stand-in for n8n, served through ``httpx.MockTransport``.

    Outcomes queued with ``respond``/``fail`` are used in order; once the
    queue is empty every request gets ``200 {"ok": true}``.
    """

    def __init__(self):
        self.requests = []
        self._outcomes = []

    def respond(self, status_code=200, json=None, text=None, times=1):
        for _ in range(times):
            self._outcomes.append(("response", status_code, json, text))
        return self

    def fail(self, error_cls=httpx.ConnectError, message="Connection refused", times=1):
        for _ in range(times):
            self._outcomes.append(("error", error_cls, message, None))
        return self

    def __call__(self, request):
        self.requests.append(request)
        if self._outcomes:
            kind, first, second, third = self._outcomes.pop(0)
        else:
            kind, first, second, third = "response", 200, {"ok": True}, None

        if kind == "error":
            raise first(second, request=request)
        if third is not None:
            return httpx.Response(first, text=third)
        if second is not None:
            return httpx.Response(first, json=second)
        return httpx.Response(first)

    @property
    def urls(self):
        return [str(request.url) for request in self.requests]


class FixedRandom:
    """Replaces ``random`` so backoff jitter is predictable."""

    def __init__(self, value=0.0):
        self.value = value

    def uniform(self, low, high):
        return self.value


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def webhook():
    return FakeWebhook()


@pytest.fixture
def mock_http_client(webhook):
    return httpx.AsyncClient(transport=httpx.MockTransport(webhook))


@pytest.fixture
def no_jitter():
    return FixedRandom(0.0)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def fast_policy():
    """Two retries with no backoff, so route tests run instantly."""
    return RetryPolicy(max_retries=2, base_delay=0.0, max_delay=0.0, timeout=5.0)


@pytest.fixture
def settings(fast_policy):
    return Settings(
        webhook_url=WEBHOOK_BASE,
        webhook_paths={
            "chat": "ai-product-factory-chat",
            "governance": "governance-batch",
            "start_project": "webhook/start-project",
        },
        retry_policies={
            "default": fast_policy,
            "chat": fast_policy,
            "governance": fast_policy,
            "start_project": fast_policy,
        },
        storage=StorageSettings(
            endpoint="http://s3.test:8333",
            access_key="test-access-key",
            secret_key="test-secret-key",
            bucket="product-factory",
        ),
        api_key=API_KEY,
        startup_recovery=False,
    )


@pytest.fixture
def store(tmp_path):
    """A ProjectStore on a fresh SQLite file with the schema created."""
    project_store = ProjectStore.from_url(f"sqlite:///{tmp_path / 'gateway.db'}")
    project_store.init_schema()
    yield project_store
    project_store.dispose()


@pytest.fixture
def make_client(settings, store, mock_http_client):
    """Factory for test clients; keyword arguments replace Settings fields."""
    clients = []

    def _make(project_store=None, **overrides):
        app = create_app(
            replace(settings, **overrides),
            http_client=mock_http_client,
            store=project_store if project_store is not None else store,
        )
        test_client = TestClient(app)
        test_client.__enter__()
        clients.append(test_client)
        return test_client

    yield _make

    for test_client in clients:
        test_client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    """Create a test client for the gateway app."""
    return make_client()


@pytest.fixture
def auth_headers():
    return {"X-API-Key": API_KEY}
