"""
Factory Gateway - API gateway for the AI Product Factory dashboard

This package provides a FastAPI service that sits between the dashboard and
the systems doing the work. It enables:

- Forwarding project, governance and chat requests to n8n webhooks
- Retrying transient n8n failures with exponential backoff and jitter
- Correlating every log line and outbound call with the inbound request
- Issuing presigned upload URLs for project input files
- Repairing workflow imports left half-finished by a crash

Key Components:
    - main: FastAPI application factory and route handlers
    - n8n_client: Retrying HTTP client and webhook operations
    - retry: Retry policy, backoff calculation and attempt outcomes
    - request_context: Correlation ids and request lifecycle logging
    - recovery: Startup reset of interrupted workflow imports
    - database: project_state and workflow_registry access
    - configuration: Settings loading with OmegaConf and .env files

Usage:
    Run the API server with:
        uvicorn factory_gateway.main:app --host 0.0.0.0 --port 8000

    Reset interrupted imports before starting a new container:
        factory-gateway-recover
"""

__version__ = "0.1.0"
