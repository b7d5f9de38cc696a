"""Shared fixtures for route integration tests."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import fastapi
import httpx
import pytest
import pytest_asyncio
import slowapi.errors

import license_booth.admission_queue
import license_booth.api_key_pool
import license_booth.error_handling
import license_booth.job_store
import license_booth.metrics
import license_booth.middleware
import license_booth.rate_limiting
import license_booth.routes.health_routes
import license_booth.routes.job_routes
import license_booth.routes.queue_routes
import license_booth.routes.transform_routes
import license_booth.services.transform_orchestrator

ADMIN_TOKEN = "secret-token"
TRANSFORMED_PHOTO_URL = "data:image/png;base64,iVBORw0KGgo="


@pytest.fixture
def admission_queue(redis_client):
    """
    Admission queue over the in-memory Redis with a ceiling of two so
    that route tests can reach ``queue_full`` with few requests.
    """
    return license_booth.admission_queue.AdmissionQueue(
        redis_client=redis_client,
        maximum_concurrency=2,
    )


@pytest.fixture
def api_key_pool(redis_client):
    return license_booth.api_key_pool.ApiKeyPool(
        api_keys=("k1-aaaaaaaaaaaa", "k2-bbbbbbbbbbbb"),
        redis_client=redis_client,
    )


@pytest.fixture
def mock_transform_orchestrator():
    orchestrator = AsyncMock(spec=license_booth.services.transform_orchestrator.TransformOrchestrator)
    orchestrator.transform.return_value = license_booth.services.transform_orchestrator.TransformOutcome(
        transformed_photo_url=TRANSFORMED_PHOTO_URL,
        api_key="k1-aaaaaaaaaaaa",
        attempts=1,
    )
    return orchestrator


@pytest.fixture
def job_store(mock_transform_orchestrator):
    return license_booth.job_store.InMemoryJobStore(
        transform_orchestrator=mock_transform_orchestrator,
        progress_step_seconds=0,
    )


@pytest.fixture
def metrics_collector():
    return license_booth.metrics.MetricsCollector()


@pytest.fixture
def test_app(
    redis_client,
    admission_queue,
    api_key_pool,
    mock_transform_orchestrator,
    job_store,
    metrics_collector,
):
    app = fastapi.FastAPI()
    license_booth.error_handling.register_error_handlers(app)

    app.add_middleware(
        license_booth.middleware.RequestPayloadSizeLimitMiddleware,
        maximum_request_payload_bytes=1_048_576,
    )
    app.add_middleware(
        license_booth.middleware.CorrelationIdMiddleware,
        metrics_collector=metrics_collector,
    )
    app.include_router(license_booth.routes.queue_routes.queue_router)
    app.include_router(license_booth.routes.transform_routes.transform_router)
    app.include_router(license_booth.routes.job_routes.job_router)
    app.include_router(license_booth.routes.health_routes.health_router)

    app.state.limiter = license_booth.rate_limiting.rate_limiter
    app.add_exception_handler(
        slowapi.errors.RateLimitExceeded,
        license_booth.rate_limiting.rate_limit_exceeded_handler,
    )

    app.state.application_configuration = SimpleNamespace(queue_poll_interval_seconds=2)
    app.state.redis_client = redis_client
    app.state.admission_queue = admission_queue
    app.state.api_key_pool = api_key_pool
    app.state.transform_orchestrator = mock_transform_orchestrator
    app.state.job_store = job_store
    app.state.metrics_collector = metrics_collector
    app.state.admin_token = ADMIN_TOKEN
    app.state.retry_after_busy_seconds = 5
    app.state.retry_after_rate_limit_seconds = 60
    app.state.retry_after_not_ready_seconds = 10

    return app


@pytest_asyncio.fixture
async def client(test_app, job_store):
    transport = httpx.ASGITransport(app=test_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    await job_store.close()


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": ADMIN_TOKEN}
