"""
Route definitions for health, readiness, and metrics endpoints.

- ``GET /health``: liveness probe; HTTP 200 whenever the process runs.

- ``GET /health/ready``: readiness probe with two checks:

  - ``backing_store``: ``ok`` when Redis answers ``PING``, ``disabled``
    when no backing store is configured (the queue runs in bypass mode,
    which is a supported configuration), ``unavailable`` when a configured
    store does not answer.
  - ``api_keys``: ``ok`` when at least one upstream key is configured,
    ``unavailable`` otherwise (every transform would fall back to the
    original photo).

  Any ``unavailable`` check yields HTTP 503 with a ``Retry-After`` header.

- ``GET /metrics``: request counts, latencies and transform outcomes.

All three carry ``Cache-Control: no-store, no-cache`` and
``Pragma: no-cache``; their values change on every poll.
"""

import typing

import fastapi
import fastapi.responses
import redis.exceptions
import structlog

logger = structlog.get_logger()

health_router = fastapi.APIRouter(tags=["Health"])

_INFRASTRUCTURE_CACHE_SUPPRESSION_HEADERS: dict[str, str] = {
    "Cache-Control": "no-store, no-cache",
    "Pragma": "no-cache",
}


@health_router.get(
    "/health",
    summary="Liveness check",
    description="Returns a simple healthy status when the service is running.",
    status_code=200,
)
async def health_check() -> fastapi.responses.JSONResponse:
    """Return ``{"status": "healthy"}``; backends are not checked here."""
    return fastapi.responses.JSONResponse(
        content={"status": "healthy"},
        headers=_INFRASTRUCTURE_CACHE_SUPPRESSION_HEADERS,
    )


async def _check_backing_store(request: fastapi.Request) -> str:
    redis_client = getattr(request.app.state, "redis_client", None)
    if redis_client is None:
        return "disabled"

    try:
        await redis_client.ping()
    except (redis.exceptions.RedisError, OSError) as store_error:
        logger.warning("readiness_backing_store_unavailable", error=str(store_error))
        return "unavailable"
    return "ok"


def _check_api_keys(request: fastapi.Request) -> str:
    api_key_pool = getattr(request.app.state, "api_key_pool", None)
    if api_key_pool is None or api_key_pool.key_count == 0:
        return "unavailable"
    return "ok"


@health_router.get(
    "/health/ready",
    summary="Readiness check",
    description=(
        "Checks the backing store and the upstream credentials. Returns "
        "HTTP 503 with a Retry-After header when a configured backing store "
        "is unreachable or no API key is configured."
    ),
    status_code=200,
    responses={
        503: {
            "description": "Service Unavailable: at least one check reports ``unavailable``.",
            "headers": {
                "Retry-After": {
                    "description": "Seconds to wait before retrying the readiness check.",
                    "schema": {"type": "integer"},
                },
            },
        },
    },
)
async def readiness_check(request: fastapi.Request) -> fastapi.responses.JSONResponse:
    """
    Aggregate the backing store and API key checks.

    ``disabled`` counts as ready: a booth without Redis still serves
    transformations, only without queueing.
    """
    checks: dict[str, str] = {
        "backing_store": await _check_backing_store(request),
        "api_keys": _check_api_keys(request),
    }

    is_ready = all(check_status != "unavailable" for check_status in checks.values())
    response_headers: dict[str, str] = dict(_INFRASTRUCTURE_CACHE_SUPPRESSION_HEADERS)

    if not is_ready:
        response_headers["Retry-After"] = str(getattr(request.app.state, "retry_after_not_ready_seconds", 10))

    return fastapi.responses.JSONResponse(
        content={
            "status": "ready" if is_ready else "not_ready",
            "checks": checks,
        },
        status_code=200 if is_ready else 503,
        headers=response_headers,
    )


@health_router.get(
    "/metrics",
    summary="Request metrics",
    description="Returns request counts, latencies and transform outcomes in JSON format.",
    status_code=200,
)
async def get_metrics(request: fastapi.Request) -> fastapi.responses.JSONResponse:
    """
    Return a point-in-time metrics snapshot, or empty counters when no
    collector is installed on the application.
    """
    metrics_collector = getattr(request.app.state, "metrics_collector", None)
    if metrics_collector is None:
        content: dict[str, typing.Any] = {
            "request_counts": {},
            "request_latencies": {},
            "transform_outcomes": {},
        }
    else:
        content = metrics_collector.snapshot()

    return fastapi.responses.JSONResponse(
        content=content,
        headers=_INFRASTRUCTURE_CACHE_SUPPRESSION_HEADERS,
    )
