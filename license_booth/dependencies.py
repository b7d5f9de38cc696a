"""
FastAPI dependency injection providers.

Each function retrieves a shared instance created by the application
lifespan from ``request.app.state``.  Route tests replace them through
``app.dependency_overrides``.
"""

import hmac

import fastapi

import configuration
import license_booth.admission_queue
import license_booth.api_key_pool
import license_booth.exceptions
import license_booth.job_store
import license_booth.metrics
import license_booth.services.transform_orchestrator


def get_application_configuration(
    request: fastapi.Request,
) -> configuration.ApplicationConfiguration:
    return request.app.state.application_configuration  # type: ignore[no-any-return]


def get_admission_queue(
    request: fastapi.Request,
) -> license_booth.admission_queue.AdmissionQueue:
    return request.app.state.admission_queue  # type: ignore[no-any-return]


def get_api_key_pool(
    request: fastapi.Request,
) -> license_booth.api_key_pool.ApiKeyPool:
    return request.app.state.api_key_pool  # type: ignore[no-any-return]


def get_transform_orchestrator(
    request: fastapi.Request,
) -> license_booth.services.transform_orchestrator.TransformOrchestrator:
    return request.app.state.transform_orchestrator  # type: ignore[no-any-return]


def get_job_store(
    request: fastapi.Request,
) -> license_booth.job_store.InMemoryJobStore:
    return request.app.state.job_store  # type: ignore[no-any-return]


def get_metrics_collector(
    request: fastapi.Request,
) -> license_booth.metrics.MetricsCollector | None:
    return getattr(request.app.state, "metrics_collector", None)


def verify_administration_token(
    request: fastapi.Request,
    x_admin_token: str | None = fastapi.Header(default=None),
) -> None:
    """
    Guard the queue maintenance endpoints.

    The ``X-Admin-Token`` header must equal the configured ``admin_token``.
    When no token is configured the endpoints are closed to everyone.

    Raises:
        license_booth.exceptions.AdministrationForbiddenError:
            On a missing, wrong or unconfigured token.
    """
    configured_admin_token = getattr(request.app.state, "admin_token", "")
    if not configured_admin_token or x_admin_token is None:
        raise license_booth.exceptions.AdministrationForbiddenError()

    if not hmac.compare_digest(x_admin_token.encode("utf-8"), configured_admin_token.encode("utf-8")):
        raise license_booth.exceptions.AdministrationForbiddenError()
