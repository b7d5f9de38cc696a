"""
FastAPI application factory.

``create_application`` builds a fully configured FastAPI instance with
service lifecycle management, error handling, rate limiting, middleware and
route registration.  A factory (rather than a module-level global) makes
the application straightforward to test and re-create.

Lifespan
--------
On startup the lifespan creates, in order:

1. the Redis client, when ``backing_store_url`` is configured;
2. the ``AdmissionQueue`` and the ``ApiKeyPool`` sharing that client (both
   run in bypass mode without it);
3. the ``ImageTransformationService`` (upstream httpx client);
4. the ``TransformOrchestrator`` and the ``InMemoryJobStore``;
5. a background task that reaps zombie in-flight entries every
   ``zombie_reaping_interval_seconds``, and another that drops old jobs
   every ``job_cleanup_interval_seconds``.  Either is skipped when its
   interval is 0.

On shutdown the background tasks are cancelled, outstanding jobs are
cancelled, and the HTTP and Redis clients are closed.
"""

import asyncio
import collections.abc
import contextlib
import copy

import fastapi
import fastapi.middleware.cors
import fastapi.openapi.utils
import redis.asyncio
import slowapi.errors
import structlog

import configuration
import license_booth.admission_queue
import license_booth.api_key_pool
import license_booth.error_handling
import license_booth.job_store
import license_booth.logging_config
import license_booth.metrics
import license_booth.middleware
import license_booth.rate_limiting
import license_booth.routes.health_routes
import license_booth.routes.job_routes
import license_booth.routes.queue_routes
import license_booth.routes.transform_routes
import license_booth.services.image_transformation_service
import license_booth.services.transform_orchestrator

logger = structlog.get_logger()


def create_redis_client(
    application_configuration: configuration.ApplicationConfiguration,
) -> redis.asyncio.Redis | None:
    """
    Create the backing store client, or return ``None`` when no URL is set.

    The client is created lazily by redis-py: no connection is attempted
    here, so an unreachable store does not prevent startup.  The queue and
    key pool degrade on the first failing call instead.
    """
    if not application_configuration.backing_store_url:
        return None

    connection_options: dict = {"decode_responses": True}
    if application_configuration.backing_store_token:
        connection_options["password"] = application_configuration.backing_store_token

    return redis.asyncio.from_url(application_configuration.backing_store_url, **connection_options)


async def run_periodic_maintenance(
    admission_queue: license_booth.admission_queue.AdmissionQueue,
    interval_seconds: float,
) -> None:
    """
    Reap zombie queue entries every ``interval_seconds``.

    Runs until cancelled.  A failing pass is logged and the loop continues.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed_zombie_count = await admission_queue.reap_zombies()
        except Exception:
            logger.exception("periodic_maintenance_failed")
            continue

        if removed_zombie_count:
            logger.info("periodic_maintenance_completed", removed_zombie_entries=removed_zombie_count)


async def run_periodic_job_cleanup(
    job_store: license_booth.job_store.InMemoryJobStore,
    interval_seconds: float,
    maximum_job_age_seconds: float,
) -> None:
    """Drop jobs older than ``maximum_job_age_seconds`` every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            job_store.cleanup_old_jobs(maximum_job_age_seconds)
        except Exception:
            logger.exception("periodic_job_cleanup_failed")


def create_application() -> fastapi.FastAPI:
    """
    Create and fully configure the FastAPI application.

    This function:
      1. Reads configuration from environment variables.
      2. Configures structured logging.
      3. Defines the lifespan that owns every shared service instance.
      4. Registers error handlers and the per-IP rate limiter.
      5. Adds CORS (when configured) and the ASGI middleware.
      6. Includes all route handlers.
    """
    application_configuration = configuration.ApplicationConfiguration()
    license_booth.logging_config.configure_logging(
        log_level=application_configuration.log_level,
    )

    metrics_collector = license_booth.metrics.MetricsCollector()

    @contextlib.asynccontextmanager
    async def application_lifespan(
        fastapi_application: fastapi.FastAPI,
    ) -> collections.abc.AsyncIterator[None]:
        redis_client = create_redis_client(application_configuration)

        admission_queue_instance = license_booth.admission_queue.AdmissionQueue(
            redis_client=redis_client,
            maximum_concurrency=application_configuration.queue_maximum_concurrency,
            queue_item_ttl_seconds=application_configuration.queue_item_ttl_seconds,
            maximum_processing_seconds=application_configuration.queue_maximum_processing_seconds,
            estimated_seconds_per_item=application_configuration.queue_estimated_seconds_per_item,
        )

        api_key_pool_instance = license_booth.api_key_pool.ApiKeyPool(
            api_keys=license_booth.api_key_pool.parse_api_keys(
                application_configuration.google_api_keys,
                application_configuration.google_api_key,
            ),
            redis_client=redis_client,
            failure_cooldown_seconds=application_configuration.api_key_failure_cooldown_seconds,
        )

        image_transformation_service_instance = (
            license_booth.services.image_transformation_service.ImageTransformationService(
                transformation_prompt=application_configuration.image_transformation_prompt,
                image_api_base_url=application_configuration.image_api_base_url,
                model_name=application_configuration.image_model_name,
                request_timeout_seconds=application_configuration.timeout_for_image_api_requests_in_seconds,
                connection_pool_size=application_configuration.image_api_connection_pool_size,
            )
        )

        transform_orchestrator_instance = license_booth.services.transform_orchestrator.TransformOrchestrator(
            api_key_pool=api_key_pool_instance,
            image_transformation_service=image_transformation_service_instance,
            admission_queue=admission_queue_instance,
            attempts_per_key=application_configuration.transform_attempts_per_key,
            retry_backoff_seconds=application_configuration.transform_retry_backoff_seconds,
            maximum_key_rotations=application_configuration.transform_maximum_key_rotations,
        )

        job_store_instance = license_booth.job_store.InMemoryJobStore(
            transform_orchestrator=transform_orchestrator_instance,
            admission_queue=admission_queue_instance,
            progress_step_seconds=application_configuration.job_progress_step_seconds,
            admission_poll_interval_seconds=application_configuration.queue_poll_interval_seconds,
            maximum_admission_wait_seconds=application_configuration.job_maximum_admission_wait_seconds,
        )

        fastapi_application.state.application_configuration = application_configuration
        fastapi_application.state.redis_client = redis_client
        fastapi_application.state.admission_queue = admission_queue_instance
        fastapi_application.state.api_key_pool = api_key_pool_instance
        fastapi_application.state.image_transformation_service = image_transformation_service_instance
        fastapi_application.state.transform_orchestrator = transform_orchestrator_instance
        fastapi_application.state.job_store = job_store_instance
        fastapi_application.state.metrics_collector = metrics_collector
        fastapi_application.state.admin_token = application_configuration.admin_token
        fastapi_application.state.retry_after_busy_seconds = application_configuration.retry_after_busy_seconds
        fastapi_application.state.retry_after_rate_limit_seconds = (
            application_configuration.retry_after_rate_limit_seconds
        )
        fastapi_application.state.retry_after_not_ready_seconds = (
            application_configuration.retry_after_not_ready_seconds
        )

        background_tasks: list[asyncio.Task] = []
        if application_configuration.zombie_reaping_interval_seconds > 0:
            background_tasks.append(
                asyncio.create_task(
                    run_periodic_maintenance(
                        admission_queue=admission_queue_instance,
                        interval_seconds=application_configuration.zombie_reaping_interval_seconds,
                    )
                )
            )
        if application_configuration.job_cleanup_interval_seconds > 0:
            background_tasks.append(
                asyncio.create_task(
                    run_periodic_job_cleanup(
                        job_store=job_store_instance,
                        interval_seconds=application_configuration.job_cleanup_interval_seconds,
                        maximum_job_age_seconds=application_configuration.job_maximum_age_seconds,
                    )
                )
            )

        if api_key_pool_instance.key_count == 0:
            logger.critical("api_keys_not_configured_at_startup")

        logger.info(
            "services_initialised",
            backing_store_enabled=redis_client is not None,
            api_key_count=api_key_pool_instance.key_count,
            queue_maximum_concurrency=application_configuration.queue_maximum_concurrency,
            image_model=application_configuration.image_model_name,
        )

        yield

        logger.info("graceful_shutdown_initiated")

        for background_task in background_tasks:
            background_task.cancel()
        for background_task in background_tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await background_task

        await job_store_instance.close()
        await image_transformation_service_instance.close()
        if redis_client is not None:
            await redis_client.aclose()

        logger.info("services_shutdown_complete")

    fastapi_application = fastapi.FastAPI(
        title="License Booth Transform Service",
        description=(
            "Backend of an event photo booth: a fair admission queue in front "
            "of a generative image API that turns visitor photos into "
            "astronaut portraits, with API key rotation and graceful fallback."
        ),
        version="1.0.0",
        lifespan=application_lifespan,
    )

    license_booth.error_handling.register_error_handlers(fastapi_application)

    license_booth.rate_limiting.transform_rate_limit_configuration.configure(
        application_configuration.rate_limit,
    )
    fastapi_application.state.limiter = license_booth.rate_limiting.rate_limiter
    fastapi_application.add_exception_handler(
        slowapi.errors.RateLimitExceeded,
        license_booth.rate_limiting.rate_limit_exceeded_handler,  # type: ignore[arg-type]
    )

    if application_configuration.cors_allowed_origins:
        fastapi_application.add_middleware(
            fastapi.middleware.cors.CORSMiddleware,
            allow_origins=application_configuration.cors_allowed_origins,
            allow_methods=["GET", "POST"],
            allow_headers=["Content-Type", "Accept", "X-Admin-Token"],
        )

    # Last registered runs outermost:
    #   Request → CorrelationId → PayloadSizeLimit → CORS → App
    fastapi_application.add_middleware(
        license_booth.middleware.RequestPayloadSizeLimitMiddleware,
        maximum_request_payload_bytes=application_configuration.maximum_request_payload_bytes,
    )
    fastapi_application.add_middleware(
        license_booth.middleware.CorrelationIdMiddleware,
        metrics_collector=metrics_collector,
    )

    fastapi_application.include_router(license_booth.routes.queue_routes.queue_router)
    fastapi_application.include_router(license_booth.routes.transform_routes.transform_router)
    fastapi_application.include_router(license_booth.routes.job_routes.job_router)
    fastapi_application.include_router(license_booth.routes.health_routes.health_router)

    _customise_openapi_schema(fastapi_application)

    return fastapi_application


def _customise_openapi_schema(fastapi_application: fastapi.FastAPI) -> None:
    """
    Replace ``fastapi_application.openapi`` with a version that documents
    the service's real error contract.

    FastAPI documents a 422 response for every route with a body, but the
    validation handler answers 400 instead; the 422 entries and their
    ``HTTPValidationError`` / ``ValidationError`` schemas are removed.
    404, 405 and 500, which any route can produce, are added everywhere.
    """

    error_response_schema_reference = {
        "content": {
            "application/json": {
                "schema": {"$ref": "#/components/schemas/ErrorResponse"},
            },
        },
    }

    global_error_responses = {
        "404": {
            **error_response_schema_reference,
            "description": "Not Found: the requested endpoint does not exist (``not_found``).",
        },
        "405": {
            **error_response_schema_reference,
            "description": (
                "Method Not Allowed (``method_not_allowed``). The ``Allow`` header lists permitted methods."
            ),
        },
        "500": {
            **error_response_schema_reference,
            "description": "Internal Server Error: an unexpected error occurred (``internal_server_error``).",
        },
    }

    def customised_openapi() -> dict:
        if fastapi_application.openapi_schema:
            return fastapi_application.openapi_schema

        openapi_schema = fastapi.openapi.utils.get_openapi(
            title=fastapi_application.title,
            version=fastapi_application.version,
            description=fastapi_application.description,
            routes=fastapi_application.routes,
        )

        component_schemas = openapi_schema.setdefault("components", {}).setdefault("schemas", {})
        component_schemas.pop("HTTPValidationError", None)
        component_schemas.pop("ValidationError", None)

        for path_item in openapi_schema.get("paths", {}).values():
            for operation in path_item.values():
                if not isinstance(operation, dict) or "responses" not in operation:
                    continue
                operation["responses"].pop("422", None)
                for status_code, response_schema in global_error_responses.items():
                    operation["responses"].setdefault(status_code, copy.deepcopy(response_schema))

        fastapi_application.openapi_schema = openapi_schema
        return openapi_schema

    fastapi_application.openapi = customised_openapi  # type: ignore[method-assign]
