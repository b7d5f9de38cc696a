"""
Route definitions for the admission queue.

Client endpoints
----------------
- ``POST /api/queue/join``: enter the waiting set, optionally re-using a
  queue ID the client already holds.
- ``GET /api/queue/status?queueId=``: poll the current standing.  Clients
  poll every ``pollIntervalSeconds`` and call ``POST /api/transform`` with
  their queue ID once the status is ``ready`` (or ``disabled``).
- ``POST /api/queue/leave``: abandon the queue.  Best-effort: waiting-entry
  expiry and zombie reaping clean up after clients that never call it.

Maintenance endpoints
---------------------
``GET /api/queue/stats``, ``POST /api/queue/cleanup`` and
``POST /api/queue/reset`` require the ``X-Admin-Token`` header and answer
HTTP 403 otherwise.
"""

import typing

import fastapi
import structlog

import configuration
import license_booth.admission_queue
import license_booth.api_key_pool
import license_booth.dependencies
import license_booth.exceptions
import license_booth.models

logger = structlog.get_logger()

queue_router = fastapi.APIRouter(
    prefix="/api/queue",
    tags=["Admission Queue"],
)

_ERROR_RESPONSES: dict[int | str, dict[str, typing.Any]] = {
    400: {
        "description": "Bad Request: the queue ID is missing (``queue_id_required``).",
        "model": license_booth.models.ErrorResponse,
    },
}

_ADMINISTRATION_ERROR_RESPONSES: dict[int | str, dict[str, typing.Any]] = {
    403: {
        "description": "Forbidden: the ``X-Admin-Token`` header is missing or wrong (``forbidden``).",
        "model": license_booth.models.ErrorResponse,
    },
}


def _build_queue_status_response(
    queue_id: str,
    queue_status: license_booth.admission_queue.QueueStatus,
    poll_interval_seconds: int,
) -> license_booth.models.QueueStatusResponse:
    return license_booth.models.QueueStatusResponse(
        queue_id=queue_id,
        position=queue_status.position,
        total_in_queue=queue_status.total_in_queue,
        estimated_wait_time=queue_status.estimated_wait_time,
        status=queue_status.status.value,
        current_processing=queue_status.current_processing,
        poll_interval_seconds=poll_interval_seconds,
    )


@queue_router.post(
    "/join",
    response_model=license_booth.models.QueueStatusResponse,
    summary="Join the admission queue",
    description=(
        "Adds the caller to the waiting set and returns its standing. A "
        "``disabled`` status means no backing store is configured and the "
        "caller may transform immediately."
    ),
)
async def join_queue(
    admission_queue: typing.Annotated[
        license_booth.admission_queue.AdmissionQueue,
        fastapi.Depends(license_booth.dependencies.get_admission_queue),
    ],
    application_configuration: typing.Annotated[
        configuration.ApplicationConfiguration,
        fastapi.Depends(license_booth.dependencies.get_application_configuration),
    ],
    queue_join_request: license_booth.models.QueueJoinRequest | None = None,
) -> license_booth.models.QueueStatusResponse:
    """Join with the supplied queue ID, or a freshly generated one."""
    queue_id = (
        queue_join_request.queue_id
        if queue_join_request is not None and queue_join_request.queue_id
        else license_booth.admission_queue.generate_queue_id()
    )

    queue_status = await admission_queue.join(queue_id)
    return _build_queue_status_response(
        queue_id,
        queue_status,
        application_configuration.queue_poll_interval_seconds,
    )


@queue_router.get(
    "/status",
    response_model=license_booth.models.QueueStatusResponse,
    summary="Poll the standing of a queue ID",
    responses=_ERROR_RESPONSES,
)
async def get_queue_status(
    admission_queue: typing.Annotated[
        license_booth.admission_queue.AdmissionQueue,
        fastapi.Depends(license_booth.dependencies.get_admission_queue),
    ],
    application_configuration: typing.Annotated[
        configuration.ApplicationConfiguration,
        fastapi.Depends(license_booth.dependencies.get_application_configuration),
    ],
    queue_id: typing.Annotated[str | None, fastapi.Query(alias="queueId")] = None,
) -> license_booth.models.QueueStatusResponse:
    """
    Report ``waiting``, ``processing``, ``ready`` or ``disabled``.

    An ID found in neither set is reported as ``ready``: it was either
    admitted and released already or its waiting entry expired.
    """
    if not queue_id:
        raise license_booth.exceptions.QueueIdentifierMissingError()

    queue_status = await admission_queue.status(queue_id)
    return _build_queue_status_response(
        queue_id,
        queue_status,
        application_configuration.queue_poll_interval_seconds,
    )


@queue_router.post(
    "/leave",
    response_model=license_booth.models.SuccessResponse,
    summary="Leave the admission queue",
    responses=_ERROR_RESPONSES,
)
async def leave_queue(
    admission_queue: typing.Annotated[
        license_booth.admission_queue.AdmissionQueue,
        fastapi.Depends(license_booth.dependencies.get_admission_queue),
    ],
    queue_leave_request: license_booth.models.QueueLeaveRequest | None = None,
) -> license_booth.models.SuccessResponse:
    if queue_leave_request is None or not queue_leave_request.queue_id:
        raise license_booth.exceptions.QueueIdentifierMissingError()

    await admission_queue.leave(queue_leave_request.queue_id)
    return license_booth.models.SuccessResponse()


@queue_router.get(
    "/stats",
    response_model=license_booth.models.QueueStatisticsResponse,
    summary="Queue and API key pool statistics",
    responses=_ADMINISTRATION_ERROR_RESPONSES,
    dependencies=[fastapi.Depends(license_booth.dependencies.verify_administration_token)],
)
async def get_queue_statistics(
    admission_queue: typing.Annotated[
        license_booth.admission_queue.AdmissionQueue,
        fastapi.Depends(license_booth.dependencies.get_admission_queue),
    ],
    api_key_pool: typing.Annotated[
        license_booth.api_key_pool.ApiKeyPool,
        fastapi.Depends(license_booth.dependencies.get_api_key_pool),
    ],
) -> license_booth.models.QueueStatisticsResponse:
    queue_statistics = await admission_queue.statistics()
    api_key_pool_statistics = await api_key_pool.statistics()

    return license_booth.models.QueueStatisticsResponse(
        queue_size=queue_statistics.queue_size,
        processing=queue_statistics.processing,
        maximum_concurrency=admission_queue.maximum_concurrency,
        total_api_keys=api_key_pool_statistics.total_keys,
        failed_api_keys=api_key_pool_statistics.failed_keys,
        api_key_counter=api_key_pool_statistics.counter,
    )


@queue_router.post(
    "/cleanup",
    response_model=license_booth.models.QueueCleanupResponse,
    summary="Remove zombie in-flight entries now",
    responses=_ADMINISTRATION_ERROR_RESPONSES,
    dependencies=[fastapi.Depends(license_booth.dependencies.verify_administration_token)],
)
async def clean_up_queue(
    admission_queue: typing.Annotated[
        license_booth.admission_queue.AdmissionQueue,
        fastapi.Depends(license_booth.dependencies.get_admission_queue),
    ],
) -> license_booth.models.QueueCleanupResponse:
    removed_count = await admission_queue.reap_zombies()
    logger.info("queue_cleanup_requested", removed=removed_count)
    return license_booth.models.QueueCleanupResponse(removed=removed_count)


@queue_router.post(
    "/reset",
    response_model=license_booth.models.SuccessResponse,
    summary="Clear the waiting and in-flight sets",
    description="Emergency recovery only: every client loses its place.",
    responses=_ADMINISTRATION_ERROR_RESPONSES,
    dependencies=[fastapi.Depends(license_booth.dependencies.verify_administration_token)],
)
async def reset_queue(
    admission_queue: typing.Annotated[
        license_booth.admission_queue.AdmissionQueue,
        fastapi.Depends(license_booth.dependencies.get_admission_queue),
    ],
) -> license_booth.models.SuccessResponse:
    await admission_queue.reset()
    return license_booth.models.SuccessResponse()
