"""
Route definition for the portrait transformation endpoint.

``POST /api/transform`` validates the uploaded photo and hands it to the
``TransformOrchestrator``.  When the request carries a ``queueId`` the
upstream call runs inside an admission slot; a refused admission answers
HTTP 429 (``queue_full``) with a ``Retry-After`` header and the client
keeps polling its queue status before retrying.

Every other terminal outcome, including total exhaustion of the upstream
keys, answers HTTP 200 with ``success: true``.  On fallback the
``transformedPhotoUrl`` is the original photo and ``message`` explains why.
The only hard failures are malformed input and ``queue_full``.
"""

import typing

import fastapi
import fastapi.responses
import structlog

import license_booth.dependencies
import license_booth.exceptions
import license_booth.metrics
import license_booth.models
import license_booth.rate_limiting
import license_booth.services.transform_orchestrator

logger = structlog.get_logger()

transform_router = fastapi.APIRouter(
    prefix="/api",
    tags=["Transformation"],
)


@transform_router.post(
    "/transform",
    response_model=license_booth.models.TransformResponse,
    response_model_exclude_none=True,
    summary="Transform a photo into an astronaut portrait",
    description=(
        "Transforms the uploaded photo with the generative image API. Falls "
        "back to the original photo, still with success: true, when the "
        "upstream API cannot produce an image."
    ),
    status_code=200,
    responses={
        400: {
            "description": (
                "Bad Request: the photo is missing (``photo_required``), is "
                "not a base64 image data URL (``invalid_image_format``), or "
                "the body is not valid JSON."
            ),
            "model": license_booth.models.ErrorResponse,
        },
        413: {
            "description": "Payload Too Large: the photo exceeds the payload ceiling (``payload_too_large``).",
            "model": license_booth.models.ErrorResponse,
        },
        429: {
            "description": (
                "Too Many Requests: the admission queue is at its ceiling "
                "(``queue_full``) or the per-IP rate limit was exceeded "
                "(``rate_limit_exceeded``). See ``Retry-After``."
            ),
            "model": license_booth.models.ErrorResponse,
        },
    },
)
@license_booth.rate_limiting.transform_rate_limit
async def transform_photo(
    request: fastapi.Request,
    transform_request: license_booth.models.TransformRequest,
    transform_orchestrator: typing.Annotated[
        license_booth.services.transform_orchestrator.TransformOrchestrator,
        fastapi.Depends(license_booth.dependencies.get_transform_orchestrator),
    ],
    metrics_collector: typing.Annotated[
        license_booth.metrics.MetricsCollector | None,
        fastapi.Depends(license_booth.dependencies.get_metrics_collector),
    ],
) -> fastapi.responses.JSONResponse:
    """
    Run one transformation and return the portrait or the original photo.

    The response carries ``Cache-Control: no-store``: portraits are
    personal data and must not be kept by intermediaries.
    """
    photo = license_booth.models.parse_photo_data_url(transform_request.photo_url)

    try:
        transform_outcome = await transform_orchestrator.transform(
            photo,
            queue_id=transform_request.queue_id or None,
        )
    except license_booth.exceptions.QueueFullError:
        if metrics_collector is not None:
            metrics_collector.record_transform_outcome("queue_full")
        raise

    if metrics_collector is not None:
        metrics_collector.record_transform_outcome("fell_back" if transform_outcome.fell_back else "transformed")

    transform_response = license_booth.models.TransformResponse(
        transformed_photo_url=transform_outcome.transformed_photo_url,
        message=transform_outcome.message,
    )

    return fastapi.responses.JSONResponse(
        content=transform_response.model_dump(by_alias=True, exclude_none=True),
        headers={"Cache-Control": "no-store"},
    )
