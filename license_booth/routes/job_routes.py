"""
Route definitions for the job-based transformation flow.

- ``POST /api/process`` validates the photo and the card details, creates
  an in-memory job and answers at once with its ID.
- ``GET /api/status/{jobId}`` reports the job's status and progress, and
  the transformed photo once completed.

Jobs are held by the ``InMemoryJobStore`` of the instance that created
them; this flow does not go through the admission queue.
"""

import typing

import fastapi

import license_booth.dependencies
import license_booth.exceptions
import license_booth.job_store
import license_booth.models
import license_booth.rate_limiting

job_router = fastapi.APIRouter(
    prefix="/api",
    tags=["Jobs"],
)


@job_router.post(
    "/process",
    response_model=license_booth.models.JobCreatedResponse,
    summary="Start a transformation job",
    status_code=200,
    responses={
        400: {
            "description": (
                "Bad Request: a required field is missing "
                "(``request_validation_failed``) or the photo is not a "
                "base64 image data URL (``invalid_image_format``)."
            ),
            "model": license_booth.models.ErrorResponse,
        },
        429: {
            "description": "Too Many Requests: the per-IP rate limit was exceeded (``rate_limit_exceeded``).",
            "model": license_booth.models.ErrorResponse,
        },
    },
)
@license_booth.rate_limiting.transform_rate_limit
async def create_transformation_job(
    request: fastapi.Request,
    process_request: license_booth.models.ProcessRequest,
    job_store: typing.Annotated[
        license_booth.job_store.InMemoryJobStore,
        fastapi.Depends(license_booth.dependencies.get_job_store),
    ],
) -> license_booth.models.JobCreatedResponse:
    photo = license_booth.models.parse_photo_data_url(process_request.photo_url)

    transform_job = job_store.create_job(
        photo=photo,
        name=process_request.name,
        company=process_request.company,
        commitment=process_request.commitment,
    )

    return license_booth.models.JobCreatedResponse(
        job_id=transform_job.id,
        status=license_booth.job_store.JobStatus.PENDING.value,
    )


@job_router.get(
    "/status/{job_id}",
    response_model=license_booth.models.JobStatusResponse,
    response_model_exclude_none=True,
    summary="Poll a transformation job",
    responses={
        404: {
            "description": "Not Found: no job has this ID (``job_not_found``).",
            "model": license_booth.models.ErrorResponse,
        },
    },
)
async def get_job_status(
    job_id: str,
    job_store: typing.Annotated[
        license_booth.job_store.InMemoryJobStore,
        fastapi.Depends(license_booth.dependencies.get_job_store),
    ],
) -> license_booth.models.JobStatusResponse:
    transform_job = job_store.get_job(job_id)
    if transform_job is None:
        raise license_booth.exceptions.JobNotFoundError()

    return license_booth.models.JobStatusResponse(
        status=transform_job.status.value,
        progress=transform_job.progress,
        position=transform_job.position,
        transformed_photo_url=transform_job.transformed_photo_url,
        error=transform_job.error,
    )
