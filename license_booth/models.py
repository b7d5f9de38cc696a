"""
Photo payload parsing and the pydantic models of the HTTP API.

Field names are snake_case in Python and camelCase on the wire (for example
``queue_id`` is ``queueId``), matching the booth's browser client.  FastAPI
serialises response models by alias, and request models accept either form.

Photo payloads
--------------
Photos travel as data URLs of the form ``data:image/<subtype>;base64,<data>``.
``parse_photo_data_url`` is the single gate for them: a missing or blank
value raises ``PhotoPayloadMissingError`` and any other malformed value
raises ``InvalidPhotoPayloadError``, so both surface as HTTP 400 with their
own error codes rather than as generic schema failures.

Conditional field presence
--------------------------
``TransformResponse.message`` and the optional fields of
``JobStatusResponse`` are omitted from the JSON payload when not applicable
(``response_model_exclude_none=True`` on the route decorator).
"""

import base64
import binascii
import dataclasses
import re

import pydantic
import pydantic.alias_generators

import license_booth.exceptions

PHOTO_DATA_URL_PATTERN = re.compile(r"^data:image/(\w+);base64,(.+)$", re.DOTALL)


@dataclasses.dataclass(frozen=True)
class PhotoPayload:
    """A validated uploaded photo."""

    mime_type: str
    base64_data: str
    data_url: str


def parse_photo_data_url(photo_data_url: str | None) -> PhotoPayload:
    """
    Validate a photo data URL and split it into MIME type and payload.

    Args:
        photo_data_url: The value sent by the client.

    Returns:
        The parsed photo.

    Raises:
        license_booth.exceptions.PhotoPayloadMissingError:
            When the value is missing or blank.
        license_booth.exceptions.InvalidPhotoPayloadError:
            When the value is not an image data URL or its payload is not
            valid base64.
    """
    if photo_data_url is None or not photo_data_url.strip():
        raise license_booth.exceptions.PhotoPayloadMissingError()

    pattern_match = PHOTO_DATA_URL_PATTERN.match(photo_data_url.strip())
    if pattern_match is None:
        raise license_booth.exceptions.InvalidPhotoPayloadError()

    image_subtype, base64_data = pattern_match.groups()
    try:
        base64.b64decode(base64_data, validate=True)
    except (binascii.Error, ValueError) as decoding_error:
        raise license_booth.exceptions.InvalidPhotoPayloadError(
            "The photo payload is not valid base64.",
        ) from decoding_error

    return PhotoPayload(
        mime_type=f"image/{image_subtype}",
        base64_data=base64_data,
        data_url=photo_data_url.strip(),
    )


class CamelCaseModel(pydantic.BaseModel):
    """Base model exposing camelCase aliases while accepting field names too."""

    model_config = pydantic.ConfigDict(
        alias_generator=pydantic.alias_generators.to_camel,
        populate_by_name=True,
    )


# ──────────────────────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────────────────────


class QueueJoinRequest(CamelCaseModel):
    """
    Request body for POST /api/queue/join.

    A client that already holds a queue ID (for example after a page
    reload) sends it back to keep its identity; otherwise the service
    generates one.
    """

    queue_id: str | None = pydantic.Field(
        default=None,
        max_length=128,
        description="An existing queue ID to re-join with. Generated when omitted.",
    )


class QueueLeaveRequest(CamelCaseModel):
    """Request body for POST /api/queue/leave."""

    queue_id: str | None = pydantic.Field(
        default=None,
        description="The queue ID to remove from the queue.",
    )


class TransformRequest(CamelCaseModel):
    """Request body for POST /api/transform."""

    photo_url: str | None = pydantic.Field(
        default=None,
        description="The photo as a data URL: data:image/<type>;base64,<data>.",
    )

    queue_id: str | None = pydantic.Field(
        default=None,
        description=(
            "The queue ID obtained from POST /api/queue/join. When present, "
            "the transformation takes an admission slot and answers 429 "
            "queue_full when none is free."
        ),
    )


class ProcessRequest(CamelCaseModel):
    """
    Request body for POST /api/process, the job-based flow used when the
    client does not go through the admission queue.
    """

    photo_url: str = pydantic.Field(..., description="The photo as a data URL.")
    name: str = pydantic.Field(..., min_length=1, max_length=100)
    company: str = pydantic.Field(..., min_length=1, max_length=100)
    commitment: str = pydantic.Field(..., min_length=1, max_length=500)


# ──────────────────────────────────────────────────────────────────────────────
#  Response Models
# ──────────────────────────────────────────────────────────────────────────────


class QueueStatusResponse(CamelCaseModel):
    """
    Response body of the join and status endpoints.

    ``position`` is 1-indexed while waiting and 0 otherwise.  A ``disabled``
    status means the queue has no backing store: proceed immediately.
    """

    success: bool = True
    queue_id: str
    position: int
    total_in_queue: int
    estimated_wait_time: int = pydantic.Field(
        ...,
        description="Estimated wait in seconds; only meaningful while waiting.",
    )
    status: str = pydantic.Field(
        ...,
        description="One of: waiting, processing, ready, disabled.",
    )
    current_processing: int
    poll_interval_seconds: int = pydantic.Field(
        ...,
        description="How often the client should poll the status endpoint.",
    )


class SuccessResponse(CamelCaseModel):
    success: bool = True


class TransformResponse(CamelCaseModel):
    """
    Response body for POST /api/transform.

    ``success`` is ``true`` for every terminal outcome, including the
    fallback to the original photo; ``message`` is present only then.
    """

    success: bool = True
    transformed_photo_url: str
    message: str | None = None


class JobCreatedResponse(CamelCaseModel):
    job_id: str
    status: str


class JobStatusResponse(CamelCaseModel):
    """Response body for GET /api/status/{jobId}."""

    status: str = pydantic.Field(..., description="One of: pending, processing, completed, failed.")
    progress: int = pydantic.Field(..., ge=0, le=100)
    position: int | None = None
    transformed_photo_url: str | None = None
    error: str | None = None


class QueueStatisticsResponse(CamelCaseModel):
    """Response body for GET /api/queue/stats."""

    queue_size: int
    processing: int
    maximum_concurrency: int
    total_api_keys: int
    failed_api_keys: int
    api_key_counter: int


class QueueCleanupResponse(CamelCaseModel):
    success: bool = True
    removed: int


# ──────────────────────────────────────────────────────────────────────────────
#  Error Models
# ──────────────────────────────────────────────────────────────────────────────


class ErrorDetail(pydantic.BaseModel):
    """
    Detailed error information nested inside the error response.

    The ``details`` field can be:
    - A descriptive string (for single-cause errors such as payload_too_large)
    - An array of validation error objects (for request_validation_failed)
    - Null or omitted when no additional context is available
    """

    code: str = pydantic.Field(
        ...,
        description="A machine-readable error code in snake_case format.",
    )

    message: str = pydantic.Field(
        ...,
        description="A human-readable error description safe for display to end users.",
    )

    details: str | list | None = pydantic.Field(default=None)

    correlation_id: str = pydantic.Field(
        ...,
        description="UUID v4 correlation identifier matching the X-Correlation-ID response header.",
    )


class ErrorResponse(pydantic.BaseModel):
    """Standardised error response returned for all error conditions."""

    error: ErrorDetail
