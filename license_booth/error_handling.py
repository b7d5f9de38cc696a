"""
Centralised error-handling registration for the FastAPI application.

Every client-facing exception is mapped to an HTTP status code and to the
shared JSON error envelope ``{"error": {"code", "message", "details"?,
"correlation_id"}}``:

    - Invalid JSON                        →  400 invalid_request_json
    - Request schema validation failure   →  400 request_validation_failed
    - Missing photo                       →  400 photo_required
    - Malformed photo data URL            →  400 invalid_image_format
    - Missing queue ID                    →  400 queue_id_required
    - Maintenance call without the token  →  403 forbidden
    - Unknown job ID                      →  404 job_not_found
    - Undefined endpoint                  →  404 not_found
    - Wrong HTTP method                   →  405 method_not_allowed
    - Admission refused at the ceiling    →  429 queue_full (+ Retry-After)

The per-IP rate limit (429 rate_limit_exceeded) is handled in
``rate_limiting``, the payload ceiling (413) in ``middleware``, and
unexpected exceptions (500) in ``CorrelationIdMiddleware``.

Upstream image API errors never reach this layer: the transform
orchestrator consumes them and falls back to the original photo.
"""

import dataclasses

import fastapi
import fastapi.exceptions
import fastapi.responses
import fastapi.routing
import starlette.exceptions
import starlette.routing
import structlog

import license_booth.exceptions
import license_booth.models

logger = structlog.get_logger()


@dataclasses.dataclass(frozen=True)
class _ErrorMapping:
    status_code: int
    code: str
    log_event: str


_SERVICE_ERROR_MAPPINGS: dict[type[license_booth.exceptions.ServiceError], _ErrorMapping] = {
    license_booth.exceptions.PhotoPayloadMissingError: _ErrorMapping(400, "photo_required", "photo_payload_missing"),
    license_booth.exceptions.InvalidPhotoPayloadError: _ErrorMapping(
        400, "invalid_image_format", "photo_payload_invalid"
    ),
    license_booth.exceptions.QueueIdentifierMissingError: _ErrorMapping(
        400, "queue_id_required", "queue_id_missing"
    ),
    license_booth.exceptions.AdministrationForbiddenError: _ErrorMapping(403, "forbidden", "administration_forbidden"),
    license_booth.exceptions.JobNotFoundError: _ErrorMapping(404, "job_not_found", "job_not_found"),
    license_booth.exceptions.QueueFullError: _ErrorMapping(429, "queue_full", "transform_rejected_queue_full"),
}

_HTTP_STATUS_CODE_TO_ERROR_CODE: dict[int, str] = {
    404: "not_found",
    405: "method_not_allowed",
}

_HTTP_STATUS_CODE_TO_ERROR_MESSAGE: dict[int, str] = {
    404: "The requested endpoint does not exist.",
    405: "The HTTP method is not allowed for this endpoint.",
}

_HTTP_STATUS_CODE_TO_LOG_EVENT_NAME: dict[int, str] = {
    404: "http_not_found",
    405: "http_method_not_allowed",
}


def get_correlation_id(request: fastapi.Request) -> str:
    """Return the correlation ID set by ``CorrelationIdMiddleware``, or ``"unknown"``."""
    return getattr(request.state, "correlation_id", "unknown")


def _discover_allowed_methods_for_path(
    fastapi_application: fastapi.FastAPI,
    request_path: str,
) -> str:
    """
    Collect the methods registered for ``request_path``, for the ``Allow``
    header of 405 responses.  HEAD is added wherever GET is allowed.
    """
    allowed_methods: set[str] = set()

    for route in fastapi_application.routes:
        if (
            isinstance(route, (fastapi.routing.APIRoute, starlette.routing.Route))
            and route.path == request_path
            and route.methods
        ):
            allowed_methods.update(route.methods)

    if "GET" in allowed_methods:
        allowed_methods.add("HEAD")

    return ", ".join(sorted(allowed_methods))


def build_error_response(
    status_code: int,
    code: str,
    message: str,
    correlation_id: str,
    details: list | str | None = None,
) -> fastapi.responses.JSONResponse:
    """
    Build a JSON error response in the shared envelope.

    ``details`` is omitted from the payload entirely when ``None``.
    """
    error_detail_keyword_arguments: dict = {
        "code": code,
        "message": message,
        "correlation_id": correlation_id,
    }
    if details is not None:
        error_detail_keyword_arguments["details"] = details

    error_response = license_booth.models.ErrorResponse(
        error=license_booth.models.ErrorDetail(**error_detail_keyword_arguments),
    )

    return fastapi.responses.JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(exclude_unset=True),
    )


async def handle_service_error(
    request: fastapi.Request,
    service_error: license_booth.exceptions.ServiceError,
) -> fastapi.responses.JSONResponse:
    """
    Translate a client-facing ``ServiceError`` using ``_SERVICE_ERROR_MAPPINGS``.

    ``QueueFullError`` also carries a ``Retry-After`` header taken from
    ``app.state.retry_after_busy_seconds``.
    """
    error_mapping = _SERVICE_ERROR_MAPPINGS.get(type(service_error))
    if error_mapping is None:
        # Not client-facing: let the catch-all 500 boundary handle it.
        raise service_error

    logger.warning(
        error_mapping.log_event,
        status_code=error_mapping.status_code,
        detail=service_error.detail,
    )

    response = build_error_response(
        error_mapping.status_code,
        error_mapping.code,
        service_error.detail,
        get_correlation_id(request),
    )

    if isinstance(service_error, license_booth.exceptions.QueueFullError):
        retry_after_seconds = getattr(request.app.state, "retry_after_busy_seconds", 5)
        response.headers["Retry-After"] = str(retry_after_seconds)

    return response


def register_error_handlers(fastapi_application: fastapi.FastAPI) -> None:
    """
    Register all exception handlers on ``fastapi_application``.

    Called once by ``server_factory.create_application``.  The handler for
    unexpected exceptions lives in ``CorrelationIdMiddleware``: Starlette
    routes ``Exception`` handlers to ``ServerErrorMiddleware``, which always
    re-raises after responding.
    """

    for service_error_class in _SERVICE_ERROR_MAPPINGS:
        fastapi_application.add_exception_handler(service_error_class, handle_service_error)

    @fastapi_application.exception_handler(
        fastapi.exceptions.RequestValidationError,
    )
    async def handle_request_validation_error(
        request: fastapi.Request,
        validation_error: fastapi.exceptions.RequestValidationError,
    ) -> fastapi.responses.JSONResponse:
        """
        Return 400 for malformed JSON (``invalid_request_json``) and for
        well-formed bodies that do not match the schema
        (``request_validation_failed``).

        Only location, message and type of each failure are exposed;
        pydantic's raw error dictionaries include input values, which may
        contain a whole base64 photo.
        """
        errors = validation_error.errors()
        sanitised_validation_error_details = [
            {
                "loc": list(error.get("loc", [])),
                "msg": error.get("msg", ""),
                "type": error.get("type", ""),
            }
            for error in errors
        ]
        logger.warning("http_validation_failed", errors=sanitised_validation_error_details)

        if any(error.get("type", "").startswith("json") for error in errors):
            return build_error_response(
                status_code=400,
                code="invalid_request_json",
                message="The request body contains invalid JSON.",
                correlation_id=get_correlation_id(request),
            )

        return build_error_response(
            status_code=400,
            code="request_validation_failed",
            message="Request body failed schema validation.",
            correlation_id=get_correlation_id(request),
            details=sanitised_validation_error_details,
        )

    @fastapi_application.exception_handler(
        starlette.exceptions.HTTPException,
    )
    async def handle_starlette_http_exception(
        request: fastapi.Request,
        http_exception: starlette.exceptions.HTTPException,
    ) -> fastapi.responses.JSONResponse:
        """
        Return structured JSON for framework-raised HTTP errors such as
        undefined endpoints (404) and disallowed methods (405).  405
        responses carry an ``Allow`` header built from the route table.
        """
        error_code = _HTTP_STATUS_CODE_TO_ERROR_CODE.get(
            http_exception.status_code,
            "unexpected_error",
        )
        error_message = _HTTP_STATUS_CODE_TO_ERROR_MESSAGE.get(
            http_exception.status_code,
            str(http_exception.detail),
        )

        logger.warning(
            _HTTP_STATUS_CODE_TO_LOG_EVENT_NAME.get(http_exception.status_code, "http_framework_error"),
            status_code=http_exception.status_code,
            error_code=error_code,
        )

        response = build_error_response(
            http_exception.status_code,
            error_code,
            error_message,
            get_correlation_id(request),
        )

        if http_exception.status_code == 405:
            response.headers["Allow"] = _discover_allowed_methods_for_path(
                fastapi_application=request.app,  # type: ignore[arg-type]
                request_path=request.url.path,
            )

        return response
