"""
Custom exception classes for the License Booth transform service.

Exception hierarchy
-------------------
::

    Exception (Python built-in)
    └── ServiceError (base class for all service exceptions)
        ├── PhotoPayloadMissingError        → HTTP 400 (photo_required)
        ├── InvalidPhotoPayloadError        → HTTP 400 (invalid_image_format)
        ├── QueueIdentifierMissingError     → HTTP 400 (queue_id_required)
        ├── AdministrationForbiddenError    → HTTP 403 (forbidden)
        ├── JobNotFoundError                → HTTP 404 (job_not_found)
        ├── QueueFullError                  → HTTP 429 (queue_full)
        └── UpstreamImageServiceError       (internal, never sent to clients)
            ├── UpstreamRateLimitError
            ├── UpstreamAuthenticationError
            └── UpstreamTransientError

The upstream errors are raised by ``ImageTransformationService`` and
consumed by ``TransformOrchestrator``, which turns them into key rotation,
retries or a graceful fallback.  No error handler is registered for them:
if one ever escapes the orchestrator, it is a programming error and the
catch-all 500 boundary in ``CorrelationIdMiddleware`` applies.
"""


class ServiceError(Exception):
    """
    Base exception for all service-level errors.

    Every service exception carries a ``detail`` attribute containing a
    human-readable description of the failure, safe for inclusion in the
    JSON error response body.  Subclasses define ``default_detail`` as the
    fallback message when no explicit detail is supplied.
    """

    default_detail: str = "A service error occurred."

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class PhotoPayloadMissingError(ServiceError):
    """Raised when a transform or process request carries no photo."""

    default_detail = "A photo is required."


class InvalidPhotoPayloadError(ServiceError):
    """
    Raised when the photo is not a ``data:image/<type>;base64,<data>`` URL
    or its payload is not valid base64.
    """

    default_detail = "The photo must be a base64-encoded image data URL."


class QueueIdentifierMissingError(ServiceError):
    """Raised when a queue status or leave request omits the queue ID."""

    default_detail = "A queue ID is required."


class AdministrationForbiddenError(ServiceError):
    """
    Raised when a queue maintenance endpoint is called without the
    configured admin token, or when no admin token is configured at all.
    """

    default_detail = "This maintenance operation is not permitted."


class JobNotFoundError(ServiceError):
    """Raised when a job status lookup references an unknown job ID."""

    default_detail = "The requested job does not exist."


class QueueFullError(ServiceError):
    """
    Raised when the admission queue refuses to move an entry into the
    in-flight set because the concurrency ceiling has been reached.

    The error-handling layer maps this to HTTP 429 with the code
    ``queue_full`` and a ``Retry-After`` header.  It is a flow-control
    signal: the client keeps polling its queue status and retries.
    """

    default_detail = "The transformation queue is at capacity. Please keep waiting and retry shortly."


class UpstreamImageServiceError(ServiceError):
    """Base class for failures reported by the generative image API."""

    default_detail = "The image generation API call failed."

    def __init__(self, detail: str | None = None, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.status_code = status_code


class UpstreamRateLimitError(UpstreamImageServiceError):
    """The key hit a rate limit or exhausted its quota (HTTP 429, RESOURCE_EXHAUSTED)."""

    default_detail = "The image generation API rate limit or quota was exceeded."


class UpstreamAuthenticationError(UpstreamImageServiceError):
    """The key was rejected as invalid, expired or unauthorised."""

    default_detail = "The image generation API rejected the API key."


class UpstreamTransientError(UpstreamImageServiceError):
    """Any other failure: server errors, timeouts, connectivity, bad bodies."""

    default_detail = "The image generation API call failed transiently."
