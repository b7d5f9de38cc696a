"""
Client for the generative image API that produces the astronaut portrait.

The service calls the ``generateContent`` endpoint of the configured model
with one inline image part (the uploaded photo) and one text part (the
transformation instruction), asking for both text and image modalities.
The first candidate part carrying ``inlineData`` is the generated portrait.

Error classification
--------------------
Every failure is raised as one of three ``UpstreamImageServiceError``
subclasses so the orchestrator can decide between retrying, rotating the
key, or giving up:

- ``UpstreamRateLimitError``: HTTP 429, an upstream ``RESOURCE_EXHAUSTED``
  status, or an error message mentioning a quota.
- ``UpstreamAuthenticationError``: HTTP 401/403, an upstream
  ``UNAUTHENTICATED``/``PERMISSION_DENIED`` status, or an
  ``API_KEY_INVALID`` reason (the API reports invalid keys as HTTP 400).
- ``UpstreamTransientError``: everything else, including server errors,
  timeouts, connection failures and bodies that are not JSON.

The API key is sent in the ``x-goog-api-key`` header rather than the query
string so it never appears in httpx request logs.
"""

import httpx
import structlog

import license_booth.exceptions

logger = structlog.get_logger()

DEFAULT_IMAGE_API_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_IMAGE_MODEL_NAME = "gemini-2.5-flash-image"

_RATE_LIMIT_UPSTREAM_STATUSES = frozenset({"RESOURCE_EXHAUSTED"})
_AUTHENTICATION_UPSTREAM_STATUSES = frozenset({"UNAUTHENTICATED", "PERMISSION_DENIED"})
_AUTHENTICATION_REASONS = frozenset({"API_KEY_INVALID", "API_KEY_EXPIRED"})


class GeneratedImage:
    """
    A generated image as returned by the upstream API.

    Attributes:
        mime_type: The declared MIME type, ``image/png`` when absent.
        base64_data: The base64-encoded image bytes.
    """

    def __init__(self, mime_type: str, base64_data: str) -> None:
        self.mime_type = mime_type
        self.base64_data = base64_data

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64_data}"


def _extract_upstream_error(http_response: httpx.Response) -> tuple[str, str, set[str]]:
    """
    Pull ``(status, message, reasons)`` out of a Google-style error body.

    Returns empty values when the body is not the expected JSON shape.
    """
    try:
        error_body = http_response.json().get("error", {})
    except (ValueError, AttributeError):
        return "", "", set()

    if not isinstance(error_body, dict):
        return "", "", set()

    reasons = {
        detail.get("reason", "")
        for detail in error_body.get("details", []) or []
        if isinstance(detail, dict)
    }
    return str(error_body.get("status", "")), str(error_body.get("message", "")), reasons


def _find_inline_image(response_body: object) -> GeneratedImage | None:
    """
    Return the first ``inlineData`` part of a ``generateContent`` body.

    Entries of an unexpected shape are skipped, so a malformed body reads
    as a success without an image.
    """
    if not isinstance(response_body, dict):
        return None

    candidates = response_body.get("candidates")
    if not isinstance(candidates, list):
        return None

    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        content = candidate.get("content")
        if not isinstance(content, dict):
            continue
        content_parts = content.get("parts")
        if not isinstance(content_parts, list):
            continue
        for content_part in content_parts:
            if not isinstance(content_part, dict):
                continue
            inline_data = content_part.get("inlineData")
            if isinstance(inline_data, dict) and isinstance(inline_data.get("data"), str) and inline_data["data"]:
                return GeneratedImage(
                    mime_type=inline_data.get("mimeType") or "image/png",
                    base64_data=inline_data["data"],
                )

    return None


def classify_upstream_http_error(
    http_response: httpx.Response,
) -> license_booth.exceptions.UpstreamImageServiceError:
    """Map a non-success upstream response to the matching exception."""
    status_code = http_response.status_code
    upstream_status, upstream_message, upstream_reasons = _extract_upstream_error(http_response)
    lowered_message = upstream_message.lower()
    detail = f"The image generation API returned HTTP {status_code}" + (
        f" ({upstream_status})." if upstream_status else "."
    )

    if status_code == 429 or upstream_status in _RATE_LIMIT_UPSTREAM_STATUSES or "quota" in lowered_message:
        return license_booth.exceptions.UpstreamRateLimitError(detail=detail, status_code=status_code)

    if (
        status_code in (401, 403)
        or upstream_status in _AUTHENTICATION_UPSTREAM_STATUSES
        or upstream_reasons & _AUTHENTICATION_REASONS
        or "api key not valid" in lowered_message
    ):
        return license_booth.exceptions.UpstreamAuthenticationError(detail=detail, status_code=status_code)

    return license_booth.exceptions.UpstreamTransientError(detail=detail, status_code=status_code)


class ImageTransformationService:
    """
    Asynchronous HTTP client for the generative image API.

    One ``httpx.AsyncClient`` with a bounded connection pool is shared by
    every request; the API key is passed per call because the key pool may
    choose a different key for each attempt.  Close the client with
    ``close`` on shutdown.
    """

    def __init__(
        self,
        transformation_prompt: str,
        image_api_base_url: str = DEFAULT_IMAGE_API_BASE_URL,
        model_name: str = DEFAULT_IMAGE_MODEL_NAME,
        request_timeout_seconds: float = 90.0,
        connection_pool_size: int = 20,
    ) -> None:
        """
        Initialise the image transformation service.

        Args:
            transformation_prompt: Instruction sent alongside every photo.
            image_api_base_url: Base URL of the API; the service appends
                ``/v1beta/models/<model>:generateContent``.
            model_name: The image-capable model to call.
            request_timeout_seconds: Timeout for one upstream call.
            connection_pool_size: Maximum pooled connections.
        """
        self._transformation_prompt = transformation_prompt
        self._model_name = model_name
        self.http_client = httpx.AsyncClient(
            base_url=image_api_base_url,
            timeout=httpx.Timeout(request_timeout_seconds),
            limits=httpx.Limits(
                max_connections=connection_pool_size,
                max_keepalive_connections=connection_pool_size,
            ),
        )

    @property
    def model_name(self) -> str:
        return self._model_name

    def _build_request_body(self, mime_type: str, base64_data: str) -> dict:
        return {
            "contents": [
                {
                    "parts": [
                        {"inlineData": {"mimeType": mime_type, "data": base64_data}},
                        {"text": self._transformation_prompt},
                    ],
                },
            ],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }

    async def transform_portrait(
        self,
        api_key: str,
        mime_type: str,
        base64_data: str,
    ) -> GeneratedImage | None:
        """
        Ask the upstream model to turn the photo into an astronaut portrait.

        Args:
            api_key: The key selected by the key pool for this attempt.
            mime_type: MIME type of the uploaded photo.
            base64_data: The uploaded photo, base64-encoded.

        Returns:
            The generated image, or ``None`` when the call succeeded but the
            response carried no image part.

        Raises:
            UpstreamRateLimitError: The key is rate limited or over quota.
            UpstreamAuthenticationError: The key was rejected.
            UpstreamTransientError: Any other failure.
        """
        try:
            http_response = await self.http_client.post(
                f"/v1beta/models/{self._model_name}:generateContent",
                json=self._build_request_body(mime_type, base64_data),
                headers={"x-goog-api-key": api_key},
            )
        except httpx.TimeoutException as timeout_error:
            logger.warning("image_api_timeout", error=str(timeout_error))
            raise license_booth.exceptions.UpstreamTransientError(
                detail="The request to the image generation API timed out.",
            ) from timeout_error
        except httpx.RequestError as request_error:
            logger.warning(
                "image_api_request_failed",
                error_type=type(request_error).__name__,
                error=str(request_error),
            )
            raise license_booth.exceptions.UpstreamTransientError(
                detail=(
                    f"An unexpected communication error occurred with the "
                    f"image generation API: {type(request_error).__name__}."
                ),
            ) from request_error

        if not http_response.is_success:
            classified_error = classify_upstream_http_error(http_response)
            logger.warning(
                "image_api_http_error",
                status_code=http_response.status_code,
                classification=type(classified_error).__name__,
            )
            raise classified_error

        try:
            response_body = http_response.json()
        except ValueError as decoding_error:
            logger.warning("image_api_response_not_json")
            raise license_booth.exceptions.UpstreamTransientError(
                detail="The image generation API returned a body that is not JSON.",
            ) from decoding_error

        generated_image = _find_inline_image(response_body)
        if generated_image is None:
            logger.info("image_api_response_without_image")
        return generated_image

    async def close(self) -> None:
        """Close the underlying HTTP client and release pooled connections."""
        await self.http_client.aclose()
