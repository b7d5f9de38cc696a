"""
Pure ASGI middleware for the License Booth service.

- **CorrelationIdMiddleware** (outermost): assigns a UUID v4 correlation ID
  to every request, exposes it in the ``X-Correlation-ID`` response header
  and the structlog context, logs request receipt and completion, feeds the
  metrics collector, and is the catch-all boundary that turns unhandled
  exceptions into a JSON HTTP 500.

- **RequestPayloadSizeLimitMiddleware**: rejects request bodies above the
  configured ceiling with HTTP 413 (``payload_too_large``).  Photos travel
  as base64 data URLs inside JSON, so this is the only guard against a
  client uploading an arbitrarily large image.

ASGI middleware runs in reverse registration order, so the factory adds
the payload limit first and the correlation ID last::

    Request → CorrelationId → PayloadSizeLimit → CORS → App

Both are pure ASGI rather than ``BaseHTTPMiddleware``: the latter wraps
unhandled exceptions in ``ExceptionGroup`` and prevents the catch-all
handler below from firing.
"""

import json
import time
import uuid

import starlette.types
import structlog
import structlog.contextvars

import license_booth.metrics

logger = structlog.get_logger()


def extract_content_length_from_headers(
    headers: list[tuple[bytes, bytes]],
) -> int | None:
    """Return the integer Content-Length, or ``None`` when absent or malformed."""
    for header_name, header_value in headers:
        if header_name.lower() == b"content-length":
            try:
                return int(header_value)
            except (ValueError, TypeError):
                return None
    return None


async def send_json_error_response(
    send: starlette.types.Send,
    status_code: int,
    code: str,
    message: str,
    correlation_id: str,
    extra_headers: list[tuple[bytes, bytes]] | None = None,
) -> int:
    """
    Send a complete JSON error response in the shared error envelope.

    Returns:
        The number of body bytes sent.
    """
    response_body = json.dumps(
        {
            "error": {
                "code": code,
                "message": message,
                "correlation_id": correlation_id,
            }
        }
    ).encode()

    await send(
        {
            "type": "http.response.start",
            "status": status_code,
            "headers": [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(response_body)).encode()),
                *(extra_headers or []),
            ],
        }
    )
    await send({"type": "http.response.body", "body": response_body})
    return len(response_body)


class CorrelationIdMiddleware:
    """
    Assign a correlation ID to every request and contain unhandled errors.

    The ID is stored in ``scope["state"]["correlation_id"]`` (readable as
    ``request.state.correlation_id``) so error handlers can include it in
    response bodies.
    """

    def __init__(
        self,
        app: starlette.types.ASGIApp,
        metrics_collector: license_booth.metrics.MetricsCollector | None = None,
    ) -> None:
        self.app = app
        self._metrics_collector = metrics_collector

    async def __call__(
        self,
        scope: starlette.types.Scope,
        receive: starlette.types.Receive,
        send: starlette.types.Send,
    ) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        correlation_id = str(uuid.uuid4())
        method = scope.get("method", "")
        path = scope.get("path", "")
        start_time = time.monotonic()
        response_status = 0
        response_started = False
        response_payload_bytes = 0

        scope.setdefault("state", {})["correlation_id"] = correlation_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

        logger.info(
            "http_request_received",
            method=method,
            path=path,
            request_payload_bytes=extract_content_length_from_headers(scope.get("headers", [])),
        )

        async def send_with_correlation_id(message: starlette.types.Message) -> None:
            nonlocal response_status, response_started, response_payload_bytes
            if message["type"] == "http.response.start":
                response_started = True
                response_status = message.get("status", 0)
                message["headers"] = [
                    *message.get("headers", []),
                    (b"x-correlation-id", correlation_id.encode()),
                ]
            elif message["type"] == "http.response.body":
                response_payload_bytes += len(message.get("body", b""))
            await send(message)

        try:
            await self.app(scope, receive, send_with_correlation_id)
        except Exception:
            logger.exception("unexpected_exception")
            if not response_started:
                response_status = 500
                response_payload_bytes = await send_json_error_response(
                    send,
                    status_code=500,
                    code="internal_server_error",
                    message="An unexpected internal error occurred.",
                    correlation_id=correlation_id,
                    extra_headers=[(b"x-correlation-id", correlation_id.encode())],
                )
        finally:
            duration_milliseconds = round((time.monotonic() - start_time) * 1000, 1)
            logger.info(
                "http_request_completed",
                method=method,
                path=path,
                status=response_status,
                duration_milliseconds=duration_milliseconds,
                response_payload_bytes=response_payload_bytes,
            )
            if self._metrics_collector is not None:
                self._metrics_collector.record_request(
                    method=method,
                    path=path,
                    status=response_status,
                    duration_milliseconds=duration_milliseconds,
                )


class _PayloadLimitExceeded(Exception):
    """Raised inside the wrapped ``receive`` once the body crosses the ceiling."""


class RequestPayloadSizeLimitMiddleware:
    """
    Reject request bodies larger than ``maximum_request_payload_bytes``.

    A declared ``Content-Length`` above the ceiling is rejected before any
    body byte is read.  Bodies without a usable Content-Length (chunked
    uploads, or clients that under-declare) are counted as they stream in,
    and the request is aborted as soon as the running total crosses the
    ceiling.
    """

    def __init__(
        self,
        app: starlette.types.ASGIApp,
        maximum_request_payload_bytes: int = 15 * 1_048_576,
    ) -> None:
        self.app = app
        self._maximum_request_payload_bytes = maximum_request_payload_bytes

    async def __call__(
        self,
        scope: starlette.types.Scope,
        receive: starlette.types.Receive,
        send: starlette.types.Send,
    ) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        declared_content_length = extract_content_length_from_headers(scope.get("headers", []))
        if declared_content_length is not None and declared_content_length > self._maximum_request_payload_bytes:
            logger.warning(
                "http_payload_too_large",
                declared_content_length=declared_content_length,
                maximum_allowed_bytes=self._maximum_request_payload_bytes,
            )
            await self._send_payload_too_large_response(scope, send)
            return

        accumulated_body_bytes = 0
        response_started = False

        async def receive_with_size_tracking() -> starlette.types.Message:
            nonlocal accumulated_body_bytes
            message = await receive()
            if message["type"] == "http.request":
                accumulated_body_bytes += len(message.get("body", b""))
                if accumulated_body_bytes > self._maximum_request_payload_bytes:
                    logger.warning(
                        "http_payload_too_large",
                        accumulated_bytes=accumulated_body_bytes,
                        maximum_allowed_bytes=self._maximum_request_payload_bytes,
                    )
                    raise _PayloadLimitExceeded()
            return message

        async def send_with_start_tracking(message: starlette.types.Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive_with_size_tracking, send_with_start_tracking)
        except _PayloadLimitExceeded:
            if not response_started:
                await self._send_payload_too_large_response(scope, send)

    async def _send_payload_too_large_response(
        self,
        scope: starlette.types.Scope,
        send: starlette.types.Send,
    ) -> None:
        await send_json_error_response(
            send,
            status_code=413,
            code="payload_too_large",
            message=(
                f"The request payload exceeds the maximum allowed size of {self._maximum_request_payload_bytes} bytes."
            ),
            correlation_id=scope.get("state", {}).get("correlation_id", "unknown"),
        )
