"""
Per-IP rate limiting for the transformation endpoints.

Uses slowapi (backed by the ``limits`` library) to throttle
``POST /api/transform`` and ``POST /api/process`` per client IP address.
The limit comes from ``LICENSE_BOOTH_RATE_LIMIT`` (default ``30/minute``).

Deferred evaluation
-------------------
slowapi's ``Limiter.limit()`` decorator is applied when the route modules
are imported, before the application factory has read the configuration.
The limit is therefore held by a ``TransformRateLimitConfiguration``
instance, a callable that slowapi invokes on every request; the factory
sets the real value with ``configure()`` during startup.

Rate limiting and the admission queue
-------------------------------------
The two are independent:

- **Rate limiting** (this module) bounds how *often* one client IP may
  call.  Exceeding it yields HTTP 429 ``rate_limit_exceeded`` with
  ``Retry-After`` = ``retry_after_rate_limit_seconds``.
- **The admission queue** bounds how many transformations run *at once*
  across all clients and instances.  A refused admission yields HTTP 429
  ``queue_full`` with ``Retry-After`` = ``retry_after_busy_seconds``.

The limiter and the decorator are module-level singletons shared by every
application built in the same process; tests call
``rate_limiter.reset()`` between cases.
"""

import fastapi
import fastapi.responses
import slowapi
import slowapi.errors
import slowapi.util
import structlog

import license_booth.error_handling

logger = structlog.get_logger()

DEFAULT_TRANSFORM_RATE_LIMIT = "30/minute"


class TransformRateLimitConfiguration:
    """
    Callable holder for the transformation rate limit string.

    Written once by ``configure()`` during startup and read by slowapi on
    every request through ``__call__``.
    """

    def __init__(self, default_rate_limit: str = DEFAULT_TRANSFORM_RATE_LIMIT) -> None:
        self._rate_limit_string: str = default_rate_limit

    def configure(self, rate_limit_string: str) -> None:
        """
        Args:
            rate_limit_string: ``"count/period"`` where period is one of
                second, minute, hour or day, for example ``"30/minute"``.
        """
        self._rate_limit_string = rate_limit_string

    def __call__(self) -> str:
        return self._rate_limit_string


transform_rate_limit_configuration = TransformRateLimitConfiguration()

rate_limiter = slowapi.Limiter(key_func=slowapi.util.get_remote_address)

transform_rate_limit = rate_limiter.limit(transform_rate_limit_configuration)


async def rate_limit_exceeded_handler(
    request: fastapi.Request,
    rate_limit_exceeded_exception: slowapi.errors.RateLimitExceeded,
) -> fastapi.responses.JSONResponse:
    """
    Return HTTP 429 ``rate_limit_exceeded`` with a ``Retry-After`` header
    taken from ``app.state.retry_after_rate_limit_seconds``.
    """
    logger.warning(
        "rate_limit_exceeded",
        path=request.url.path,
        limit=str(rate_limit_exceeded_exception.detail),
    )

    response = license_booth.error_handling.build_error_response(
        status_code=429,
        code="rate_limit_exceeded",
        message=f"Rate limit exceeded: {rate_limit_exceeded_exception.detail}",
        correlation_id=license_booth.error_handling.get_correlation_id(request),
    )
    response.headers["Retry-After"] = str(getattr(request.app.state, "retry_after_rate_limit_seconds", 60))
    return response
