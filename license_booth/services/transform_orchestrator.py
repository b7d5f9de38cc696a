"""
Transform orchestration: one portrait transformation with key rotation.

``TransformOrchestrator.transform`` drives a single request through the
following states:

1. **Admitted**: when a queue ID is supplied, the upstream interaction runs
   inside ``AdmissionQueue.admission_slot``.  A refused admission raises
   ``QueueFullError`` before any upstream call is made.
2. **KeySelected**: a key is taken from the pool with ``next_key``.
3. **Attempting**: the upstream API is called with the current key.

   - An image in the response ends the flow successfully.
   - A success response without an image falls back to the original photo.
   - A rate-limit or authentication error quarantines the key and rotates
     immediately; the same key is never retried.
   - Any other error retries the same key after a fixed backoff until the
     per-key attempt limit is reached, then rotates.

4. **KeyRotation**: while fewer than ``min(rotation cap, key count)``
   rotations have happened and the pool offers an alternative key, the
   flow returns to Attempting with that key.
5. **Exhausted**: the original photo is returned with an informational
   message.  Exhaustion is never reported as a failure to the user.

The admission slot, if one was acquired, is released exactly once on every
path, including unexpected exceptions, by the context manager.

Worst-case latency is bounded by
``rotations × attempts_per_key × (upstream timeout + backoff)``.
"""

import asyncio
import collections.abc
import contextlib
import dataclasses

import structlog

import license_booth.admission_queue
import license_booth.api_key_pool
import license_booth.exceptions
import license_booth.models
import license_booth.services.image_transformation_service

logger = structlog.get_logger()

DEFAULT_ATTEMPTS_PER_KEY = 2
DEFAULT_RETRY_BACKOFF_SECONDS = 1.0
DEFAULT_MAXIMUM_KEY_ROTATIONS = 3

NO_IMAGE_RETURNED_MESSAGE = "Transformation completed but no image was generated. Showing the original photo."
EXHAUSTED_MESSAGE = "All transformation attempts failed. Showing the original photo."
NO_API_KEY_MESSAGE = "The transformation service is not configured. Showing the original photo."


@dataclasses.dataclass(frozen=True)
class TransformOutcome:
    """
    The terminal result of one transformation.

    Attributes:
        transformed_photo_url: The generated portrait as a data URL, or the
            original photo when the flow fell back.
        message: Informational message shown to the user on fallback.
        api_key: The key that produced the image, ``None`` on fallback.
        attempts: Total upstream calls made.
        rotations: Number of key rotations performed.
        fell_back: ``True`` when the original photo is returned.
    """

    transformed_photo_url: str
    message: str | None = None
    api_key: str | None = None
    attempts: int = 0
    rotations: int = 0
    fell_back: bool = False


class TransformOrchestrator:
    """
    Stateless coordinator between the admission queue, the key pool and the
    upstream image client.

    Args:
        api_key_pool: Source of upstream keys.
        image_transformation_service: The upstream client.
        admission_queue: The shared queue; only used when a queue ID is
            supplied.
        attempts_per_key: Same-key attempt limit on transient errors.
        retry_backoff_seconds: Fixed wait between same-key attempts.
        maximum_key_rotations: Rotation cap before the key count bound.
        sleep: Awaitable used for the backoff; injected by tests.
    """

    def __init__(
        self,
        api_key_pool: license_booth.api_key_pool.ApiKeyPool,
        image_transformation_service: license_booth.services.image_transformation_service.ImageTransformationService,
        admission_queue: license_booth.admission_queue.AdmissionQueue,
        attempts_per_key: int = DEFAULT_ATTEMPTS_PER_KEY,
        retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
        maximum_key_rotations: int = DEFAULT_MAXIMUM_KEY_ROTATIONS,
        sleep: collections.abc.Callable[[float], collections.abc.Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._api_key_pool = api_key_pool
        self._image_transformation_service = image_transformation_service
        self._admission_queue = admission_queue
        self._attempts_per_key = attempts_per_key
        self._retry_backoff_seconds = retry_backoff_seconds
        self._maximum_key_rotations = maximum_key_rotations
        self._sleep = sleep

    async def transform(
        self,
        photo: license_booth.models.PhotoPayload,
        queue_id: str | None = None,
    ) -> TransformOutcome:
        """
        Transform ``photo`` into an astronaut portrait.

        Args:
            photo: The validated upload.
            queue_id: The caller's queue ID, if it went through the queue.

        Returns:
            The outcome; fallbacks are outcomes, not errors.

        Raises:
            license_booth.exceptions.QueueFullError:
                When ``queue_id`` is given and admission is refused.
        """
        admission_context = (
            self._admission_queue.admission_slot(queue_id) if queue_id else contextlib.nullcontext()
        )

        async with admission_context:
            return await self._run_with_key_rotation(photo)

    async def _run_with_key_rotation(
        self,
        photo: license_booth.models.PhotoPayload,
    ) -> TransformOutcome:
        current_key = await self._api_key_pool.next_key()
        if current_key is None:
            return TransformOutcome(
                transformed_photo_url=photo.data_url,
                message=NO_API_KEY_MESSAGE,
                fell_back=True,
            )

        rotation_limit = min(self._maximum_key_rotations, self._api_key_pool.key_count)
        total_attempts = 0
        rotations = 0

        while True:
            attempts_on_key = 0
            while attempts_on_key < self._attempts_per_key:
                attempts_on_key += 1
                total_attempts += 1

                try:
                    generated_image = await self._image_transformation_service.transform_portrait(
                        api_key=current_key,
                        mime_type=photo.mime_type,
                        base64_data=photo.base64_data,
                    )
                except (
                    license_booth.exceptions.UpstreamRateLimitError,
                    license_booth.exceptions.UpstreamAuthenticationError,
                ) as key_error:
                    logger.warning(
                        "transform_key_rejected",
                        api_key=license_booth.api_key_pool.mask_api_key(current_key),
                        classification=type(key_error).__name__,
                        attempt=total_attempts,
                    )
                    await self._api_key_pool.mark_failed(current_key)
                    break
                except license_booth.exceptions.UpstreamImageServiceError as transient_error:
                    logger.warning(
                        "transform_attempt_failed",
                        api_key=license_booth.api_key_pool.mask_api_key(current_key),
                        attempt=total_attempts,
                        attempts_on_key=attempts_on_key,
                        error=transient_error.detail,
                    )
                    if attempts_on_key < self._attempts_per_key:
                        await self._sleep(self._retry_backoff_seconds)
                    continue

                if generated_image is None:
                    logger.info("transform_completed_without_image", attempts=total_attempts)
                    return TransformOutcome(
                        transformed_photo_url=photo.data_url,
                        message=NO_IMAGE_RETURNED_MESSAGE,
                        attempts=total_attempts,
                        rotations=rotations,
                        fell_back=True,
                    )

                logger.info(
                    "transform_succeeded",
                    api_key=license_booth.api_key_pool.mask_api_key(current_key),
                    attempts=total_attempts,
                    rotations=rotations,
                )
                return TransformOutcome(
                    transformed_photo_url=generated_image.data_url,
                    api_key=current_key,
                    attempts=total_attempts,
                    rotations=rotations,
                )

            alternative_key = None
            if rotations < rotation_limit:
                alternative_key = await self._api_key_pool.alternative_key(current_key)

            if alternative_key is None:
                break

            rotations += 1
            logger.info(
                "transform_key_rotated",
                from_api_key=license_booth.api_key_pool.mask_api_key(current_key),
                to_api_key=license_booth.api_key_pool.mask_api_key(alternative_key),
                rotation=rotations,
            )
            current_key = alternative_key

        logger.warning("transform_exhausted", attempts=total_attempts, rotations=rotations)
        return TransformOutcome(
            transformed_photo_url=photo.data_url,
            message=EXHAUSTED_MESSAGE,
            attempts=total_attempts,
            rotations=rotations,
            fell_back=True,
        )
