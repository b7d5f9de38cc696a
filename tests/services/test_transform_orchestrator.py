"""
Tests for license_booth/services/transform_orchestrator.py.

The key pool and the admission queue are real instances over an in-memory
Redis; only the upstream image client is mocked.  Backoff sleeps are
replaced by an ``AsyncMock`` so retries are instant and observable.
"""

from unittest.mock import AsyncMock

import pytest

import license_booth.admission_queue
import license_booth.api_key_pool
import license_booth.exceptions
import license_booth.models
import license_booth.services.image_transformation_service
import license_booth.services.transform_orchestrator

TransformOrchestrator = license_booth.services.transform_orchestrator.TransformOrchestrator

FIRST_KEY = "k1-aaaaaaaaaaaa"
SECOND_KEY = "k2-bbbbbbbbbbbb"
THIRD_KEY = "k3-cccccccccccc"

GENERATED_IMAGE = license_booth.services.image_transformation_service.GeneratedImage(
    mime_type="image/png",
    base64_data="iVBORw0KGgo=",
)


def _responses_by_key(responses: dict):
    """Build a ``transform_portrait`` side effect that answers per API key."""

    async def transform_portrait(api_key, mime_type, base64_data):
        response = responses[api_key]
        if isinstance(response, BaseException):
            raise response
        return response

    return transform_portrait


@pytest.fixture
def photo(photo_data_url):
    return license_booth.models.parse_photo_data_url(photo_data_url)


@pytest.fixture
def mock_image_transformation_service():
    return AsyncMock(spec=license_booth.services.image_transformation_service.ImageTransformationService)


@pytest.fixture
def mock_sleep():
    return AsyncMock()


@pytest.fixture
def admission_queue(redis_client):
    return license_booth.admission_queue.AdmissionQueue(redis_client=redis_client, maximum_concurrency=1)


def _make_orchestrator(
    redis_client,
    fake_clock,
    image_transformation_service,
    admission_queue,
    sleep,
    api_keys=(FIRST_KEY, SECOND_KEY, THIRD_KEY),
    **keyword_arguments,
):
    api_key_pool = license_booth.api_key_pool.ApiKeyPool(
        api_keys=api_keys,
        redis_client=redis_client,
        clock=fake_clock,
    )
    return TransformOrchestrator(
        api_key_pool=api_key_pool,
        image_transformation_service=image_transformation_service,
        admission_queue=admission_queue,
        sleep=sleep,
        **keyword_arguments,
    )


class TestKeyRotation:
    @pytest.mark.asyncio
    async def test_rate_limited_key_rotates_to_the_next_key_without_retrying(
        self, redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep, photo
    ):
        mock_image_transformation_service.transform_portrait.side_effect = _responses_by_key(
            {
                FIRST_KEY: license_booth.exceptions.UpstreamRateLimitError(status_code=429),
                SECOND_KEY: GENERATED_IMAGE,
            }
        )
        orchestrator = _make_orchestrator(
            redis_client,
            fake_clock,
            mock_image_transformation_service,
            admission_queue,
            mock_sleep,
            api_keys=(FIRST_KEY, SECOND_KEY),
        )

        outcome = await orchestrator.transform(photo)

        assert outcome.transformed_photo_url == GENERATED_IMAGE.data_url
        assert outcome.api_key == SECOND_KEY
        assert outcome.rotations == 1
        assert outcome.attempts == 2
        assert outcome.fell_back is False
        called_keys = [call.kwargs["api_key"] for call in mock_image_transformation_service.transform_portrait.await_args_list]
        assert called_keys == [FIRST_KEY, SECOND_KEY]
        mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_key_is_quarantined(
        self, redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep, photo
    ):
        mock_image_transformation_service.transform_portrait.side_effect = _responses_by_key(
            {
                FIRST_KEY: license_booth.exceptions.UpstreamAuthenticationError(status_code=400),
                SECOND_KEY: GENERATED_IMAGE,
                THIRD_KEY: GENERATED_IMAGE,
            }
        )
        orchestrator = _make_orchestrator(
            redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep
        )

        await orchestrator.transform(photo)

        api_key_pool_statistics = await orchestrator._api_key_pool.statistics()
        assert api_key_pool_statistics.failed_keys == 1

    @pytest.mark.asyncio
    async def test_all_keys_rate_limited_falls_back_to_the_original_photo(
        self, redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep, photo
    ):
        mock_image_transformation_service.transform_portrait.side_effect = (
            license_booth.exceptions.UpstreamRateLimitError(status_code=429)
        )
        orchestrator = _make_orchestrator(
            redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep
        )

        outcome = await orchestrator.transform(photo)

        assert outcome.fell_back is True
        assert outcome.transformed_photo_url == photo.data_url
        assert outcome.message == license_booth.services.transform_orchestrator.EXHAUSTED_MESSAGE
        assert outcome.api_key is None
        assert outcome.rotations == 3
        mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rotations_are_bounded_by_the_key_count(
        self, redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep, photo
    ):
        mock_image_transformation_service.transform_portrait.side_effect = (
            license_booth.exceptions.UpstreamRateLimitError(status_code=429)
        )
        orchestrator = _make_orchestrator(
            redis_client,
            fake_clock,
            mock_image_transformation_service,
            admission_queue,
            mock_sleep,
            api_keys=(FIRST_KEY, SECOND_KEY),
            maximum_key_rotations=10,
        )

        outcome = await orchestrator.transform(photo)

        assert outcome.rotations == 2
        assert outcome.attempts == 3

    @pytest.mark.asyncio
    async def test_single_key_pool_never_rotates(
        self, redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep, photo
    ):
        mock_image_transformation_service.transform_portrait.side_effect = (
            license_booth.exceptions.UpstreamRateLimitError(status_code=429)
        )
        orchestrator = _make_orchestrator(
            redis_client,
            fake_clock,
            mock_image_transformation_service,
            admission_queue,
            mock_sleep,
            api_keys=(FIRST_KEY,),
        )

        outcome = await orchestrator.transform(photo)

        assert outcome.fell_back is True
        assert outcome.rotations == 0
        assert outcome.attempts == 1


class TestTransientRetries:
    @pytest.mark.asyncio
    async def test_transient_error_retries_the_same_key_after_the_backoff(
        self, redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep, photo
    ):
        mock_image_transformation_service.transform_portrait.side_effect = [
            license_booth.exceptions.UpstreamTransientError(status_code=503),
            GENERATED_IMAGE,
        ]
        orchestrator = _make_orchestrator(
            redis_client,
            fake_clock,
            mock_image_transformation_service,
            admission_queue,
            mock_sleep,
            retry_backoff_seconds=1.5,
        )

        outcome = await orchestrator.transform(photo)

        assert outcome.api_key == FIRST_KEY
        assert outcome.attempts == 2
        assert outcome.rotations == 0
        mock_sleep.assert_awaited_once_with(1.5)

    @pytest.mark.asyncio
    async def test_persistent_transient_errors_rotate_after_the_attempt_limit(
        self, redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep, photo
    ):
        mock_image_transformation_service.transform_portrait.side_effect = _responses_by_key(
            {
                FIRST_KEY: license_booth.exceptions.UpstreamTransientError(status_code=500),
                SECOND_KEY: GENERATED_IMAGE,
                THIRD_KEY: GENERATED_IMAGE,
            }
        )
        orchestrator = _make_orchestrator(
            redis_client,
            fake_clock,
            mock_image_transformation_service,
            admission_queue,
            mock_sleep,
            attempts_per_key=2,
        )

        outcome = await orchestrator.transform(photo)

        assert outcome.api_key == SECOND_KEY
        assert outcome.attempts == 3
        assert outcome.rotations == 1
        assert mock_sleep.await_count == 1
        assert (await orchestrator._api_key_pool.statistics()).failed_keys == 0


class TestFallbacks:
    @pytest.mark.asyncio
    async def test_success_without_an_image_returns_the_original_photo(
        self, redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep, photo
    ):
        mock_image_transformation_service.transform_portrait.return_value = None
        orchestrator = _make_orchestrator(
            redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep
        )

        outcome = await orchestrator.transform(photo)

        assert outcome.fell_back is True
        assert outcome.transformed_photo_url == photo.data_url
        assert outcome.message == license_booth.services.transform_orchestrator.NO_IMAGE_RETURNED_MESSAGE
        assert mock_image_transformation_service.transform_portrait.await_count == 1

    @pytest.mark.asyncio
    async def test_no_configured_keys_returns_the_original_photo_without_calling_upstream(
        self, redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep, photo
    ):
        orchestrator = _make_orchestrator(
            redis_client,
            fake_clock,
            mock_image_transformation_service,
            admission_queue,
            mock_sleep,
            api_keys=(),
        )

        outcome = await orchestrator.transform(photo)

        assert outcome.fell_back is True
        assert outcome.message == license_booth.services.transform_orchestrator.NO_API_KEY_MESSAGE
        mock_image_transformation_service.transform_portrait.assert_not_awaited()


class TestAdmission:
    @pytest.mark.asyncio
    async def test_queue_full_raises_before_any_upstream_call(
        self, redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep, photo
    ):
        await admission_queue.try_admit("someone-else")
        orchestrator = _make_orchestrator(
            redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep
        )

        with pytest.raises(license_booth.exceptions.QueueFullError):
            await orchestrator.transform(photo, queue_id="q_late")

        mock_image_transformation_service.transform_portrait.assert_not_awaited()
        assert await redis_client.smembers(license_booth.admission_queue.IN_FLIGHT_SET_KEY) == {"someone-else"}

    @pytest.mark.asyncio
    async def test_slot_is_released_after_success(
        self, redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep, photo
    ):
        mock_image_transformation_service.transform_portrait.return_value = GENERATED_IMAGE
        orchestrator = _make_orchestrator(
            redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep
        )
        await admission_queue.join("q_visitor")

        outcome = await orchestrator.transform(photo, queue_id="q_visitor")

        assert outcome.fell_back is False
        assert (await admission_queue.statistics()).processing == 0
        assert (await admission_queue.statistics()).queue_size == 0

    @pytest.mark.asyncio
    async def test_slot_is_released_after_fallback(
        self, redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep, photo
    ):
        mock_image_transformation_service.transform_portrait.side_effect = (
            license_booth.exceptions.UpstreamRateLimitError(status_code=429)
        )
        orchestrator = _make_orchestrator(
            redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep
        )

        await orchestrator.transform(photo, queue_id="q_visitor")

        assert (await admission_queue.statistics()).processing == 0

    @pytest.mark.asyncio
    async def test_slot_is_released_when_the_client_raises_unexpectedly(
        self, redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep, photo
    ):
        mock_image_transformation_service.transform_portrait.side_effect = RuntimeError("bug")
        orchestrator = _make_orchestrator(
            redis_client, fake_clock, mock_image_transformation_service, admission_queue, mock_sleep
        )

        with pytest.raises(RuntimeError):
            await orchestrator.transform(photo, queue_id="q_visitor")

        assert (await admission_queue.statistics()).processing == 0

    @pytest.mark.asyncio
    async def test_without_a_queue_id_the_queue_is_not_touched(
        self, redis_client, fake_clock, mock_image_transformation_service, mock_sleep, photo
    ):
        mock_image_transformation_service.transform_portrait.return_value = GENERATED_IMAGE
        mock_admission_queue = AsyncMock(spec=license_booth.admission_queue.AdmissionQueue)
        orchestrator = _make_orchestrator(
            redis_client, fake_clock, mock_image_transformation_service, mock_admission_queue, mock_sleep
        )

        await orchestrator.transform(photo)

        mock_admission_queue.admission_slot.assert_not_called()
