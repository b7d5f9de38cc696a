"""
Tests for license_booth/services/image_transformation_service.py.

Covers:
- The request shape: endpoint path, key header, inline image and prompt.
- Extraction of the first inline image part from a candidate.
- Classification of upstream failures into rate-limit, authentication
  and transient errors.
- Network-level failures and bodies that are not JSON.
- HTTP client lifecycle (close).
"""

from unittest.mock import AsyncMock

import httpx
import pytest

import license_booth.exceptions
import license_booth.services.image_transformation_service

TRANSFORMATION_PROMPT = "Turn this person into an astronaut."
API_KEY = "AIzaSyTest-key-000000"


def _make_service(model_name: str = "gemini-2.5-flash-image"):
    return license_booth.services.image_transformation_service.ImageTransformationService(
        transformation_prompt=TRANSFORMATION_PROMPT,
        image_api_base_url="http://image-api.test",
        model_name=model_name,
    )


def _response(status_code: int, **keyword_arguments) -> httpx.Response:
    return httpx.Response(
        status_code,
        request=httpx.Request("POST", "http://image-api.test"),
        **keyword_arguments,
    )


def _image_response(mime_type: str | None = "image/png", data: str = "iVBORw0KGgo=") -> httpx.Response:
    inline_data = {"data": data}
    if mime_type is not None:
        inline_data["mimeType"] = mime_type
    return _response(
        200,
        json={
            "candidates": [
                {
                    "content": {
                        "parts": [
                            {"text": "Here is your astronaut portrait."},
                            {"inlineData": inline_data},
                        ],
                    },
                },
            ],
        },
    )


def _error_response(status_code: int, status: str = "", message: str = "", reasons=()) -> httpx.Response:
    return _response(
        status_code,
        json={
            "error": {
                "code": status_code,
                "status": status,
                "message": message,
                "details": [{"reason": reason} for reason in reasons],
            },
        },
    )


async def _transform_with_response(http_response: httpx.Response):
    service = _make_service()
    service.http_client = AsyncMock()
    service.http_client.post = AsyncMock(return_value=http_response)
    return await service.transform_portrait(api_key=API_KEY, mime_type="image/jpeg", base64_data="AAAA")


class TestTransformPortrait:
    @pytest.mark.asyncio
    async def test_returns_the_first_inline_image(self):
        generated_image = await _transform_with_response(_image_response())

        assert generated_image.mime_type == "image/png"
        assert generated_image.base64_data == "iVBORw0KGgo="
        assert generated_image.data_url == "data:image/png;base64,iVBORw0KGgo="

    @pytest.mark.asyncio
    async def test_missing_mime_type_defaults_to_png(self):
        generated_image = await _transform_with_response(_image_response(mime_type=None))

        assert generated_image.mime_type == "image/png"

    @pytest.mark.asyncio
    async def test_response_without_an_image_returns_none(self):
        http_response = _response(200, json={"candidates": [{"content": {"parts": [{"text": "Sorry."}]}}]})

        assert await _transform_with_response(http_response) is None

    @pytest.mark.asyncio
    async def test_response_without_candidates_returns_none(self):
        assert await _transform_with_response(_response(200, json={})) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response_body",
        [
            {"candidates": ["x"]},
            {"candidates": "x"},
            {"candidates": [{"content": "blocked"}]},
            {"candidates": [{"content": {"parts": ["x"]}}]},
            {"candidates": [{"content": {"parts": "x"}}]},
            {"candidates": [{"content": {"parts": [{"inlineData": "x"}]}}]},
            {"candidates": [{"content": {"parts": [{"inlineData": {"data": 42}}]}}]},
            ["x"],
        ],
    )
    async def test_malformed_success_body_returns_none(self, response_body):
        assert await _transform_with_response(_response(200, json=response_body)) is None

    @pytest.mark.asyncio
    async def test_malformed_entries_are_skipped_before_a_valid_image(self):
        http_response = _response(
            200,
            json={
                "candidates": [
                    "x",
                    {"content": {"parts": ["x", {"inlineData": {"mimeType": "image/png", "data": "iVBORw0KGgo="}}]}},
                ],
            },
        )

        generated_image = await _transform_with_response(http_response)

        assert generated_image.base64_data == "iVBORw0KGgo="

    @pytest.mark.asyncio
    async def test_sends_the_key_header_and_the_photo_with_the_prompt(self):
        service = _make_service(model_name="image-model-x")
        service.http_client = AsyncMock()
        service.http_client.post = AsyncMock(return_value=_image_response())

        await service.transform_portrait(api_key=API_KEY, mime_type="image/jpeg", base64_data="AAAA")

        call = service.http_client.post.await_args
        assert call.args[0] == "/v1beta/models/image-model-x:generateContent"
        assert call.kwargs["headers"] == {"x-goog-api-key": API_KEY}
        request_body = call.kwargs["json"]
        assert request_body["contents"][0]["parts"] == [
            {"inlineData": {"mimeType": "image/jpeg", "data": "AAAA"}},
            {"text": TRANSFORMATION_PROMPT},
        ]
        assert request_body["generationConfig"] == {"responseModalities": ["TEXT", "IMAGE"]}

    @pytest.mark.asyncio
    async def test_key_never_appears_in_the_url(self):
        service = _make_service()
        service.http_client = AsyncMock()
        service.http_client.post = AsyncMock(return_value=_image_response())

        await service.transform_portrait(api_key=API_KEY, mime_type="image/jpeg", base64_data="AAAA")

        assert API_KEY not in service.http_client.post.await_args.args[0]


class TestUpstreamErrorClassification:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "http_response",
        [
            _error_response(429, status="RESOURCE_EXHAUSTED"),
            _error_response(400, status="RESOURCE_EXHAUSTED"),
            _error_response(400, message="You exceeded your current Quota."),
        ],
    )
    async def test_rate_limit_errors(self, http_response):
        with pytest.raises(license_booth.exceptions.UpstreamRateLimitError) as raised:
            await _transform_with_response(http_response)

        assert raised.value.status_code == http_response.status_code

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "http_response",
        [
            _error_response(401, status="UNAUTHENTICATED"),
            _error_response(403, status="PERMISSION_DENIED"),
            _error_response(400, status="INVALID_ARGUMENT", reasons=("API_KEY_INVALID",)),
            _error_response(400, status="INVALID_ARGUMENT", message="API key not valid. Please pass a valid API key."),
        ],
    )
    async def test_authentication_errors(self, http_response):
        with pytest.raises(license_booth.exceptions.UpstreamAuthenticationError):
            await _transform_with_response(http_response)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "http_response",
        [
            _error_response(500, status="INTERNAL"),
            _error_response(503, status="UNAVAILABLE"),
            _error_response(400, status="INVALID_ARGUMENT", message="Image too small."),
            _response(502, text="<html>Bad Gateway</html>"),
        ],
    )
    async def test_other_errors_are_transient(self, http_response):
        with pytest.raises(license_booth.exceptions.UpstreamTransientError):
            await _transform_with_response(http_response)

    def test_detail_names_the_upstream_status(self):
        classified_error = license_booth.services.image_transformation_service.classify_upstream_http_error(
            _error_response(503, status="UNAVAILABLE"),
        )

        assert classified_error.detail == "The image generation API returned HTTP 503 (UNAVAILABLE)."


class TestNetworkFailures:
    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        service = _make_service()
        service.http_client = AsyncMock()
        service.http_client.post = AsyncMock(side_effect=httpx.ReadTimeout("Timed out"))

        with pytest.raises(license_booth.exceptions.UpstreamTransientError) as raised:
            await service.transform_portrait(api_key=API_KEY, mime_type="image/jpeg", base64_data="AAAA")

        assert "timed out" in raised.value.detail

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        service = _make_service()
        service.http_client = AsyncMock()
        service.http_client.post = AsyncMock(side_effect=httpx.ConnectError("Connection refused"))

        with pytest.raises(license_booth.exceptions.UpstreamTransientError) as raised:
            await service.transform_portrait(api_key=API_KEY, mime_type="image/jpeg", base64_data="AAAA")

        assert "ConnectError" in raised.value.detail

    @pytest.mark.asyncio
    async def test_body_that_is_not_json_is_transient(self):
        with pytest.raises(license_booth.exceptions.UpstreamTransientError):
            await _transform_with_response(_response(200, text="not json"))


class TestClose:
    @pytest.mark.asyncio
    async def test_close_closes_the_http_client(self):
        service = _make_service()
        service.http_client = AsyncMock()

        await service.close()

        service.http_client.aclose.assert_awaited_once()

    def test_model_name_is_exposed(self):
        assert _make_service(model_name="image-model-x").model_name == "image-model-x"
