"""Tests for license_booth/exceptions.py — custom exception classes."""

import pytest

import license_booth.exceptions


class TestServiceErrorBase:

    def test_all_exceptions_inherit_from_service_error(self):
        for exc_cls in (
            license_booth.exceptions.PhotoPayloadMissingError,
            license_booth.exceptions.InvalidPhotoPayloadError,
            license_booth.exceptions.QueueIdentifierMissingError,
            license_booth.exceptions.AdministrationForbiddenError,
            license_booth.exceptions.JobNotFoundError,
            license_booth.exceptions.QueueFullError,
            license_booth.exceptions.UpstreamImageServiceError,
        ):
            assert issubclass(exc_cls, license_booth.exceptions.ServiceError)

    def test_custom_message(self):
        exc = license_booth.exceptions.QueueFullError(detail="Custom detail")
        assert exc.detail == "Custom detail"
        assert str(exc) == "Custom detail"


class TestClientFacingErrors:

    def test_photo_missing_default_message(self):
        exc = license_booth.exceptions.PhotoPayloadMissingError()
        assert exc.detail == "A photo is required."
        assert str(exc) == "A photo is required."

    def test_queue_full_default_message(self):
        exc = license_booth.exceptions.QueueFullError()
        assert "capacity" in exc.detail

    def test_job_not_found_default_message(self):
        exc = license_booth.exceptions.JobNotFoundError()
        assert exc.detail == "The requested job does not exist."


class TestUpstreamErrors:

    @pytest.mark.parametrize(
        "exc_cls",
        [
            license_booth.exceptions.UpstreamRateLimitError,
            license_booth.exceptions.UpstreamAuthenticationError,
            license_booth.exceptions.UpstreamTransientError,
        ],
    )
    def test_subclasses_share_the_upstream_base(self, exc_cls):
        assert issubclass(exc_cls, license_booth.exceptions.UpstreamImageServiceError)

    def test_status_code_is_kept(self):
        exc = license_booth.exceptions.UpstreamRateLimitError(status_code=429)
        assert exc.status_code == 429
        assert exc.detail == "The image generation API rate limit or quota was exceeded."

    def test_status_code_defaults_to_none(self):
        assert license_booth.exceptions.UpstreamTransientError("timed out").status_code is None
