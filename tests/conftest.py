"""Root test configuration: shared backing store doubles and limiter reset."""

from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
import pytest_asyncio
import redis.exceptions

import license_booth.rate_limiting

PHOTO_DATA_URL = "data:image/jpeg;base64,/9j/4AAQSkZJRgABAQ=="


class FakeClock:
    """Controllable replacement for ``time.time``."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    """Reset the rate limiter state before each test to prevent cross-test contamination."""
    license_booth.rate_limiting.transform_rate_limit_configuration.configure("1000/minute")
    license_booth.rate_limiting.rate_limiter.reset()


@pytest_asyncio.fixture
async def redis_client():
    """An isolated in-memory Redis with Lua scripting support."""
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def unreachable_redis_client() -> MagicMock:
    """A client whose every command fails as if the store were down."""
    connection_error = redis.exceptions.ConnectionError("Connection refused")
    client = MagicMock()
    client.register_script.return_value = AsyncMock(side_effect=connection_error)
    client.pipeline.side_effect = connection_error
    for command_name in (
        "zremrangebyscore",
        "zrangebyscore",
        "zadd",
        "scard",
        "smembers",
        "sismember",
        "srem",
        "incr",
        "get",
        "delete",
        "ping",
    ):
        setattr(client, command_name, AsyncMock(side_effect=connection_error))
    return client


@pytest.fixture
def photo_data_url() -> str:
    return PHOTO_DATA_URL
