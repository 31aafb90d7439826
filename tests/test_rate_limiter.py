import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from dragonchat.middleware.rate_limiter import (
    RATE_LIMIT_MESSAGE,
    InMemoryRateLimiter,
    RateLimitMiddleware,
)
from dragonchat.settings import Settings
from tests.utils import InMemoryRedis


def _make_app(**kwargs) -> FastAPI:
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, max_requests=2, window_seconds=900, **kwargs)

    @app.get("/api/ping")
    async def ping():
        return {"ok": True}

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.get("/outside")
    async def outside():
        return {"ok": True}

    return app


@pytest.mark.parametrize("redis_client", [None, InMemoryRedis()], ids=["memory", "redis"])
def test_third_request_in_window_is_rejected(redis_client):
    client = TestClient(_make_app(redis_client=redis_client))

    first = client.get("/api/ping")
    second = client.get("/api/ping")
    third = client.get("/api/ping")

    assert first.status_code == 200
    assert first.headers["X-RateLimit-Limit"] == "2"
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert second.status_code == 200
    assert third.status_code == 429
    assert third.json() == {"error": RATE_LIMIT_MESSAGE}
    assert "Retry-After" in third.headers


def test_health_and_non_api_paths_are_not_limited():
    client = TestClient(_make_app())

    for _ in range(5):
        assert client.get("/api/health").status_code == 200
        assert client.get("/outside").status_code == 200


def test_clients_are_limited_separately():
    client = TestClient(_make_app())

    for _ in range(2):
        client.get("/api/ping", headers={"X-Forwarded-For": "10.0.0.1"})

    assert client.get("/api/ping", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 429
    assert client.get("/api/ping", headers={"X-Forwarded-For": "10.0.0.2"}).status_code == 200


def test_redis_outage_falls_back_to_memory():
    class BrokenRedis(InMemoryRedis):
        def pipeline(self):
            raise RedisConnectionError("redis down")

    client = TestClient(_make_app(redis_client=BrokenRedis()))

    assert client.get("/api/ping").status_code == 200
    assert client.get("/api/ping").status_code == 200
    assert client.get("/api/ping").status_code == 429


@pytest.mark.asyncio
async def test_in_memory_window_counts_remaining():
    limiter = InMemoryRateLimiter()

    results = [await limiter.is_rate_limited("k", 3, 60) for _ in range(4)]

    assert [r[0] for r in results] == [False, False, False, True]
    assert [r[1] for r in results] == [2, 1, 0, 0]


def test_production_defaults_to_stricter_limit():
    assert Settings(APP_ENV="production").rate_limit_max_requests == 100
    assert Settings(APP_ENV="development").rate_limit_max_requests == 1000
    assert Settings(APP_ENV="production", RATE_LIMIT_MAX_REQUESTS=5).rate_limit_max_requests == 5
