"""Tests for the verify endpoint rate limiter."""

from unittest.mock import MagicMock

import pytest
import redis
from fastapi import FastAPI
from fastapi.testclient import TestClient

from inspectseal_api.middleware import rate_limit
from inspectseal_api.middleware.rate_limit import RateLimitMiddleware


class FakeRedis:
    """Minimal INCR/EXPIRE pipeline."""

    def __init__(self):
        self.counts = {}

    def pipeline(self):
        fake = self
        ops = []

        class Pipeline:
            def incr(self, key):
                ops.append(key)

            def expire(self, key, seconds):
                pass

            def execute(self):
                results = []
                for key in ops:
                    fake.counts[key] = fake.counts.get(key, 0) + 1
                    results.append(fake.counts[key])
                return results + [True]

        return Pipeline()


def _app(redis_client, limit=2) -> TestClient:
    app = FastAPI()

    @app.get("/v1/verify/{bundle_id}")
    def verify(bundle_id: str):
        return {"bundle_id": bundle_id}

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    app.add_middleware(RateLimitMiddleware, redis_client=redis_client, limit=limit)
    return TestClient(app)


@pytest.fixture(autouse=True)
def enable_rate_limit(monkeypatch):
    monkeypatch.setattr(rate_limit.settings, "rate_limit_enabled", True)


def test_limit_enforced_per_window():
    client = _app(FakeRedis(), limit=2)
    assert client.get("/v1/verify/a").status_code == 200
    response = client.get("/v1/verify/b")
    assert response.status_code == 200
    assert response.headers["X-RateLimit-Remaining"] == "0"

    response = client.get("/v1/verify/c")
    assert response.status_code == 429
    assert "Retry-After" in response.headers


def test_other_paths_not_limited():
    client = _app(FakeRedis(), limit=1)
    for _ in range(3):
        assert client.get("/health").status_code == 200


def test_fails_open_when_redis_unavailable():
    broken = MagicMock()
    broken.pipeline.return_value.execute.side_effect = redis.ConnectionError("down")
    client = _app(broken, limit=1)
    for _ in range(3):
        assert client.get("/v1/verify/a").status_code == 200


def test_disabled(monkeypatch):
    monkeypatch.setattr(rate_limit.settings, "rate_limit_enabled", False)
    client = _app(FakeRedis(), limit=1)
    for _ in range(3):
        assert client.get("/v1/verify/a").status_code == 200
