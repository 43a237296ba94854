from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.claims_api.rate_limit import RateLimiter, RateLimitMiddleware


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_limiter(max_requests=2, window_seconds=60):
    clock = FakeClock()
    return RateLimiter(max_requests, window_seconds, clock=clock), clock


class TestRateLimiter:
    def test_blocks_after_limit(self):
        limiter, _ = make_limiter()
        assert limiter.allow("1.1.1.1") == (True, 1)
        assert limiter.allow("1.1.1.1") == (True, 0)
        assert limiter.allow("1.1.1.1") == (False, 0)

    def test_clients_are_independent(self):
        limiter, _ = make_limiter(max_requests=1)
        assert limiter.allow("a")[0]
        assert limiter.allow("b")[0]
        assert not limiter.allow("a")[0]

    def test_window_slides(self):
        limiter, clock = make_limiter()
        limiter.allow("a")
        clock.now += 30
        limiter.allow("a")
        assert not limiter.allow("a")[0]
        clock.now += 31
        assert limiter.allow("a") == (True, 0)

    def test_disabled(self):
        limiter, _ = make_limiter(max_requests=0)
        assert not limiter.enabled
        assert all(limiter.allow("a")[0] for _ in range(10))
        assert limiter.tracked_clients() == 0

    def test_evict_idle(self):
        limiter, clock = make_limiter()
        limiter.allow("old")
        clock.now += 45
        limiter.allow("recent")
        clock.now += 20
        assert limiter.evict_idle() == 1
        assert limiter.tracked_clients() == 1

    def test_reset(self):
        limiter, _ = make_limiter(max_requests=1)
        limiter.allow("a")
        limiter.reset()
        assert limiter.tracked_clients() == 0
        assert limiter.allow("a")[0]


class TestMiddleware:
    def _client(self, limiter, trust_forwarded_for=False):
        app = FastAPI()
        app.add_middleware(RateLimitMiddleware, limiter=limiter, trust_forwarded_for=trust_forwarded_for)

        @app.get("/")
        def root():
            return {"ok": True}

        @app.get("/api/ping")
        def ping():
            return {"pong": True}

        return TestClient(app)

    def test_rejects_with_429(self):
        limiter, _ = make_limiter(max_requests=1, window_seconds=900)
        client = self._client(limiter)
        first = client.get("/api/ping")
        assert first.status_code == 200
        assert first.headers["X-RateLimit-Limit"] == "1"
        assert first.headers["X-RateLimit-Remaining"] == "0"

        second = client.get("/api/ping")
        assert second.status_code == 429
        assert second.headers["Retry-After"] == "900"

    def test_health_check_is_exempt(self):
        limiter, _ = make_limiter(max_requests=1)
        client = self._client(limiter)
        assert all(client.get("/").status_code == 200 for _ in range(3))

    def test_forwarded_for_is_the_client_key(self):
        limiter, _ = make_limiter(max_requests=1)
        client = self._client(limiter, trust_forwarded_for=True)
        assert client.get("/api/ping", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 200
        assert client.get("/api/ping", headers={"X-Forwarded-For": "10.0.0.2, 172.16.0.1"}).status_code == 200
        assert client.get("/api/ping", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 429

    def test_forwarded_for_is_ignored_by_default(self):
        limiter, _ = make_limiter(max_requests=1)
        client = self._client(limiter)
        assert client.get("/api/ping", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 200
        assert client.get("/api/ping", headers={"X-Forwarded-For": "10.0.0.2"}).status_code == 429

    def test_trust_comes_from_environment(self, monkeypatch):
        limiter, _ = make_limiter(max_requests=1)
        monkeypatch.setenv("TRUST_FORWARDED_FOR", "true")
        app = FastAPI()
        app.add_middleware(RateLimitMiddleware, limiter=limiter)

        @app.get("/api/ping")
        def ping():
            return {"pong": True}

        client = TestClient(app)
        assert client.get("/api/ping", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 200
        assert client.get("/api/ping", headers={"X-Forwarded-For": "10.0.0.2"}).status_code == 200
