"""
Unit tests for the proxy service routes.
"""

import json
import pytest
import httpx
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_proxy.app.adapters.bucket_store import InMemoryBucketStore, RedisBucketStore
from service_proxy.app.main import ProxyService, build_store, create_app
from shared import __version__
from shared.config import get_config
from shared.errors import RateLimitError, StoreUnavailableError, TransportError, ValidationError


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def downstream_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={"path": request.url.path, "method": request.method},
        headers={"Cache-Control": "max-age=30", "Set-Cookie": "session=secret", "X-Backend": "node-3"},
    )


class TestProxyService:
    """Test cases for ProxyService."""

    @pytest.fixture
    def config(self):
        return get_config("proxy", 8080, store_backend="memory")

    @pytest.fixture
    def clock(self):
        return FakeClock(100.0)

    @pytest.fixture
    def store(self, clock):
        return InMemoryBucketStore(clock=clock)

    @pytest.fixture
    def service(self, config, store):
        return ProxyService(config=config, store=store, transport=httpx.MockTransport(downstream_handler))

    @pytest.fixture
    def client(self, service):
        with TestClient(service.app) as client:
            yield client

    def test_health_endpoint(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.content == ('{"status":"ok","version":"%s"}' % __version__).encode()

    def test_metrics_endpoint(self, client):
        client.post("/proxy", json={"key": "u1", "url": "http://svc.local/a"})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "rate_limit_decisions_total" in response.text
        assert "downstream_requests_total" in response.text

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["x-request-id"] == "req-123"

    def test_request_id_generated(self, client):
        response = client.get("/health")
        assert response.headers["x-request-id"]

    def test_forward_relays_status_body_and_safe_headers(self, client):
        response = client.post("/proxy", json={
            "key": "u1",
            "url": "http://svc.local/items",
            "method": "delete",
        })

        assert response.status_code == 200
        assert response.json() == {"path": "/items", "method": "DELETE"}
        assert response.headers["cache-control"] == "max-age=30"
        assert response.headers["content-type"] == "application/json"
        assert "set-cookie" not in response.headers
        assert "x-backend" not in response.headers

    def test_query_appended_to_url_query(self, config, store):
        def echo_query(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"query": [list(item) for item in request.url.params.multi_items()]})

        service = ProxyService(config=config, store=store, transport=httpx.MockTransport(echo_query))
        with TestClient(service.app) as client:
            response = client.post("/proxy", json={
                "key": "u1",
                "url": "http://svc.local/search?page=2",
                "query": {"q": "x"},
            })

        assert response.status_code == 200
        assert response.json() == {"query": [["page", "2"], ["q", "x"]]}

    def test_unencodable_header_is_downstream_error(self, client, clock):
        response = client.post("/proxy", json={
            "key": "u1",
            "url": "http://svc.local/a",
            "headers": {"X-Name": "café"},
        })

        assert response.status_code == 502
        assert response.json()["error"] == "downstream_error"

        clock.advance(0.05)
        second = client.post("/proxy", json={"key": "u1", "url": "http://svc.local/a"})
        assert second.status_code == 429

    def test_second_call_rate_limited(self, client, clock):
        first = client.post("/proxy", json={"key": "u1", "url": "http://svc.local/a"})
        clock.advance(0.05)
        second = client.post("/proxy", json={"key": "u1", "url": "http://svc.local/a"})

        assert first.status_code == 200
        assert second.status_code == 429
        assert second.content == b'{"error":"rate_limited","message":"Too many requests"}'
        assert second.headers["retry-after"] == "1"

    def test_allowed_again_after_leak(self, client, clock):
        client.post("/proxy", json={"key": "u1", "url": "http://svc.local/a"})
        clock.advance(1.0)

        response = client.post("/proxy", json={"key": "u1", "url": "http://svc.local/a"})

        assert response.status_code == 200

    def test_keys_limited_independently(self, client):
        assert client.post("/proxy", json={"key": "u1", "url": "http://svc.local/a"}).status_code == 200
        assert client.post("/proxy", json={"key": "u2", "url": "http://svc.local/a"}).status_code == 200

    def test_missing_key(self, client):
        response = client.post("/proxy", json={"url": "https://x"})

        assert response.status_code == 400
        assert response.content == b'{"error":"missing_key","message":"Request must include non-empty \'key\'"}'

    def test_missing_key_does_not_consume(self, client):
        client.post("/proxy", json={"key": "", "url": "http://svc.local/a"})
        response = client.post("/proxy", json={"key": "u1", "url": "http://svc.local/a"})

        assert response.status_code == 200

    def test_invalid_json(self, client):
        response = client.post("/proxy", content=b"{not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_missing_url(self, client):
        response = client.post("/proxy", json={"key": "u1"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_store_unavailable_returns_503(self, config):
        store = InMemoryBucketStore()
        store.check_and_consume = AsyncMock(side_effect=StoreUnavailableError("Connection refused"))
        service = ProxyService(config=config, store=store, transport=httpx.MockTransport(downstream_handler))

        with TestClient(service.app) as client:
            response = client.post("/proxy", json={"key": "u1", "url": "http://svc.local/a"})

        assert response.status_code == 503
        assert response.json() == {"error": "store_unavailable", "message": "Rate limiter unavailable"}

    @pytest.mark.parametrize("error,status_code", [
        (StoreUnavailableError("Connection refused"), 503),
        (TransportError("Connection reset"), 502),
        (RateLimitError(retry_after=1.0), 429),
        (ValidationError("Bad field"), 400),
    ])
    def test_escaped_errors_keep_their_status(self, service, error, status_code):
        @service.app.get("/fails")
        async def fails():
            raise error

        with TestClient(service.app) as client:
            response = client.get("/fails")

        assert response.status_code == status_code
        assert response.json()["code"] == error.code

    def test_create_app_exposes_service(self, config, store):
        app = create_app(config=config, store=store)
        assert isinstance(app.state.proxy_service, ProxyService)
        assert app.state.proxy_service.policy.capacity == 1.0


class TestConfiguration:
    """Test cases for configuration wiring."""

    def test_build_store_memory(self):
        assert isinstance(build_store(get_config("proxy", 8080, store_backend="memory")), InMemoryBucketStore)

    def test_build_store_redis(self):
        store = build_store(get_config("proxy", 8080, store_backend="redis", redis_url="redis://cache:6379/1"))
        assert isinstance(store, RedisBucketStore)
        assert store.redis_url == "redis://cache:6379/1"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("GRENZE_RATE_LIMIT_CAPACITY", "5")
        monkeypatch.setenv("GRENZE_RATE_LIMIT_LEAK_RATE", "2.5")
        monkeypatch.setenv("GRENZE_STORE_BACKEND", "memory")

        service = ProxyService(config=get_config("proxy", 8080))

        assert service.policy.capacity == 5.0
        assert service.policy.leak_rate == 2.5
        assert service.policy.ttl_seconds == 2
        assert isinstance(service.store, InMemoryBucketStore)

    def test_capacity_below_one_rejected(self):
        with pytest.raises(Exception):
            get_config("proxy", 8080, rate_limit_capacity=0.5)
