"""
Rate-limited HTTP proxy service for Grenze.
"""

from typing import Optional

import httpx
from fastapi import Request

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from .adapters.bucket_store import BucketStore, InMemoryBucketStore, RedisBucketStore
from .adapters.downstream_client import DownstreamClient
from .domain.models import InvalidRequest
from .domain.orchestrator import ProxyOrchestrator, render
from .ratelimit.leaky_bucket import BucketPolicy, LeakyBucketLimiter

SERVICE_NAME = "proxy"
DEFAULT_PORT = 8080


def build_store(config: ServiceConfig) -> BucketStore:
    """Create the bucket store selected by ``store_backend``."""
    if config.store_backend == "memory":
        return InMemoryBucketStore()
    return RedisBucketStore(
        config.redis_url,
        socket_timeout=config.redis_socket_timeout,
        connect_timeout=config.redis_connect_timeout,
        max_connections=config.redis_max_connections,
        connect_attempts=config.store_connect_attempts,
        connect_base_delay=config.store_connect_base_delay,
    )


class ProxyService(BaseService):
    """Proxy service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, store: Optional[BucketStore] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(SERVICE_NAME, DEFAULT_PORT, config=config)

        self.policy = BucketPolicy(
            capacity=self.config.rate_limit_capacity,
            leak_rate=self.config.rate_limit_leak_rate
        )
        self.store = store if store is not None else build_store(self.config)
        self.limiter = LeakyBucketLimiter(self.store, self.policy, metrics=self.metrics)
        self.downstream = DownstreamClient(
            default_timeout=self.config.downstream_timeout_ms / 1000,
            max_connections=self.config.downstream_max_connections,
            user_agent=self.config.downstream_user_agent,
            metrics=self.metrics,
            transport=transport,
        )
        self.orchestrator = ProxyOrchestrator(self.limiter, self.downstream)

        self._setup_proxy_routes()

        self.app.state.proxy_service = self

    async def startup(self) -> None:
        await self.store.start()
        self.logger.info(
            "Leaky bucket configured",
            capacity=self.policy.capacity,
            leak_rate=self.policy.leak_rate,
            ttl_seconds=self.policy.ttl_seconds,
            store_backend=type(self.store).__name__
        )

    async def shutdown(self) -> None:
        await self.downstream.close()
        await self.store.close()

    def _setup_proxy_routes(self):
        """Set up proxy routes."""

        @self.app.post("/proxy")
        async def proxy(request: Request):
            """Forward the enveloped request if the caller's bucket has room."""
            try:
                payload = await request.json()
            except ValueError:
                return render(InvalidRequest("Request body must be valid JSON"))

            outcome = await self.orchestrator.handle(
                payload,
                accept=request.headers.get("accept"),
                is_disconnected=request.is_disconnected,
            )
            return render(outcome)


def create_app(config: Optional[ServiceConfig] = None, store: Optional[BucketStore] = None,
               transport: Optional[httpx.AsyncBaseTransport] = None):
    """Create FastAPI application."""
    service = ProxyService(config=config, store=store, transport=transport)
    return service.app


def main():
    """Console entry point."""
    service = ProxyService(get_config(SERVICE_NAME, DEFAULT_PORT))
    service.run()


if __name__ == "__main__":
    main()
