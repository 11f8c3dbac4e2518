"""
Proxy orchestrator: validate, rate check, forward, render.

Every request ends in exactly one ProxyOutcome; ``render`` is the only place
that turns an outcome into HTTP. Nothing here retries.
"""

import asyncio
import math
from typing import Any, Awaitable, Callable, Optional

from fastapi.responses import JSONResponse, Response

from shared.errors import RateLimitError, StoreUnavailableError, TransportError, ValidationError
from shared.logging import get_logger, set_rate_limit_key
from ..adapters.downstream_client import DownstreamClient, DownstreamResponse
from ..ratelimit.leaky_bucket import LeakyBucketLimiter
from .models import (
    MISSING_KEY,
    MISSING_KEY_MESSAGE,
    ClientClosed,
    DownstreamError,
    Forwarded,
    InvalidRequest,
    MissingKey,
    ProxyEnvelope,
    ProxyOutcome,
    RateLimited,
    StoreFailure,
    parse_envelope,
)

# Not a registered status; the caller is gone and never sees it
CLIENT_CLOSED_REQUEST = 499


class ProxyOrchestrator:
    """Runs one proxy request through its terminal-on-first-branch pipeline."""

    def __init__(self, limiter: LeakyBucketLimiter, downstream: DownstreamClient,
                 disconnect_poll_interval: float = 0.25):
        self.limiter = limiter
        self.downstream = downstream
        self.disconnect_poll_interval = disconnect_poll_interval
        self.logger = get_logger("proxy.orchestrator")

    async def handle(self, payload: Any, accept: Optional[str] = None,
                     is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None) -> ProxyOutcome:
        """Process a decoded ``POST /proxy`` body.

        Args:
            payload: Decoded JSON body.
            accept: Inbound Accept header, relayed when the envelope sets none.
            is_disconnected: Polled while forwarding; the downstream call is
                cancelled once it returns True.
        """
        try:
            envelope = parse_envelope(payload)
        except ValidationError as e:
            if e.code == MISSING_KEY:
                return MissingKey()
            return InvalidRequest(e.message)

        set_rate_limit_key(envelope.key)

        try:
            await self.limiter.enforce(envelope.key)
        except RateLimitError as e:
            return RateLimited(retry_after=e.retry_after)
        except StoreUnavailableError as e:
            return StoreFailure(e.message)

        try:
            response = await self._forward(envelope, accept, is_disconnected)
        except TransportError as e:
            return DownstreamError(e.message)

        if response is None:
            return ClientClosed()

        return Forwarded(
            status_code=response.status_code,
            headers=response.headers,
            content=response.content
        )

    async def _forward(self, envelope: ProxyEnvelope, accept: Optional[str],
                       is_disconnected: Optional[Callable[[], Awaitable[bool]]]) -> Optional[DownstreamResponse]:
        call = self.downstream.forward(
            envelope.method,
            envelope.url,
            headers=envelope.headers,
            query=envelope.query,
            body=envelope.body,
            timeout=envelope.timeout,
            accept=accept,
        )
        if is_disconnected is None:
            return await call

        task = asyncio.ensure_future(call)
        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=self.disconnect_poll_interval)
                if done:
                    return task.result()
                if await is_disconnected():
                    self.logger.info("Client disconnected, cancelling downstream request", url=envelope.url)
                    task.cancel()
                    await asyncio.wait({task})
                    return None
        finally:
            if not task.done():
                task.cancel()


def _error(status_code: int, error: str, message: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message}, headers=headers)


def render(outcome: ProxyOutcome) -> Response:
    """Map an outcome to the HTTP response contract of ``POST /proxy``."""
    if isinstance(outcome, Forwarded):
        headers = dict(outcome.headers)
        body_length = str(len(outcome.content))
        if headers.get("content-length", body_length) != body_length:
            # A bodiless downstream reply (HEAD) cannot frame the body sent here
            del headers["content-length"]
        return Response(content=outcome.content, status_code=outcome.status_code, headers=headers)
    if isinstance(outcome, MissingKey):
        return _error(400, MISSING_KEY, MISSING_KEY_MESSAGE)
    if isinstance(outcome, InvalidRequest):
        return _error(400, "invalid_request", outcome.detail)
    if isinstance(outcome, RateLimited):
        retry_after = max(1, math.ceil(outcome.retry_after))
        return _error(429, "rate_limited", "Too many requests", headers={"Retry-After": str(retry_after)})
    if isinstance(outcome, StoreFailure):
        return _error(503, "store_unavailable", "Rate limiter unavailable")
    if isinstance(outcome, DownstreamError):
        return _error(502, "downstream_error", outcome.detail)
    if isinstance(outcome, ClientClosed):
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    raise TypeError(f"Unhandled proxy outcome: {outcome!r}")
