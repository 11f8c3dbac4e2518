"""
Downstream HTTP client for the proxy.
"""

import asyncio
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import httpx

from shared.errors import TransportError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

# Response headers relayed to the proxy caller; everything else is dropped
FORWARDED_RESPONSE_HEADERS = ("content-type", "content-length", "cache-control")

_METHOD_TOKEN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")

_NO_BODY = object()


@dataclass
class DownstreamResponse:
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    content: bytes = b""


def normalize_method(method: Optional[str]) -> str:
    """Upper-case ``method``; fall back to POST when it is not an HTTP token."""
    candidate = (method or "GET").strip().upper()
    if not _METHOD_TOKEN.match(candidate):
        return "POST"
    return candidate


def filter_response_headers(headers: httpx.Headers, decoded_length: Optional[int] = None) -> Dict[str, str]:
    """Keep only the relayable response headers.

    ``decoded_length`` replaces a downstream Content-Length when the body was
    content-decoded on the way in; otherwise the downstream value is relayed.
    """
    relayed: Dict[str, str] = {}
    for name in FORWARDED_RESPONSE_HEADERS:
        value = headers.get(name)
        if value is None:
            continue
        if name == "content-length" and decoded_length is not None:
            value = str(decoded_length)
        relayed[name] = value
    return relayed


def append_query(url: str, query: Optional[Mapping[str, str]]) -> httpx.URL:
    """Append ``query`` pairs after any query string already on ``url``."""
    target = httpx.URL(url)
    if not query:
        return target
    return target.copy_with(params=target.params.multi_items() + list(query.items()))


def _was_decoded(headers: httpx.Headers) -> bool:
    encoding = headers.get("content-encoding", "").strip().lower()
    return encoding not in ("", "identity")


class DownstreamClient:
    """Pooled client that performs the forwarded request."""

    def __init__(self, default_timeout: float = 30.0, max_connections: int = 100,
                 user_agent: str = "grenze-proxy", metrics: Optional[MetricsCollector] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.default_timeout = default_timeout
        self.metrics = metrics
        self.logger = get_logger("proxy.downstream_client")
        self._client = httpx.AsyncClient(
            timeout=default_timeout,
            limits=httpx.Limits(max_connections=max_connections),
            headers={"User-Agent": user_agent},
            follow_redirects=True,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def forward(self, method: str, url: str, headers: Optional[Mapping[str, str]] = None,
                      query: Optional[Mapping[str, str]] = None, body: Any = _NO_BODY,
                      timeout: Optional[float] = None, accept: Optional[str] = None) -> DownstreamResponse:
        """Send the request and read the full response.

        ``query`` is appended to any query string already on ``url``. ``body``
        is sent as JSON unless omitted or None. ``timeout`` (seconds) bounds
        the whole round trip. Raises TransportError on any failure, including
        a request that cannot be encoded.
        """
        timeout = timeout if timeout is not None else self.default_timeout
        method = normalize_method(method)

        start_time = time.perf_counter()
        try:
            request = self._build_request(method, url, headers, query, body, timeout, accept)
            response = await asyncio.wait_for(self._client.send(request), timeout)
        except asyncio.TimeoutError as e:
            self._record("error", start_time)
            message = f"Downstream request timed out after {timeout:g}s"
            self.logger.warning("Downstream request failed", method=method, url=url, error=message)
            raise TransportError(message, details={"url": url}) from e
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError, ValueError) as e:
            # UnicodeEncodeError from a non-ASCII header value is a ValueError
            self._record("error", start_time)
            message = str(e) or e.__class__.__name__
            self.logger.warning("Downstream request failed", method=method, url=url, error=message)
            raise TransportError(message, details={"url": url}) from e

        self._record("ok", start_time)
        self.logger.debug(
            "Downstream response received",
            method=method,
            url=url,
            status_code=response.status_code
        )
        content = response.content
        decoded_length = len(content) if _was_decoded(response.headers) else None
        return DownstreamResponse(
            status_code=response.status_code,
            headers=filter_response_headers(response.headers, decoded_length),
            content=content
        )

    def _build_request(self, method: str, url: str, headers: Optional[Mapping[str, str]],
                       query: Optional[Mapping[str, str]], body: Any, timeout: float,
                       accept: Optional[str]) -> httpx.Request:
        request_headers = httpx.Headers(dict(headers or {}))
        if accept and "accept" not in request_headers:
            request_headers["Accept"] = accept

        kwargs: Dict[str, Any] = {"headers": request_headers, "timeout": timeout}
        if body is not _NO_BODY and body is not None:
            kwargs["json"] = body

        return self._client.build_request(method, append_query(url, query), **kwargs)

    def _record(self, outcome: str, start_time: float) -> None:
        if self.metrics is None:
            return
        self.metrics.increment_counter("downstream_requests_total", outcome=outcome)
        self.metrics.observe_histogram("downstream_request_duration_seconds", time.perf_counter() - start_time)
