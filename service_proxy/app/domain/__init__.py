"""
Domain package for the proxy service.

- models: the inbound ProxyEnvelope and the ProxyOutcome variants.
- orchestrator: per-request state machine (validate, rate check, forward)
  and the single mapping from outcomes to HTTP responses.
"""

from .models import (
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
from .orchestrator import ProxyOrchestrator, render

__all__ = [
    "ClientClosed",
    "DownstreamError",
    "Forwarded",
    "InvalidRequest",
    "MissingKey",
    "ProxyEnvelope",
    "ProxyOrchestrator",
    "ProxyOutcome",
    "RateLimited",
    "StoreFailure",
    "parse_envelope",
    "render",
]
