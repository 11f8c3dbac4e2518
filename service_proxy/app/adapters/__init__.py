"""
Adapters package for the proxy service.

Thin wrappers around the two networked dependencies:

- bucket_store: shared key-value store running the atomic bucket check
- downstream_client: pooled HTTP client performing forwarded requests

Each adapter raises its own typed error (StoreUnavailableError,
TransportError) and never renders HTTP semantics.
"""

from .bucket_store import BucketStore, InMemoryBucketStore, RedisBucketStore
from .downstream_client import DownstreamClient, DownstreamResponse

__all__ = [
    "BucketStore",
    "InMemoryBucketStore",
    "RedisBucketStore",
    "DownstreamClient",
    "DownstreamResponse",
]
