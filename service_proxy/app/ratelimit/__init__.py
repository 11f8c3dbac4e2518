"""
Rate limiting package for the proxy.

Holds the leaky-bucket policy, the reference leak arithmetic shared with
the store script, and the limiter that consults the shared bucket store.
"""

from .leaky_bucket import (
    BucketCheck,
    BucketPolicy,
    LeakyBucketLimiter,
    RateLimitDecision,
    leak_and_consume,
)

__all__ = [
    "BucketCheck",
    "BucketPolicy",
    "LeakyBucketLimiter",
    "RateLimitDecision",
    "leak_and_consume",
]
