"""
Shared utilities for the Grenze proxy services.

This package aggregates common building blocks consumed by all services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorators for startup dependencies
- base_service: FastAPI application shell

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service_* packages into shared/.
"""

__version__ = "0.1.0"
