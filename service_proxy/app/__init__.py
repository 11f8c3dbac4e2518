"""
Proxy service package for Grenze.

The proxy accepts an envelope describing an outbound HTTP request, charges
one unit against the caller's leaky bucket in the shared store and, when the
bucket has room, performs the request and relays the response.

Structure:
- app.main: FastAPI service, routes and lifecycle wiring.
- app.adapters: bucket store (Redis / in-memory) and downstream HTTP client.
- app.ratelimit: leaky bucket policy and limiter.
- app.domain: envelope/outcome models and the orchestrator.
"""
