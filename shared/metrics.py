"""
Shared metrics configuration for the Grenze proxy.
"""

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, generate_latest
from typing import Dict, Any, Optional


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector owns its registry so several app instances (tests,
    workers) can coexist in one interpreter.
    """

    def __init__(self, service_name: str, version: str = "0.0.0",
                 registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.version = version
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": self.version
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        if self.service_name == "proxy":
            self._setup_proxy_metrics()

    def _setup_proxy_metrics(self):
        """Set up proxy-specific metrics."""
        self._metrics["rate_limit_decisions_total"] = Counter(
            "rate_limit_decisions_total",
            "Leaky bucket decisions",
            ["decision"],
            registry=self.registry
        )

        self._metrics["downstream_requests_total"] = Counter(
            "downstream_requests_total",
            "Forwarded downstream requests",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["downstream_request_duration_seconds"] = Histogram(
            "downstream_request_duration_seconds",
            "Downstream round trip duration in seconds",
            registry=self.registry
        )

    def render(self) -> bytes:
        """Render the registry in Prometheus exposition format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_rate_limit_decision(self, decision: str):
        """Record a limiter decision (allow, reject or error)."""
        self.increment_counter("rate_limit_decisions_total", decision=decision)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric = metric.labels(**labels)
        metric.inc()

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric = metric.labels(**labels)
        metric.observe(value)

    def get_sample_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Read back a sample from the registry."""
        return self.registry.get_sample_value(name, labels or {})


def get_metrics_collector(service_name: str, version: str = "0.0.0",
                          registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, version, registry)
