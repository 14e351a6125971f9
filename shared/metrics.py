"""
Shared metrics configuration for the license registry.
"""

from prometheus_client import Counter, Histogram, Info, CollectorRegistry, generate_latest
from typing import Dict, Any, Optional


class MetricsCollector:
    """Centralized metrics collector for a service."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # One registry per collector so several app instances can coexist
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        # Service info
        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
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

        # Health check metrics
        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        # Error metrics
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        if self.service_name == "licensing":
            self._setup_licensing_metrics()

    def _setup_licensing_metrics(self):
        """Set up issuance/distribution metrics."""
        self._metrics["licenses_issued_total"] = Counter(
            "licenses_issued_total",
            "Total licenses issued",
            ["tier", "source"],
            registry=self.registry
        )

        self._metrics["licenses_revoked_total"] = Counter(
            "licenses_revoked_total",
            "Total license records marked canceled",
            registry=self.registry
        )

        self._metrics["webhook_events_total"] = Counter(
            "webhook_events_total",
            "Total payment lifecycle events received",
            ["event_type", "outcome"],
            registry=self.registry
        )

        self._metrics["registry_writes_total"] = Counter(
            "registry_writes_total",
            "Total serialized registry mutations",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["registry_write_duration_seconds"] = Histogram(
            "registry_write_duration_seconds",
            "Registry mutation + publish duration in seconds",
            registry=self.registry
        )

        self._metrics["rate_limit_rejections_total"] = Counter(
            "rate_limit_rejections_total",
            "Total requests rejected by the rate limiter",
            ["endpoint"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def render_latest(self) -> bytes:
        """Render this collector's registry in Prometheus text format."""
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

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is not None:
            (metric.labels(**labels) if labels else metric).inc()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
