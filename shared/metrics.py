"""
Shared metrics configuration for the Policy Orchestrator.
"""

from typing import Dict, Any, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, generate_latest


class MetricsCollector:
    """Centralized metrics collector for a service."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common and orchestration metrics."""

        self._metrics["service_info"] = Info(
            "service",
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

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type"],
            registry=self.registry
        )

        # Flow execution metrics
        self._metrics["flow_runs_total"] = Counter(
            "flow_runs_total",
            "Total flow executions",
            ["status"],
            registry=self.registry
        )

        self._metrics["flow_run_duration_seconds"] = Histogram(
            "flow_run_duration_seconds",
            "Flow execution duration in seconds",
            registry=self.registry
        )

        self._metrics["flow_nodes_visited_total"] = Counter(
            "flow_nodes_visited_total",
            "Total flow nodes visited",
            ["node_type"],
            registry=self.registry
        )

        # Evaluation engine metrics
        self._metrics["engine_calls_total"] = Counter(
            "engine_calls_total",
            "Total evaluation engine calls",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["engine_call_duration_seconds"] = Histogram(
            "engine_call_duration_seconds",
            "Evaluation engine call duration in seconds",
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

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

    def record_error(self, error_type: str):
        """Record error metrics."""
        self._metrics["errors_total"].labels(error_type=error_type).inc()

    def record_flow_run(self, status: str, duration: float):
        self._metrics["flow_runs_total"].labels(status=status).inc()
        self._metrics["flow_run_duration_seconds"].observe(duration)

    def record_node_visit(self, node_type: str):
        self._metrics["flow_nodes_visited_total"].labels(node_type=node_type).inc()

    def record_engine_call(self, outcome: str, duration: float):
        self._metrics["engine_calls_total"].labels(outcome=outcome).inc()
        self._metrics["engine_call_duration_seconds"].observe(duration)

    def export(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self.registry)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
