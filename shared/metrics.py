"""
Prometheus metrics for the IAM service.
"""

import threading
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info

_BREAKER_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class MetricsCollector:
    """Centralized metrics collector.

    Each collector owns its registry so that several service instances
    (tests, workers) never collide on metric names.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up metrics for the service."""
        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

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
            ["error_type"],
            registry=self.registry
        )

        self._metrics["authentications_total"] = Counter(
            "authentications_total",
            "Authentication attempts",
            ["method", "outcome"],
            registry=self.registry
        )

        self._metrics["token_operations_total"] = Counter(
            "token_operations_total",
            "Token, code and binding operations",
            ["operation", "outcome"],
            registry=self.registry
        )

        self._metrics["permission_checks_total"] = Counter(
            "permission_checks_total",
            "Permission checks",
            ["decision"],
            registry=self.registry
        )

        self._metrics["circuit_breaker_state"] = Gauge(
            "circuit_breaker_state",
            "Circuit breaker state (0 closed, 1 half-open, 2 open)",
            ["name"],
            registry=self.registry
        )

        self._metrics["external_unavailable_total"] = Counter(
            "external_unavailable_total",
            "External calls given up on",
            ["service", "reason"],
            registry=self.registry
        )

        self._metrics["hook_deliveries_total"] = Counter(
            "hook_deliveries_total",
            "Hook deliveries",
            ["event", "outcome"],
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

    def record_error(self, error_type: str):
        self._metrics["errors_total"].labels(error_type=error_type).inc()

    def record_authentication(self, method: str, outcome: str):
        self._metrics["authentications_total"].labels(method=method, outcome=outcome).inc()

    def record_token_operation(self, operation: str, outcome: str):
        self._metrics["token_operations_total"].labels(operation=operation, outcome=outcome).inc()

    def record_permission_check(self, allowed: bool):
        self._metrics["permission_checks_total"].labels(decision="allow" if allowed else "deny").inc()

    def record_breaker_state(self, name: str, state: str):
        with self._lock:
            self._metrics["circuit_breaker_state"].labels(name=name).set(_BREAKER_STATE_VALUES[state])

    def record_external_unavailable(self, service: str, reason: str):
        self._metrics["external_unavailable_total"].labels(service=service, reason=reason).inc()

    def record_hook_delivery(self, event: str, outcome: str):
        self._metrics["hook_deliveries_total"].labels(event=event, outcome=outcome).inc()
