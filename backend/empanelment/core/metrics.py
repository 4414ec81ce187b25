"""Prometheus metrics for audit trail monitoring.

This module provides application metrics for:
- Request latency and throughput
- Audit log writes and write failures
- Hash chain verification runs and their outcome
- Alert rule triggers

Metrics are exposed at /metrics endpoint for Prometheus scraping.
"""

import re
import time

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# HTTP request metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Audit metrics
audit_log_entries_total = Counter(
    'audit_log_entries_total',
    'Total audit log entries written',
    ['category']
)

audit_log_write_failures_total = Counter(
    'audit_log_write_failures_total',
    'Failed audit log write attempts'
)

audit_chain_verifications_total = Counter(
    'audit_chain_verifications_total',
    'Completed hash chain verification runs',
    ['result']  # valid, invalid
)

audit_chain_verification_duration_seconds = Histogram(
    'audit_chain_verification_duration_seconds',
    'Hash chain verification duration in seconds',
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0]
)

audit_chain_invalid_records = Gauge(
    'audit_chain_invalid_records',
    'Invalid records found by the most recent verification run'
)

audit_alerts_triggered_total = Counter(
    'audit_alerts_triggered_total',
    'Alert rules triggered by audit log entries',
    ['rule_id', 'severity']
)


def get_metrics() -> Response:
    """Generate Prometheus metrics response."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def track_request_metrics(method: str, endpoint: str, status: int, duration: float):
    """Track HTTP request metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: Request endpoint path
        status: HTTP response status code
        duration: Request duration in seconds
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=str(status)
    ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration)


def track_audit_log(category: str, success: bool = True):
    """Track audit log write.

    Args:
        category: Audit category of the entry
        success: Whether write was successful
    """
    if success:
        audit_log_entries_total.labels(category=category).inc()
    else:
        audit_log_write_failures_total.inc()


def track_chain_verification(valid: bool, invalid_count: int, duration: float):
    """Track a completed hash chain verification run."""
    audit_chain_verifications_total.labels(result="valid" if valid else "invalid").inc()
    audit_chain_verification_duration_seconds.observe(duration)
    audit_chain_invalid_records.set(invalid_count)


def track_alert(rule_id: str, severity: str):
    """Track a triggered alert rule."""
    audit_alerts_triggered_total.labels(rule_id=rule_id, severity=severity).inc()


class MetricsMiddleware:
    """ASGI middleware for tracking request metrics."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        if path == "/metrics":
            await self.app(scope, receive, send)
            return

        method = scope.get("method", "UNKNOWN")
        start_time = time.time()
        status_code = 500  # Default in case of error

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration = time.time() - start_time
            track_request_metrics(method, self._endpoint_label(scope, path), status_code, duration)

    def _endpoint_label(self, scope, path: str) -> str:
        """Label requests by route template to keep cardinality bounded.

        Entity, user and rule ids are free-form strings, so the matched
        route (set on the scope by the router) is preferred. Unmatched paths
        fall back to replacing UUIDs and numeric ids.
        """
        route = scope.get("route")
        if route is not None and getattr(route, "path", None):
            return route.path
        path = re.sub(
            r'[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}',
            '{id}',
            path
        )
        path = re.sub(r'/\d+(?=/|$)', '/{id}', path)
        return path
