"""Prometheus metrics for the HTTP surface, collaborator calls, scans and payments."""
from __future__ import annotations

from typing import Final

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

_LATENCY_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1, 2, 5, 15)

HTTP_REQUESTS: Final = Counter(
    "stablepay_http_requests_total",
    "HTTP requests served, by route template and status",
    labelnames=("method", "route", "status"),
)
HTTP_LATENCY: Final = Histogram(
    "stablepay_http_request_duration_seconds",
    "Time spent serving HTTP requests",
    labelnames=("method", "route"),
    buckets=_LATENCY_BUCKETS,
)
SERVICE_ERRORS: Final = Counter(
    "stablepay_service_errors_total",
    "Requests rejected with a service error code",
    labelnames=("code", "route"),
)
COLLABORATOR_LATENCY: Final = Histogram(
    "stablepay_collaborator_request_duration_seconds",
    "Outbound calls to rate, RPC, settlement and payout services",
    labelnames=("host", "outcome"),
    buckets=_LATENCY_BUCKETS,
)
PAYMENT_ATTEMPTS: Final = Counter(
    "stablepay_payment_attempts_total",
    "Finished payment attempts by outcome and the step they ended at",
    labelnames=("outcome", "step"),
)
SCAN_EVENTS: Final = Counter(
    "stablepay_scan_events_total",
    "QR scan outcomes",
    labelnames=("outcome",),
)


def observe_request(method: str, route: str, status_code: int, duration_ms: float) -> None:
    HTTP_REQUESTS.labels(method=method, route=route, status=str(status_code)).inc()
    HTTP_LATENCY.labels(method=method, route=route).observe(duration_ms / 1000)


def record_service_error(code: str, route: str) -> None:
    SERVICE_ERRORS.labels(code=code, route=route).inc()


def observe_collaborator_call(host: str, outcome: str, duration_s: float) -> None:
    """``outcome`` is ``ok``, ``rejected`` (non-2xx or bad body) or ``unreachable``."""

    COLLABORATOR_LATENCY.labels(host=host, outcome=outcome).observe(duration_s)


def record_payment_outcome(outcome: str, step: str) -> None:
    PAYMENT_ATTEMPTS.labels(outcome=outcome, step=step).inc()


def record_scan_event(outcome: str) -> None:
    SCAN_EVENTS.labels(outcome=outcome).inc()


def metrics_payload() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
