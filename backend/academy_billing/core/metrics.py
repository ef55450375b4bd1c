"""Prometheus metrics for the billing engine.

Duplicate webhook deliveries are counted under their own outcome so they
can be told apart from first-time processing.
"""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()

# Check if running in multiprocess mode (e.g., with gunicorn)
if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "academy_billing_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Webhook Metrics
# ============================================
WEBHOOKS_RECEIVED_TOTAL = Counter(
    "billing_webhooks_received_total",
    "Inbound gateway webhooks by event type and outcome",
    ["source", "event_type", "outcome"],  # outcome: processed, duplicate, ignored, failed
    registry=REGISTRY,
)

WEBHOOK_VERIFICATION_FAILURES_TOTAL = Counter(
    "billing_webhook_verification_failures_total",
    "Inbound webhooks rejected by signature or timestamp verification",
    ["source", "reason"],
    registry=REGISTRY,
)

WEBHOOK_AUDIT_LOG_FAILURES_TOTAL = Counter(
    "billing_webhook_audit_log_failures_total",
    "Webhook events that could not be written to the event log",
    ["source"],
    registry=REGISTRY,
)


# ============================================
# Limit Enforcement Metrics
# ============================================
LIMIT_CHECKS_TOTAL = Counter(
    "billing_limit_checks_total",
    "Limit gate decisions by resource kind",
    ["resource", "decision"],
    registry=REGISTRY,
)


# ============================================
# Payment Metrics
# ============================================
REFUNDS_TOTAL = Counter(
    "billing_refunds_total",
    "Refund attempts by type and outcome",
    ["refund_type", "outcome"],
    registry=REGISTRY,
)

BILLING_CHARGES_TOTAL = Counter(
    "billing_recurring_charges_total",
    "Recurring subscription charges by outcome",
    ["outcome"],
    registry=REGISTRY,
)

GATEWAY_REQUEST_DURATION_SECONDS = Histogram(
    "billing_gateway_request_duration_seconds",
    "Outbound payment gateway request duration in seconds",
    ["operation", "status_code"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)


def set_app_info(version: str, environment: str) -> None:
    """Set application info metric."""
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
