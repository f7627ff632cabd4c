"""Prometheus metrics for the billing engine."""

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

REGISTRY = CollectorRegistry()

if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


APP_INFO = Info(
    "tenant_billing_app",
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
# Payment Gateway Metrics
# ============================================
GATEWAY_CHARGE_REQUESTS_TOTAL = Counter(
    "billing_gateway_charge_requests_total",
    "Outbound create-charge calls by gateway and result",
    ["gateway", "result"],
    registry=REGISTRY,
)

GATEWAY_CHARGE_DURATION_SECONDS = Histogram(
    "billing_gateway_charge_duration_seconds",
    "Create-charge latency including retries",
    ["gateway"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)


# ============================================
# Webhook Reconciliation Metrics
# ============================================
WEBHOOK_NOTIFICATIONS_TOTAL = Counter(
    "billing_webhook_notifications_total",
    "Webhook notifications by gateway and reconciliation outcome",
    ["gateway", "outcome"],
    registry=REGISTRY,
)

WEBHOOK_INVALID_SIGNATURES_TOTAL = Counter(
    "billing_webhook_invalid_signatures_total",
    "Webhook notifications rejected for a bad signature",
    ["gateway"],
    registry=REGISTRY,
)

RECONCILIATION_CONFLICTS_TOTAL = Counter(
    "billing_reconciliation_conflicts_total",
    "Optimistic-concurrency conflicts during reconciliation",
    ["gateway"],
    registry=REGISTRY,
)


# ============================================
# Subscription / Scheduler Metrics
# ============================================
SUBSCRIPTION_TRANSITIONS_TOTAL = Counter(
    "billing_subscription_transitions_total",
    "Subscription status transitions",
    ["from_status", "to_status"],
    registry=REGISTRY,
)

SCHEDULER_RUNS_TOTAL = Counter(
    "billing_scheduler_runs_total",
    "Daily scheduler sweeps by result",
    ["result"],
    registry=REGISTRY,
)

SCHEDULER_LAST_RUN_TIMESTAMP = Gauge(
    "billing_scheduler_last_run_timestamp",
    "Unix time of the last completed scheduler sweep",
    registry=REGISTRY,
)

USAGE_INCREMENTS_TOTAL = Counter(
    "billing_usage_increments_total",
    "Usage counter increments by metric",
    ["metric"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Render the registry in Prometheus text format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    APP_INFO.info({"version": version, "environment": environment})
