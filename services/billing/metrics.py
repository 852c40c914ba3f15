"""Prometheus collectors for the billing subsystem."""

from __future__ import annotations

from services.prometheus_helpers import build_counter, build_histogram

STATUS_EVALUATIONS = build_counter(
    "billing_status_evaluations_total",
    "Subscription status evaluations grouped by outcome.",
    ["outcome"],
)
LAZY_EXPIRIES = build_counter(
    "billing_lazy_expiries_total",
    "Subscriptions transitioned to inactive because their end date passed.",
    ["source"],
)
LIMIT_DENIALS = build_counter(
    "billing_limit_denials_total",
    "Resource creations refused because the plan limit was reached.",
    ["resource"],
)
USAGE_RECOUNTS = build_counter(
    "billing_usage_recounts_total",
    "Usage counters recomputed from the practice tables.",
    ["resource", "trigger"],
)
WEBHOOK_EVENTS = build_counter(
    "billing_webhook_events_total",
    "Gateway webhook deliveries grouped by event type and reconciliation outcome.",
    ["event_type", "outcome"],
)
GATEWAY_FAILURES = build_counter(
    "billing_gateway_failures_total",
    "Gateway API calls that failed or timed out.",
    ["operation"],
)
GATEWAY_LATENCY = build_histogram(
    "billing_gateway_request_seconds",
    "Latency of gateway API calls.",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

__all__ = [
    "GATEWAY_FAILURES",
    "GATEWAY_LATENCY",
    "LAZY_EXPIRIES",
    "LIMIT_DENIALS",
    "STATUS_EVALUATIONS",
    "USAGE_RECOUNTS",
    "WEBHOOK_EVENTS",
]
