"""Prometheus metrics export."""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Request metrics
request_count = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
)

# Queue metrics
queue_messages_total = Counter(
    "relay_queue_messages_total",
    "Total queue messages processed",
    ["channel", "outcome"],  # success, retried, dead_lettered, dropped, rate_limited
)

queue_handler_duration = Histogram(
    "relay_handler_duration_seconds",
    "Relay handler duration in seconds",
    ["channel"],
)

queue_enqueued_total = Counter(
    "relay_queue_enqueued_total",
    "Total messages accepted at the gateway boundary",
    ["channel"],
)

# CRM metrics
crm_variant_attempts_total = Counter(
    "crm_variant_attempts_total",
    "CRM send attempts per request variant",
    ["variant", "status"],
)

crm_thread_ids_learned_total = Counter(
    "crm_thread_ids_learned_total",
    "Thread ids persisted from CRM responses",
)

crm_token_refresh_total = Counter(
    "crm_token_refresh_total",
    "CRM access token refreshes",
    ["status"],
)

# Session metrics
session_transitions_total = Counter(
    "session_transitions_total",
    "Session state transitions",
    ["status"],
)

session_reconnects_scheduled_total = Counter(
    "session_reconnects_scheduled_total",
    "Reconnects scheduled after a disconnect",
)

active_sessions = Gauge(
    "active_sessions",
    "Number of accounts with an open connection",
)


def get_metrics_response() -> Response:
    """Get Prometheus metrics as HTTP response."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
