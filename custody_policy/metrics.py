"""Prometheus metrics definitions for the custody policy service."""

from prometheus_client import Counter, Histogram, Info

# ---------------------------------------------------------------------------
# HTTP layer
# ---------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "custody_policy_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

HTTP_REQUEST_DURATION = Histogram(
    "custody_policy_http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

RATE_LIMIT_HITS_TOTAL = Counter(
    "custody_policy_rate_limit_hits_total",
    "Number of requests rejected by rate limiter",
)

# ---------------------------------------------------------------------------
# Policy evaluation
# ---------------------------------------------------------------------------

POLICY_EVALUATIONS_TOTAL = Counter(
    "custody_policy_evaluations_total",
    "Transactions evaluated against a policy",
    ["action"],           # "allow" | "deny" | "require_approval"
)

POLICY_VIOLATIONS_TOTAL = Counter(
    "custody_policy_violations_total",
    "Policy violations reported",
    ["severity"],         # "warning" | "error" | "critical"
)

# ---------------------------------------------------------------------------
# Upstream custody API
# ---------------------------------------------------------------------------

CUSTODY_API_REQUESTS_TOTAL = Counter(
    "custody_policy_upstream_requests_total",
    "Requests sent to the custody API, per attempt",
    ["method", "status"],  # status: HTTP code or "error"
)

CUSTODY_API_DURATION = Histogram(
    "custody_policy_upstream_duration_seconds",
    "Custody API latency per attempt",
    ["method"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

# ---------------------------------------------------------------------------
# Inbound webhooks
# ---------------------------------------------------------------------------

WEBHOOK_EVENTS_TOTAL = Counter(
    "custody_policy_webhook_events_total",
    "Webhook events received from the custody platform",
    ["result"],           # "accepted" | "rejected"
)

# ---------------------------------------------------------------------------
# Service info
# ---------------------------------------------------------------------------

SERVICE_INFO = Info(
    "custody_policy_service",
    "Custody policy service metadata",
)
SERVICE_INFO.info({"version": "0.1.0", "api_version": "v1"})
