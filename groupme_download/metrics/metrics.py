"""Prometheus metrics for monitoring archive runs."""

import prometheus_client as _prom

Counter = _prom.Counter
Histogram = _prom.Histogram


# GroupMe API metrics (page fetches, group lookups, attachment downloads)
API_LATENCY = Histogram(
    "groupme_api_latency_seconds",
    "GroupMe API latency in seconds by endpoint and status",
    ["endpoint", "status"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float("inf")),
)
API_CALLS = Counter(
    "groupme_api_calls_total",
    "GroupMe API call count by endpoint and status",
    ["endpoint", "status"],
)

# Archive operation metrics
OP_LATENCY = Histogram(
    "groupme_operation_latency_seconds",
    "Total latency of archive operations by operation and group",
    ["operation", "group_id"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, float("inf")),
)
OP_ITEMS = Histogram(
    "groupme_operation_items",
    "Total number of items handled by archive operations",
    ["operation", "group_id"],
    buckets=(0, 1, 5, 10, 20, 50, 100, 200, 500, 1000, 5000, float("inf")),
)

# Attachment store metrics
ATTACHMENT_DOWNLOADS = Counter(
    "groupme_attachment_downloads_total",
    "Attachment materializations by outcome (stored, reused, tombstone)",
    ["outcome"],
)
ATTACHMENT_BYTES = Counter(
    "groupme_attachment_bytes_total",
    "Bytes written to the content-addressed attachment store",
)

# Rate limiter backpressure
RATE_LIMIT_PENALTIES = Counter(
    "groupme_rate_limit_penalties_total",
    "Number of times the rate limiter was penalized after a rate-limit response",
)
