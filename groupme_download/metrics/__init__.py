"""Metrics module for Prometheus monitoring."""

from .metrics import (
    API_CALLS,
    API_LATENCY,
    ATTACHMENT_BYTES,
    ATTACHMENT_DOWNLOADS,
    OP_ITEMS,
    OP_LATENCY,
    RATE_LIMIT_PENALTIES,
)

__all__ = [
    "API_CALLS",
    "API_LATENCY",
    "ATTACHMENT_BYTES",
    "ATTACHMENT_DOWNLOADS",
    "OP_ITEMS",
    "OP_LATENCY",
    "RATE_LIMIT_PENALTIES",
]
