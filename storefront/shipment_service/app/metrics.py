"""Prometheus metrics for the shipment service."""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter, Histogram

# Courier API ------------------------------------------------------------------------------
COURIER_REQUESTS_TOTAL: Final = Counter(
    "shipment_courier_requests_total",
    "Delhivery API calls by operation and outcome.",
    labelnames=("operation", "outcome"),
)

COURIER_REQUEST_LATENCY_SECONDS: Final = Histogram(
    "shipment_courier_request_latency_seconds",
    "Latency of Delhivery API calls.",
    labelnames=("operation",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 15, 30),
)

COURIER_FALLBACK_TOTAL: Final = Counter(
    "shipment_courier_fallback_total",
    "Estimates served from local heuristics instead of the courier API.",
    labelnames=("operation",),
)

SERVICEABILITY_CACHE_EVENTS_TOTAL: Final = Counter(
    "shipment_serviceability_cache_events_total",
    "Serviceability cache hits, misses, writes and errors.",
    labelnames=("event",),
)

# Lifecycle --------------------------------------------------------------------------------
SHIPMENT_BOOKINGS_TOTAL: Final = Counter(
    "shipment_bookings_total",
    "Approve-and-place attempts by outcome.",
    labelnames=("outcome",),
)

SHIPMENT_SYNC_TOTAL: Final = Counter(
    "shipment_sync_total",
    "Tracking sync attempts by outcome.",
    labelnames=("outcome",),
)

SHIPMENT_WEBHOOK_EVENTS_TOTAL: Final = Counter(
    "shipment_webhook_events_total",
    "Courier webhook events by outcome.",
    labelnames=("outcome",),
)

SHIPMENT_EDIT_RATE_LIMITED_TOTAL: Final = Counter(
    "shipment_edit_rate_limited_total",
    "Courier edit requests rejected by the rate limiter.",
)

SHIPMENT_RATE_LIMIT_ERRORS_TOTAL: Final = Counter(
    "shipment_rate_limit_errors_total",
    "Rate limiter Redis errors handled by failing open.",
    labelnames=("operation",),
)
