"""
Shared Prometheus metrics for Docker Kicker.
This module defines all metrics in one place to avoid duplication.
"""

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
)

# HTTP request metrics
REQUEST_COUNT = Counter(
    "kicker_requests_total",
    "Total kicker requests",
    ["method", "endpoint", "status"],
)
REQUEST_LATENCY = Histogram(
    "kicker_request_duration_seconds", "Kicker request latency"
)

# Launch metrics
KICKS = Counter(
    "kicker_kicks_total",
    "Kick requests by configuration and outcome",
    ["config", "outcome"],
)
RUNNING_INSTANCES = Gauge(
    "kicker_running_instances",
    "Number of tracked running instances",
    ["config"],
)
