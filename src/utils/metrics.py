"""Prometheus metrics for exchange resolution and the message pump.

All metric objects are defined at import time and exported through the
default registry, which ``src.api.health`` mounts at ``/metrics``.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

exchange_resolutions_total = Counter(
    "exchange_resolutions_total",
    "Exchange resolution outcomes at startup",
    ["role", "outcome"],  # outcome: created|reused|found|misconfigured|incompatible|not_found
)
exchanges_created_total = Counter(
    "exchanges_created_total",
    "Exchanges provisioned and stamped by this process",
)
messages_received_total = Counter(
    "messages_received_total",
    "Deliveries taken off the service queue",
)
messages_processed_total = Counter(
    "messages_processed_total",
    "Messages handled and published successfully",
)
messages_dropped_total = Counter(
    "messages_dropped_total",
    "Messages acknowledged without a published result",
    ["stage"],  # decode|handler|encode|publish
)
message_handler_duration_seconds = Histogram(
    "message_handler_duration_seconds",
    "User handler latency",
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
)
pump_running = Gauge(
    "pump_running",
    "1 while the message pump is consuming",
)


__all__ = [
    "exchange_resolutions_total",
    "exchanges_created_total",
    "messages_received_total",
    "messages_processed_total",
    "messages_dropped_total",
    "message_handler_duration_seconds",
    "pump_running",
]
