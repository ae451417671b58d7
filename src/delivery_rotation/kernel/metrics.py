"""
Prometheus metrics for the delivery rotation service
"""

from prometheus_client import Counter, Histogram, start_http_server

# ============================================================================
# Event Store Metrics
# ============================================================================

events_appended_total = Counter(
    "delivery_rotation_events_appended_total",
    "Total number of events appended to the event store",
    ["stream_type", "event_type"],
)

stream_version_conflicts_total = Counter(
    "delivery_rotation_stream_version_conflicts_total",
    "Total number of optimistic locking version conflicts",
    ["stream_type"],
)

# ============================================================================
# Rotation Metrics
# ============================================================================

rotation_transitions_total = Counter(
    "delivery_rotation_transitions_total",
    "Rotation state transitions by resulting event type",
    ["event_type"],
)

provider_responses_total = Counter(
    "delivery_rotation_provider_responses_total",
    "Provider responses applied to a request",
    ["action"],
)

conflicting_responses_total = Counter(
    "delivery_rotation_conflicting_responses_total",
    "Calls rejected as no-ops because the request had moved on",
    ["reason"],
)

queue_candidates = Histogram(
    "delivery_rotation_queue_candidates",
    "Number of eligible providers found when building a queue",
    buckets=(0, 1, 2, 3, 5, 10, 20, 50),
)

coordinates_defaulted_total = Counter(
    "delivery_rotation_coordinates_defaulted_total",
    "Queue builds that fell back to the default city-centre coordinates",
)

timeouts_swept_total = Counter(
    "delivery_rotation_timeouts_swept_total",
    "Timeout events produced by the sweeper",
    ["outcome"],  # applied, skipped
)

# ============================================================================
# Notification & Access Metrics
# ============================================================================

notifications_sent_total = Counter(
    "delivery_rotation_notifications_sent_total",
    "Communication records written",
    ["message_type"],
)

notifications_failed_total = Counter(
    "delivery_rotation_notifications_failed_total",
    "Notification dispatches that failed (never rolled back the transition)",
    ["message_type"],
)

driver_contact_requests_total = Counter(
    "delivery_rotation_driver_contact_requests_total",
    "Disclosure gate evaluations",
    ["authorized"],
)


def start_metrics_server(port: int = 9090) -> None:
    """Expose metrics over HTTP on the given port"""
    start_http_server(port)
