"""Prometheus metrics for the postback tracker."""

from prometheus_client import Counter, Histogram, Info

# Application info
app_info = Info("postback_tracker", "Postback tracker application info")
app_info.info({"version": "0.1.0", "name": "postback-tracker"})

# Ingestion metrics
postbacks_received_total = Counter(
    "postbacks_received_total",
    "Total number of inbound postbacks by outcome",
    ["status"],
)

# Queue metrics
queue_entries_processed_total = Counter(
    "queue_entries_processed_total",
    "Total number of queue entries processed by outcome",
    ["outcome"],
)

queue_entries_reclaimed_total = Counter(
    "queue_entries_reclaimed_total",
    "Total number of stale processing entries reclaimed",
)

queue_batch_duration_seconds = Histogram(
    "queue_batch_duration_seconds",
    "Time spent processing one queue batch",
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

# Side-effect metrics
notifications_sent_total = Counter(
    "notifications_sent_total",
    "Total number of outbound notifications attempted",
    ["channel", "status"],
)


def record_postback_received(status: str):
    """Record an inbound postback (queued, rejected_400, rejected_403, ...)."""
    postbacks_received_total.labels(status=status).inc()


def record_entry_processed(outcome: str):
    """Record a queue entry outcome (completed, retry, failed)."""
    queue_entries_processed_total.labels(outcome=outcome).inc()


def record_entries_reclaimed(count: int):
    """Record stale entries put back into circulation."""
    if count:
        queue_entries_reclaimed_total.inc(count)


def record_notification(channel: str, success: bool):
    """Record a notification or export attempt."""
    status = "success" if success else "error"
    notifications_sent_total.labels(channel=channel, status=status).inc()
