"""Monitoring configuration for the practice core."""
from prometheus_client import Counter, Gauge, Histogram

# Queue metrics
items_queued = Counter(
    "spellstars_items_queued_total",
    "Total number of records written to the local queue",
    ["category"],
)

pending_items = Gauge(
    "spellstars_pending_items",
    "Number of queued records not yet synced",
    ["category"],
)

# Sync metrics
items_synced = Counter(
    "spellstars_items_synced_total",
    "Total number of queued records synced to the remote store",
    ["category"],
)

items_failed = Counter(
    "spellstars_items_failed_total",
    "Total number of queued records marked permanently failed",
    ["category"],
)

sync_in_progress = Gauge(
    "spellstars_sync_in_progress",
    "Whether a sync pass is currently running",
)

sync_duration = Histogram(
    "spellstars_sync_duration_seconds",
    "Duration of sync passes in seconds",
    buckets=[0.1, 0.5, 1.0, 5.0, 30.0, 120.0],
)

# Remote store metrics
remote_errors = Counter(
    "spellstars_remote_errors_total",
    "Total number of failed remote store calls",
    ["error_type"],
)

batch_requests = Counter(
    "spellstars_batch_requests_total",
    "Total number of practice batches selected",
    ["strict_mode"],
)
