"""
Operational metrics for the scan-and-alert pipeline.

Exposed through prometheus_client; workers scrape via the default registry.
A stuck scan shows up as a flat ``costwatch_active_scans`` gauge with no
matching duration samples.
"""

from prometheus_client import Counter, Gauge, Histogram

# --- Queue Metrics ---
BACKGROUND_JOBS_ENQUEUED = Counter(
    "costwatch_jobs_enqueued_total",
    "Total number of queue tasks enqueued",
    ["queue", "job_type"],
)

BACKGROUND_JOBS_PROCESSED = Counter(
    "costwatch_jobs_processed_total",
    "Queue task executions by outcome (completed, retrying, failed)",
    ["queue", "status"],
)

BACKGROUND_JOB_DURATION = Histogram(
    "costwatch_job_duration_seconds",
    "Duration of queue task execution",
    ["queue", "status"],
    buckets=(0.5, 1, 5, 10, 30, 60, 120, 300, 600),
)

STALLED_JOBS_RECOVERED = Counter(
    "costwatch_stalled_jobs_recovered_total",
    "Active tasks returned to pending after their lock expired",
    ["queue"],
)

# --- Scan Metrics ---
SCAN_JOB_DURATION = Histogram(
    "costwatch_scan_job_duration_seconds",
    "Duration of scan jobs",
    ["status"],
    buckets=(1, 5, 10, 30, 60, 120, 300),
)

ACTIVE_SCANS = Gauge(
    "costwatch_active_scans",
    "Number of scans currently running in this process",
)

RESOURCES_DISCOVERED = Counter(
    "costwatch_resources_discovered_total",
    "Resources upserted by the inventory collector",
    ["resource_type"],
)

TOTAL_TRACKED_COST = Gauge(
    "costwatch_total_tracked_cost_usd",
    "Last computed monthly cost per owner tier",
    ["tier"],
)

# --- Alert & Notification Metrics ---
ALERTS_EMITTED = Counter(
    "costwatch_alerts_emitted_total",
    "Alerts persisted by the evaluator",
    ["severity", "alert_type"],
)

NOTIFICATION_DELIVERIES = Counter(
    "costwatch_notification_deliveries_total",
    "Notification delivery outcomes per channel",
    ["channel", "status"],
)

DETACHED_TASK_FAILURES = Counter(
    "costwatch_detached_task_failures_total",
    "Failures inside supervised detached tasks",
    ["name"],
)
