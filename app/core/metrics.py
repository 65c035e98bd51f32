"""
Prometheus metrics for inventory-sync-api.

This module defines all Prometheus metrics used for monitoring and observability.

Metrics exposed:
- Sync run counters, durations and record outcomes
- Active (in-flight) sync runs
- External API success/failure counters
- Device assignment change counters
- Scheduler status gauges
"""
from prometheus_client import Counter, Gauge, Histogram

# Sync Run Metrics
sync_runs_total = Counter(
    "sync_runs_total",
    "Total sync runs that reached a terminal state",
    ["kind", "status"]
)

sync_run_duration_seconds = Histogram(
    "sync_run_duration_seconds",
    "Sync run duration in seconds",
    ["kind"],
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1200, 1800, 3600)
)

sync_records_total = Counter(
    "sync_records_total",
    "Records processed by sync tasks",
    ["kind", "outcome"]
)

sync_active_runs = Gauge(
    "sync_active_runs",
    "Sync runs currently held by the task registry"
)

# External API Metrics
external_api_requests_total = Counter(
    "external_api_requests_total",
    "Requests made to external sources",
    ["source", "outcome"]
)

# Reconciliation Metrics
device_assignment_changes_total = Counter(
    "device_assignment_changes_total",
    "Device assignment history changes made by reconciliation",
    ["change"]
)

software_sync_failures_total = Counter(
    "software_sync_failures_total",
    "Background software inventory syncs that failed"
)

# Scheduler Metrics
scheduler_running = Gauge(
    "scheduler_running",
    "Whether the sync scheduler is running (1=running, 0=stopped)"
)

scheduler_jobs_total = Gauge(
    "scheduler_jobs_total",
    "Total number of scheduled jobs"
)


def record_sync_run(kind: str, status: str, duration_seconds: float, synced: int, failed: int):
    """
    Record a closed sync run.

    Args:
        kind: directory, devices or all
        status: Terminal status of the run
        duration_seconds: Wall-clock duration of the run
        synced: Records synced
        failed: Records failed
    """
    sync_runs_total.labels(kind=kind, status=status).inc()
    sync_run_duration_seconds.labels(kind=kind).observe(max(duration_seconds, 0))
    if synced:
        sync_records_total.labels(kind=kind, outcome="synced").inc(synced)
    if failed:
        sync_records_total.labels(kind=kind, outcome="failed").inc(failed)


def record_external_request(source: str, success: bool):
    """Record one request against an external source."""
    external_api_requests_total.labels(source=source, outcome="success" if success else "failure").inc()


def record_assignment_change(change: str):
    """Record an assignment change (assigned, reassigned, unassigned, audit)."""
    device_assignment_changes_total.labels(change=change).inc()


def update_scheduler_metrics():
    """
    Update scheduler metrics.

    Call this periodically to update scheduler status.
    """
    from app.core.scheduler import get_scheduler

    scheduler = get_scheduler()
    if scheduler and scheduler.running:
        scheduler_running.set(1)
        if scheduler.scheduler:
            scheduler_jobs_total.set(len(scheduler.scheduler.get_jobs()))
    else:
        scheduler_running.set(0)
        scheduler_jobs_total.set(0)
