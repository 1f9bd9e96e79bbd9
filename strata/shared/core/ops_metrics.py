"""
Operational metrics for inventory synchronization.

Prometheus counters and histograms for sync passes, task outcomes and ledger
health. Exposed by the API process at /metrics.
"""

from prometheus_client import Counter, Gauge, Histogram

# --- Sync pass metrics ---
SYNC_ITEMS_TOTAL = Counter(
    "strata_sync_items_total",
    "Total number of items processed by sync passes",
    ["kind", "outcome"],  # outcome: new | changed | unchanged
)

SYNC_PASS_DURATION = Histogram(
    "strata_sync_pass_duration_seconds",
    "Duration of a single sync pass (fetch, diff and commit)",
    ["kind"],
    buckets=(0.5, 1, 5, 10, 30, 60, 120, 300, 600),
)

SYNC_PAGES_FETCHED = Counter(
    "strata_sync_pages_fetched_total",
    "Total number of provider pages fetched",
    ["kind"],
)

# --- Orchestration metrics ---
SYNC_TASK_OUTCOMES_TOTAL = Counter(
    "strata_sync_task_outcomes_total",
    "Terminal outcomes of scoped sync tasks",
    ["provider", "kind", "state"],  # succeeded | failed
)

SYNC_TASK_RETRIES_TOTAL = Counter(
    "strata_sync_task_retries_total",
    "Retried sync attempts by error class",
    ["provider", "kind", "error_type"],
)

SYNC_TASKS_RUNNING = Gauge(
    "strata_sync_tasks_running",
    "Number of sync tasks currently running",
    ["provider"],
)

# --- Ledger health ---
RECONCILE_STALE_CLOSED_TOTAL = Counter(
    "strata_reconcile_stale_closed_total",
    "Entities closed and removed by stale reconciliation",
    ["kind"],
)

RECONCILE_FAILURES_TOTAL = Counter(
    "strata_reconcile_failures_total",
    "Stale reconciliation passes that failed (logged, not escalated)",
    ["kind"],
)

LEDGER_INTEGRITY_FAULTS_TOTAL = Counter(
    "strata_ledger_integrity_faults_total",
    "History ledger invariant violations detected during a pass",
    ["kind"],
)

RATE_LIMIT_WAIT_SECONDS = Histogram(
    "strata_rate_limit_wait_seconds",
    "Time spent waiting for a provider rate-limit token",
    ["provider"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 5, 10),
)
