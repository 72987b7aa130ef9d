"""
Operational Metrics for the Medora billing engine

Defines Prometheus metrics for renewals, verifications, reconciliation
and dependency health. Scraped from /metrics.
"""

from prometheus_client import Counter, Histogram, Gauge

# --- Renewal Metrics ---
RENEWAL_ORDERS_CREATED = Counter(
    "medora_ops_renewal_orders_created_total",
    "Total number of gateway orders created for renewals",
    ["billing_cycle"]
)

RENEWAL_REQUESTS_REUSED = Counter(
    "medora_ops_renewal_requests_reused_total",
    "Renewal requests answered with an existing fresh pending order"
)

ORPHANED_GATEWAY_ORDERS = Counter(
    "medora_ops_orphaned_gateway_orders_total",
    "Gateway orders created whose renewal attempt could not be persisted"
)

# --- Verification Metrics ---
VERIFICATIONS_TOTAL = Counter(
    "medora_ops_verifications_total",
    "Payment verifications by outcome",
    ["outcome"]  # 'applied', 'already_applied', 'failed'
)

BILLING_FAILURES = Counter(
    "medora_ops_billing_failures_total",
    "Renewal and verification failures by category",
    ["category"]
)

# --- Reconciliation Metrics ---
RECONCILIATION_OUTCOMES = Counter(
    "medora_ops_reconciliation_outcomes_total",
    "Stale renewal outcomes decided by the reconciliation sweeper",
    ["outcome"]  # 'recovered', 'failed', 'flagged', 'skipped', 'error'
)

RECONCILIATION_DURATION = Histogram(
    "medora_ops_reconciliation_duration_seconds",
    "Duration of a full reconciliation sweep",
    buckets=(0.5, 1, 5, 10, 30, 60, 120, 300)
)

ORPHANED_LOCKS_CLEARED = Counter(
    "medora_ops_orphaned_locks_cleared_total",
    "Locks removed by the orphan scan",
    ["kind"]
)

# --- Lock & Gateway Metrics ---
LOCK_CONTENTION = Counter(
    "medora_ops_lock_contention_total",
    "Lock acquisitions refused because another holder exists",
    ["operation"]
)

GATEWAY_REQUESTS = Counter(
    "medora_ops_gateway_requests_total",
    "Payment gateway calls by operation and result",
    ["operation", "result"]
)

GATEWAY_LATENCY = Histogram(
    "medora_ops_gateway_latency_seconds",
    "Payment gateway call latency including retries",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30)
)

# --- Health ---
DEPENDENCY_UP = Gauge(
    "medora_ops_dependency_up",
    "1 when the dependency answered the last health check",
    ["dependency"]
)

BILLING_ALERTS_RAISED = Counter(
    "medora_ops_billing_alerts_total",
    "Alerts dispatched by the billing monitor",
    ["alert"]
)

# --- Scheduled Jobs ---
SCHEDULER_JOB_RUNS = Counter(
    "medora_ops_scheduler_job_runs_total",
    "Billing background job runs by job and status",
    ["job_name", "status"]
)

SCHEDULER_JOB_DURATION = Histogram(
    "medora_ops_scheduler_job_duration_seconds",
    "Billing background job duration",
    ["job_name"],
    buckets=(1, 5, 30, 60, 300, 900)
)
