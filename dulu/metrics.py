from prometheus_client import Counter, Histogram
# Prometheus metrics definitions

# Deposits sent to the provider, labelled by the initial provider verdict
payment_initiated_total = Counter(
    "payment_initiated_total", "Total deposits initiated", ["status"]
)

# Payments reaching the completed edge (counted once per payment)
payment_completed_total = Counter(
    "payment_completed_total", "Total payments completed", ["source"]
)

# Payment failure counter
payment_fail_total = Counter(
    "payment_fail_total", "Total payment failures"
)

# Webhook rejects (IP or signature)
webhook_forbidden_total = Counter(
    "webhook_forbidden_total", "Total forbidden webhook requests"
)

# Duplicate or stale status deliveries that changed nothing
reconcile_noop_total = Counter(
    "reconcile_noop_total", "Status updates skipped as already applied", ["source"]
)

_provider_buckets = (
    0.1,
    0.5,
    1.0,
    2.0,
    5.0,
    15.0,
)

provider_request_seconds = Histogram(
    "provider_request_seconds",
    "PawaPay request latency",
    ["operation"],
    buckets=_provider_buckets,
)

__all__ = [
    "payment_initiated_total",
    "payment_completed_total",
    "payment_fail_total",
    "webhook_forbidden_total",
    "reconcile_noop_total",
    "provider_request_seconds",
]
