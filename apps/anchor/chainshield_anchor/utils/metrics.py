"""Prometheus metrics."""

from prometheus_client import Counter, Gauge, Histogram

# Anchoring metrics
anchor_submissions = Counter(
    "chainshield_anchor_submissions_total",
    "Anchoring submissions",
    ["kind", "mode", "outcome"],
)

batch_size = Histogram(
    "chainshield_anchor_batch_size",
    "Records per anchored batch",
    buckets=(1, 5, 10, 25, 50, 100, 250, 500),
)

pending_records = Gauge(
    "chainshield_anchor_pending_records",
    "Records waiting in the pending batch",
)

# Ledger metrics
ledger_call_duration = Histogram(
    "chainshield_ledger_call_duration_seconds",
    "Duration of ledger transactions",
    ["function"],
)

# Verification metrics
verifications = Counter(
    "chainshield_verifications_total",
    "Integrity verifications",
    ["hash_intact", "ledger_verified"],
)
