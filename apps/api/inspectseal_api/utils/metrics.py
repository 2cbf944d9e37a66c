"""Prometheus metrics."""

from prometheus_client import Counter, Histogram

# Sealing metrics
sealed_bundles = Counter(
    "inspectseal_sealed_bundles_total",
    "Total sealing attempts by outcome",
    ["export_type", "outcome"],
)

seal_duration = Histogram(
    "inspectseal_seal_duration_seconds",
    "Sealing pipeline duration",
    ["export_type"],
)

storage_upload_retries = Counter(
    "inspectseal_storage_upload_retries_total",
    "Archive upload retries after transient storage errors",
)

chain_conflicts = Counter(
    "inspectseal_chain_conflicts_total",
    "Ledger inserts rejected because another seal claimed the predecessor",
)

# Verification metrics
verifications = Counter(
    "inspectseal_verifications_total",
    "Bundle verifications by result reason",
    ["reason"],
)

# Rate limiter metrics
rate_limit_backend_error = Counter(
    "inspectseal_rate_limit_backend_error_total",
    "Rate limiter backend errors (requests allowed through)",
)
