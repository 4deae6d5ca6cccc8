"""
Prometheus metrics for the batch invoicing service.
"""

from prometheus_client import Counter, Histogram, Gauge


# ── Batches ──────────────────────────────────────────────────
batches_created_total = Counter(
    "batches_created_total",
    "Total batches admitted by ingestion",
)

batches_rejected_total = Counter(
    "batches_rejected_total",
    "Total batches rejected by validation",
)

batches_finished_total = Counter(
    "batches_finished_total",
    "Total batches reaching a terminal status",
    ["status"],
)

# ── Analysis ─────────────────────────────────────────────────
items_analyzed_total = Counter(
    "items_analyzed_total",
    "Total batch items analyzed",
    ["outcome"],
)

item_analysis_duration_seconds = Histogram(
    "item_analysis_duration_seconds",
    "Download + extraction time per item",
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60],
)

# ── Folios ───────────────────────────────────────────────────
folios_allocated_total = Counter(
    "folios_allocated_total",
    "Total folios consumed",
    ["series"],
)

folio_allocation_failures_total = Counter(
    "folio_allocation_failures_total",
    "Folio allocations that could not be confirmed",
)

# ── Submission queue ─────────────────────────────────────────
submissions_total = Counter(
    "submissions_total",
    "Submission outcomes",
    ["tier", "result"],
)

submission_retries_total = Counter(
    "submission_retries_total",
    "Retryable provider failures that were re-enqueued",
)

submission_queue_depth = Gauge(
    "submission_queue_depth",
    "Submissions waiting for dispatch",
)

submissions_in_flight = Gauge(
    "submissions_in_flight",
    "Provider calls currently in flight",
)

# ── External API ─────────────────────────────────────────────
provider_latency_seconds = Histogram(
    "provider_latency_seconds",
    "Latency of invoicing provider calls",
    ["operation"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30],
)

# ── State store ──────────────────────────────────────────────
state_store_degraded = Gauge(
    "state_store_degraded",
    "1 while batch state is served from the in-process fallback",
)

state_store_fallbacks_total = Counter(
    "state_store_fallbacks_total",
    "Operations served by the in-process fallback",
    ["operation"],
)

# ── Packaging ────────────────────────────────────────────────
renditions_failed_total = Counter(
    "renditions_failed_total",
    "Renditions that could not be fetched for an archive",
    ["format"],
)
