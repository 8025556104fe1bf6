"""
Prometheus metrics for the statement import and reconciliation service.
"""

from prometheus_client import Counter, Histogram, Gauge


# ── Import jobs ──────────────────────────────────────────────
import_jobs_created_total = Counter(
    "import_jobs_created_total",
    "Total import jobs created from uploads",
    ["file_format"],
)

import_jobs_finished_total = Counter(
    "import_jobs_finished_total",
    "Import jobs reaching a terminal state",
    ["status", "tier_used"],
)

duplicate_uploads_total = Counter(
    "duplicate_uploads_total",
    "Uploads rejected or overwritten because the checksum already exists",
    ["resolution"],
)

import_job_duration_seconds = Histogram(
    "import_job_duration_seconds",
    "Time to process an import job end-to-end",
    ["file_format"],
    buckets=[1, 5, 10, 30, 60, 120, 300, 600, 900],
)

# ── Page tiers ───────────────────────────────────────────────
pages_resolved_total = Counter(
    "pages_resolved_total",
    "Pages resolved by the extraction ladder",
    ["tier", "status"],
)

audit_failures_total = Counter(
    "audit_failures_total",
    "Mathematical auditor failures",
    ["reason"],
)

# ── Model providers ──────────────────────────────────────────
model_call_latency_seconds = Histogram(
    "model_call_latency_seconds",
    "Latency of structured-extraction model calls",
    ["engine_name"],
    buckets=[0.5, 1, 2, 5, 10, 30, 60, 90, 120],
)

model_call_errors_total = Counter(
    "model_call_errors_total",
    "Structured-extraction model call failures",
    ["engine_name", "error_code"],
)

# ── Ledger ───────────────────────────────────────────────────
statement_gaps_total = Counter(
    "statement_gaps_total",
    "Statements persisted with a sequence or balance gap",
)

dedup_outcomes_total = Counter(
    "dedup_outcomes_total",
    "Deduplication classification outcomes",
    ["source", "outcome"],
)

reconciliation_matches_total = Counter(
    "reconciliation_matches_total",
    "Transactions auto-matched to invoices",
)

# ── Worker ───────────────────────────────────────────────────
worker_jobs_active = Gauge(
    "worker_jobs_active",
    "Number of import jobs currently processing in this worker",
)
