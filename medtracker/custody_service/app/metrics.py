"""Prometheus metrics for the custody service."""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter, Histogram

# Workflow commits --------------------------------------------------------------------------
CUSTODY_COMMITS_TOTAL: Final = Counter(
    "custody_commits_total",
    "Workflow commits by operation and outcome.",
    labelnames=("operation", "outcome"),
)

CUSTODY_COMMIT_LATENCY_SECONDS: Final = Histogram(
    "custody_commit_latency_seconds",
    "Time spent inside one workflow commit, including the database transaction.",
    labelnames=("operation",),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)

# Audit ledger ------------------------------------------------------------------------------
CUSTODY_AUDIT_EVENTS_TOTAL: Final = Counter(
    "custody_audit_events_total",
    "Audit events committed to the ledger.",
    labelnames=("event_type",),
)

# Dual control ------------------------------------------------------------------------------
CUSTODY_WITNESS_VERIFICATIONS_TOTAL: Final = Counter(
    "custody_witness_verifications_total",
    "Witness verification attempts by outcome.",
    labelnames=("outcome",),
)


def commit_outcome(exc: BaseException | None) -> str:
    """Return a bounded label value for the commit counter."""

    if exc is None:
        return "committed"
    code = getattr(exc, "code", None)
    if isinstance(code, str):
        return code
    return "error"
