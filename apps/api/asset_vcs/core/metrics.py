"""
Prometheus metrics for version control observability.
"""
from __future__ import annotations

from prometheus_client import Counter, Histogram, REGISTRY

asset_vcs_operations_total = Counter(
    'asset_vcs_operations_total',
    'Version control service operations',
    ['operation', 'status'],
    registry=REGISTRY
)

asset_vcs_commits_total = Counter(
    'asset_vcs_commits_total',
    'Versions committed to a branch',
    ['kind'],
    registry=REGISTRY
)

asset_vcs_merges_total = Counter(
    'asset_vcs_merges_total',
    'Merge attempts by strategy and outcome',
    ['strategy', 'status'],
    registry=REGISTRY
)

asset_vcs_conflicts_detected_total = Counter(
    'asset_vcs_conflicts_detected_total',
    'Conflicts detected between branches',
    ['type'],
    registry=REGISTRY
)

asset_vcs_cas_retries_total = Counter(
    'asset_vcs_cas_retries_total',
    'Branch head compare-and-swap retries',
    ['operation'],
    registry=REGISTRY
)

asset_vcs_workflow_transitions_total = Counter(
    'asset_vcs_workflow_transitions_total',
    'Approval workflow status transitions',
    ['status', 'trigger'],
    registry=REGISTRY
)

asset_vcs_diff_duration_seconds = Histogram(
    'asset_vcs_diff_duration_seconds',
    'Time taken to compute a structural diff',
    buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, float('inf')),
    registry=REGISTRY
)


def record_operation(operation: str, status: str = "success") -> None:
    asset_vcs_operations_total.labels(operation=operation, status=status).inc()
