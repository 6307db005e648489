"""Prometheus metrics for the cluster state store.

- Repository operation counts and latency, labelled by entity and verb
- Bulk-create per-item failures
- Snapshots recorded, labelled by resource type and change classification

Usage:
    from clusterstate.metrics import snapshots_recorded
    snapshots_recorded.labels(resource_type="vm", change_type="updated").inc()

Exposing these over HTTP is left to the embedding process
(``prometheus_client.start_http_server`` or an ASGI mount of ``generate_latest``).
"""
from __future__ import annotations

from prometheus_client import Counter, Histogram

repository_operations = Counter(
    "clusterstate_repository_operations_total",
    "Repository operations by entity, operation and outcome",
    ["entity", "operation", "status"],
)

repository_operation_duration = Histogram(
    "clusterstate_repository_operation_duration_seconds",
    "Latency of repository operations",
    ["entity", "operation"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

bulk_create_failures = Counter(
    "clusterstate_bulk_create_failures_total",
    "Items skipped by best-effort bulk creation",
    ["entity"],
)

snapshots_recorded = Counter(
    "clusterstate_snapshots_recorded_total",
    "State snapshots written, by resource type and change classification",
    ["resource_type", "change_type"],
)
