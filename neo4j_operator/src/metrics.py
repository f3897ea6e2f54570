from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class OperatorMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``.

    Restart counters carry ``namespace`` so a noisy cluster can be told apart
    from the rest; sharded reconcile outcomes carry the resulting ``phase``.
    """

    restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "neo4j_operator_config_restarts_total",
            "Total rolling restarts triggered by configuration changes",
            ["namespace"],
        )
    )
    restarts_debounced_total: Counter = field(
        default_factory=lambda: Counter(
            "neo4j_operator_config_restarts_debounced_total",
            "Total restart requests suppressed by the debounce window",
            ["namespace"],
        )
    )
    restart_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "neo4j_operator_config_restart_errors_total",
            "Total restart requests that failed against the API server",
            ["namespace"],
        )
    )
    config_changes_total: Counter = field(
        default_factory=lambda: Counter(
            "neo4j_operator_config_changes_total",
            "Total configuration changes classified, by restart decision",
            ["requires_restart"],
        )
    )
    sharded_reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "neo4j_operator_sharded_reconcile_total",
            "Total sharded database reconciliations, by resulting phase",
            ["phase"],
        )
    )
    sharded_reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "neo4j_operator_sharded_reconcile_duration_seconds",
            "Seconds spent in one sharded database reconciliation",
            buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
        )
    )
    status_conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "neo4j_operator_status_conflicts_total",
            "Total optimistic-concurrency conflicts retried on status writes",
        )
    )
    status_update_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "neo4j_operator_status_update_failures_total",
            "Total status writes abandoned after exhausting retries",
        )
    )
    refresh_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "neo4j_operator_status_refresh_failures_total",
            "Total best-effort shard status refreshes that failed",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "neo4j_operator_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "neo4j_operator_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "neo4j_operator_work_queue_depth",
            "Current number of resources waiting for reconciliation",
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "neo4j_operator_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "neo4j_operator_leader_state",
            "Whether this operator replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "neo4j_operator_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "neo4j_operator",
            "Build information for the operator",
        )
    )


METRICS = OperatorMetrics()
