from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class OperatorMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``.

    Reconcile and watch series carry a ``kind`` label so a stuck Flow
    pipeline can be told apart from a failing Function rollout.
    """

    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "funktion_reconciles_total",
            "Total reconciliations processed by the worker",
            ["kind", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "funktion_reconcile_duration_seconds",
            "Seconds spent in a single reconciliation",
            ["kind"],
        )
    )
    retries_total: Counter = field(
        default_factory=lambda: Counter(
            "funktion_reconcile_retries_total",
            "Total reconciliations re-queued after a failure",
            ["kind"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "funktion_workqueue_depth",
            "Current number of keys waiting in the work queue",
        )
    )
    teardowns_total: Counter = field(
        default_factory=lambda: Counter(
            "funktion_teardowns_total",
            "Total derived objects torn down after their owner was deleted",
            ["kind"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "funktion_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "funktion_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "funktion_informer_resyncs_total",
            "Total full re-lists performed by informers",
            ["kind"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "funktion_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "funktion_leader_state",
            "Whether this operator replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "funktion_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "funktion_operator",
            "Build information for the operator",
        )
    )


METRICS = OperatorMetrics()
