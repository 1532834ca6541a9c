from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the manager on ``/metrics``.

    Reconcile metrics carry a ``controller`` label so the series line up with
    the names used by controller-runtime based operators.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_controller_reconcile_total",
            "Total reconciliations per controller and result",
            ["controller", "result"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_controller_reconcile_errors_total",
            "Total reconciliation errors per controller",
            ["controller"],
        )
    )
    reconcile_time_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "configmap_controller_reconcile_time_seconds",
            "Length of time per reconciliation per controller",
            ["controller"],
        )
    )
    restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_controller_deployment_restarts_total",
            "Total Deployment rolling restarts triggered by ConfigMap changes",
            ["namespace"],
        )
    )
    restart_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_controller_deployment_restart_errors_total",
            "Total failed restart batches",
            ["namespace"],
        )
    )
    events_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_controller_events_total",
            "ConfigMap events observed by the informer, by type and filter verdict",
            ["event", "accepted"],
        )
    )
    workqueue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "configmap_controller_workqueue_depth",
            "Current depth of the reconcile work queue",
        )
    )
    workqueue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_controller_workqueue_adds_total",
            "Total keys added to the reconcile work queue",
        )
    )
    workqueue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_controller_workqueue_retries_total",
            "Total rate-limited re-adds to the reconcile work queue",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_controller_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_controller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_controller_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "configmap_controller_leader_state",
            "Whether this replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "configmap_controller_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "configmap_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
