from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Work queue metrics carry a ``name`` label so several queues in one
    process stay distinguishable; sync metrics carry the outcome so
    operators can alert on error and conflict rates separately.
    """

    sync_total: Counter = field(
        default_factory=lambda: Counter(
            "inferencejob_controller_sync_total",
            "Total sync handler invocations by result",
            ["result"],
        )
    )
    sync_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "inferencejob_controller_sync_duration_seconds",
            "Seconds spent in a single sync handler invocation",
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    deployments_created_total: Counter = field(
        default_factory=lambda: Counter(
            "inferencejob_controller_deployments_created_total",
            "Total Deployments created for InferenceJobs",
        )
    )
    deployments_updated_total: Counter = field(
        default_factory=lambda: Counter(
            "inferencejob_controller_deployments_updated_total",
            "Total Deployment replica updates issued for InferenceJobs",
        )
    )
    conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "inferencejob_controller_conflicts_total",
            "Total syncs blocked by a Deployment not controlled by the InferenceJob",
        )
    )
    dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "inferencejob_controller_dropped_total",
            "Total work items dropped without retry",
            ["reason"],
        )
    )
    workqueue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "inferencejob_controller_workqueue_depth",
            "Current number of keys waiting in the work queue",
            ["name"],
        )
    )
    workqueue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "inferencejob_controller_workqueue_adds_total",
            "Total keys handed to the work queue",
            ["name"],
        )
    )
    workqueue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "inferencejob_controller_workqueue_retries_total",
            "Total rate limited re-adds scheduled after failed syncs",
            ["name"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "inferencejob_controller_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["informer"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "inferencejob_controller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["informer"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "inferencejob_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
