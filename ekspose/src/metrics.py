from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Queue metrics carry a ``name`` label so several queues could share one
    registry; sync outcomes are split by ``result``.
    """

    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "ekspose_workqueue_depth",
            "Current number of items waiting in the work queue",
            ["name"],
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "ekspose_workqueue_adds_total",
            "Total items added to the work queue",
            ["name"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "ekspose_workqueue_retries_total",
            "Total rate-limited re-adds after failed processing",
            ["name"],
        )
    )
    queue_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "ekspose_workqueue_queue_duration_seconds",
            "Seconds an item waits in the queue before being picked up",
            ["name"],
            buckets=(0.001, 0.01, 0.1, 0.5, 1, 5, 10, 60, float("inf")),
        )
    )
    work_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "ekspose_workqueue_work_duration_seconds",
            "Seconds spent processing an item",
            ["name"],
            buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1, 5, 10, float("inf")),
        )
    )
    sync_total: Counter = field(
        default_factory=lambda: Counter(
            "ekspose_sync_total",
            "Total Deployment sync cycles by outcome",
            ["result"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "ekspose_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "ekspose_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "ekspose",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
