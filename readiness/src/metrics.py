from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the readiness controller on ``/metrics``.

    Work-queue metrics carry a ``kind`` label (``pod``, ``service``,
    ``endpoints``, ``ingress``) so a stuck ingress resolution can be told
    apart from pods waiting on load-balancer health.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_readiness_reconcile_total",
            "Total reconcile attempts by kind and result",
            ["kind", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "kube_readiness_reconcile_duration_seconds",
            "Seconds spent in a single reconcile",
            ["kind"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    retries_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_readiness_retries_total",
            "Total keys re-added to a work queue with backoff",
            ["kind"],
        )
    )
    dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_readiness_dropped_total",
            "Total keys forgotten after exceeding the retry ceiling",
            ["kind"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "kube_readiness_queue_depth",
            "Keys currently waiting in a work queue",
            ["kind"],
        )
    )
    condition_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_readiness_condition_transitions_total",
            "Total readiness condition status changes written to pods",
            ["status"],
        )
    )
    ambiguous_pod_matches_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_readiness_ambiguous_pod_matches_total",
            "Total pod lookups that matched more than one service",
        )
    )
    cloud_api_requests_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_readiness_cloud_api_requests_total",
            "Total cloud API requests by operation and result",
            ["operation", "result"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_readiness_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_readiness_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_readiness_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "kube_readiness_leader_state",
            "Whether this replica currently holds the leader lease (1=yes, 0=no)",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "kube_readiness",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
