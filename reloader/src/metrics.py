from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ReloaderMetrics:
    """Prometheus metrics exported by the reloader on ``/metrics``.

    Detection counters carry a ``kind`` label (``configmap`` or ``secret``) so
    operators can tell polling noise on secrets apart from config map churn.
    """

    signals_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_signals_total",
            "Total change signals emitted by detectors",
            ["kind"],
        )
    )
    coalesced_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_coalesced_total",
            "Total change signals folded into an already pending reload",
        )
    )
    reloads_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_executions_total",
            "Total update strategy executions",
            ["strategy", "outcome"],
        )
    )
    reload_in_progress: Gauge = field(
        default_factory=lambda: Gauge(
            "config_reload_in_progress",
            "Whether an update strategy action is currently executing (1=yes, 0=no)",
        )
    )
    jitter_delay_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "config_reload_jitter_delay_seconds",
            "Randomized delay applied before restart or shutdown",
            buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
        )
    )
    poll_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_poll_errors_total",
            "Total snapshot fetch failures during polling",
            ["kind"],
        )
    )
    skipped_ticks_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_skipped_ticks_total",
            "Total poll ticks skipped because the previous tick overran its period",
            ["kind"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "config_reload",
            "Build information for the reloader",
        )
    )


METRICS = ReloaderMetrics()
