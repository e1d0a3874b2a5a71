from __future__ import annotations

import logging
import math
import time
from collections.abc import Iterable

from reloader.src.detector import ChangeDetector, SignalSink
from reloader.src.fingerprint import empty_snapshot
from reloader.src.metrics import METRICS
from reloader.src.models import (
    DetectionMode,
    MonitoredSource,
    SnapshotFetchError,
    SnapshotProvider,
    SourceKind,
)
from reloader.src.store import ActiveConfigurationStore


class PollingChangeDetector(ChangeDetector):
    """Re-fetches every source of one kind on a fixed schedule.

    Ticks are due every ``period_seconds`` starting one period after start.
    A tick that overruns its period does not queue the ticks it missed: they
    are skipped and the schedule resumes at the next due slot.  A fetch
    failure only skips that source for the current tick.
    """

    mode = DetectionMode.POLLING

    def __init__(
        self,
        kind: SourceKind,
        sources: Iterable[MonitoredSource],
        provider: SnapshotProvider,
        store: ActiveConfigurationStore,
        sink: SignalSink,
        period_seconds: float = 15.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if period_seconds <= 0:
            raise ValueError("period_seconds must be > 0")
        super().__init__(kind=kind, sources=sources, store=store, sink=sink, logger=logger)
        self.provider = provider
        self.period_seconds = period_seconds

    def tick(self) -> int:
        """Poll every source once and return the number of signals emitted."""
        emitted = 0
        for source in self.sources:
            if self._stop.is_set():
                break
            try:
                snapshot = self.provider.fetch(source)
            except SnapshotFetchError as exc:
                if not exc.missing:
                    METRICS.poll_errors_total.labels(kind=self.kind.value).inc()
                    self.logger.warning("Skipping %s this tick: %s", source, exc.reason)
                    continue
                snapshot = empty_snapshot(source)
            except Exception:
                METRICS.poll_errors_total.labels(kind=self.kind.value).inc()
                self.logger.exception("Unexpected error polling %s", source)
                continue

            if self.evaluate(snapshot):
                emitted += 1
        return emitted

    def run_forever(self) -> None:
        self.logger.info(
            "Polling %d %s source(s) every %.1fs",
            len(self.sources),
            self.kind.value,
            self.period_seconds,
        )
        self.ready.set()
        next_due = time.monotonic() + self.period_seconds
        while not self._stop.wait(timeout=max(0.0, next_due - time.monotonic())):
            self.tick()
            next_due += self.period_seconds

            now = time.monotonic()
            if now >= next_due:
                missed = math.floor((now - next_due) / self.period_seconds) + 1
                next_due += missed * self.period_seconds
                METRICS.skipped_ticks_total.labels(kind=self.kind.value).inc(missed)
                self.logger.warning(
                    "Poll tick for %s overran its %.1fs period; skipping %d tick(s)",
                    self.kind.value,
                    self.period_seconds,
                    missed,
                )
        self.ready.clear()
