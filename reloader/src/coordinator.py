from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from reloader.src.metrics import METRICS
from reloader.src.models import ChangeSignal, MonitoredSource
from reloader.src.store import ActiveConfigurationStore
from reloader.src.strategy import UpdateStrategy


class ReloadCoordinator:
    """Serializes update strategy executions triggered by change signals.

    :meth:`submit` never blocks: the strategy runs on a single background
    worker.  While an execution is in flight, newly arriving signals are
    folded into one pending reload (keeping the latest signal per source),
    so a storm of changes results in at most one more execution once the
    current one finishes.

    Key internal state:
        ``_running``
            True from the moment a reload is handed to the worker until the
            worker finds nothing pending.  Guarded by ``_idle``'s lock.
        ``_pending``
            The single pending reload, as the latest signal per source.
        ``_reload_lock``
            Held for the duration of each strategy action and the fingerprint
            commit that follows it; released on every exit path.
    """

    def __init__(
        self,
        strategy: UpdateStrategy,
        store: ActiveConfigurationStore,
        logger: logging.Logger | None = None,
    ) -> None:
        self.strategy = strategy
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

        self._idle = threading.Condition(threading.Lock())
        self._reload_lock = threading.Lock()
        self._running = False
        self._closed = False
        self._pending: dict[MonitoredSource, ChangeSignal] = {}
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="config-reload")

    @property
    def busy(self) -> bool:
        with self._idle:
            return self._running

    def submit(self, signal: ChangeSignal) -> None:
        """Hand a change signal over for execution and return immediately."""
        with self._idle:
            if self._closed:
                self.logger.debug("Ignoring change signal for %s after shutdown", signal.source)
                return

            if self._running:
                if self._pending:
                    METRICS.coalesced_total.inc()
                    self.logger.info(
                        "Reload already pending; coalescing change signal for %s",
                        signal.source,
                    )
                else:
                    self.logger.info(
                        "Reload in progress; deferring change signal for %s", signal.source
                    )
                self._pending[signal.source] = signal
                return

            self._running = True
            self._executor.submit(self._drain, {signal.source: signal})

    def _drain(self, batch: dict[MonitoredSource, ChangeSignal]) -> None:
        try:
            while batch:
                self._execute(batch)
                with self._idle:
                    if self._closed or not self._pending:
                        self._pending.clear()
                        self._running = False
                        self._idle.notify_all()
                        return
                    batch, self._pending = self._pending, {}
        except BaseException:
            with self._idle:
                self._running = False
                self._idle.notify_all()
            raise

    def _execute(self, batch: dict[MonitoredSource, ChangeSignal]) -> bool:
        sources = ", ".join(sorted(str(source) for source in batch))
        with self._reload_lock:
            if self._closed:
                return False
            METRICS.reload_in_progress.set(1)
            self.logger.info(
                "Applying configuration change with strategy %s for %s",
                self.strategy.name,
                sources,
            )
            try:
                self.strategy.apply()
            except Exception:
                METRICS.reloads_total.labels(strategy=self.strategy.name, outcome="failure").inc()
                self.logger.exception(
                    "Update strategy %s failed for %s; keeping current configuration",
                    self.strategy.name,
                    sources,
                )
                return False
            finally:
                METRICS.reload_in_progress.set(0)

            if self._closed:
                return False

            for signal in batch.values():
                if signal.snapshot is not None:
                    self.store.update(signal.snapshot)
            METRICS.reloads_total.labels(strategy=self.strategy.name, outcome="success").inc()
            return True

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no reload is running or pending.  Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._running, timeout=timeout)

    def stop(self) -> None:
        """Drop pending work and abandon any in-progress jitter wait."""
        with self._idle:
            self._closed = True
            self._pending.clear()
        self.strategy.cancel()
        self._executor.shutdown(wait=False)
