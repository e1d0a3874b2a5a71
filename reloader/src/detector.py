from __future__ import annotations

import abc
import enum
import logging
import threading
from collections.abc import Iterable
from typing import Protocol

from reloader.src.metrics import METRICS
from reloader.src.models import (
    ChangeSignal,
    ConfigSnapshot,
    DetectionMode,
    MonitoredSource,
    SourceKind,
)
from reloader.src.store import ActiveConfigurationStore


class DetectorVariant(enum.Enum):
    POLLING_CONFIG_MAP = (DetectionMode.POLLING, SourceKind.CONFIG_MAP)
    POLLING_SECRETS = (DetectionMode.POLLING, SourceKind.SECRET)
    EVENT_CONFIG_MAP = (DetectionMode.EVENT, SourceKind.CONFIG_MAP)
    EVENT_SECRETS = (DetectionMode.EVENT, SourceKind.SECRET)

    @classmethod
    def of(cls, mode: DetectionMode, kind: SourceKind) -> DetectorVariant:
        return cls((mode, kind))


class SignalSink(Protocol):
    def submit(self, signal: ChangeSignal) -> None: ...


class ChangeDetector(abc.ABC):
    """Background task that watches one kind of source and emits change signals.

    Subclasses implement :meth:`run_forever`, which must keep running until
    :meth:`stop` is called; transient failures are handled inside it.

    A snapshot is signalled when its fingerprint differs from the active one.
    The same content is signalled at most once: if the reload for it fails,
    the application keeps its old configuration until the content changes
    again.  A source with no active baseline is recorded silently.
    """

    mode: DetectionMode

    def __init__(
        self,
        kind: SourceKind,
        sources: Iterable[MonitoredSource],
        store: ActiveConfigurationStore,
        sink: SignalSink,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.sources = tuple(source for source in sources if source.kind is kind)
        self.store = store
        self.sink = sink
        self.logger = logger or logging.getLogger(type(self).__module__)

        self.ready = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._signalled: dict[MonitoredSource, str] = {}

    @property
    def variant(self) -> DetectorVariant:
        return DetectorVariant.of(self.mode, self.kind)

    @abc.abstractmethod
    def run_forever(self) -> None:
        """Detection loop; returns only after a stop was requested."""

    def evaluate(self, snapshot: ConfigSnapshot) -> bool:
        """Compare *snapshot* with the active configuration; signal on difference."""
        source = snapshot.source
        active = self.store.fingerprint(source)
        if active is None:
            if self.store.seed(snapshot):
                self.logger.info("Recorded baseline for %s with no prior fingerprint", source)
            return False

        if snapshot.fingerprint == active:
            self._signalled.pop(source, None)
            return False

        if self._signalled.get(source) == snapshot.fingerprint:
            self.logger.debug("Change in %s already signalled; ignoring", source)
            return False

        self._signalled[source] = snapshot.fingerprint
        METRICS.signals_total.labels(kind=self.kind.value).inc()
        self.logger.info(
            "Detected configuration change in %s (fingerprint %s -> %s)",
            source,
            active[:12],
            snapshot.fingerprint[:12],
        )
        self.sink.submit(ChangeSignal(source=source, snapshot=snapshot))
        return True

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run_guarded,
            name=f"{self.variant.name.lower()}-detector",
            daemon=True,
        )
        self._thread.start()

    def _run_guarded(self) -> None:
        try:
            self.run_forever()
        except Exception:
            self.logger.exception("%s detector crashed", self.variant.name)
        finally:
            self.ready.clear()

    def request_stop(self) -> None:
        """Request a cooperative stop without waiting for the loop to exit."""
        self._stop.set()

    def stop(self, timeout: float | None = None) -> None:
        self.request_stop()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                self.logger.warning(
                    "%s detector did not stop within %ss", self.variant.name, timeout
                )
            else:
                self._thread = None
