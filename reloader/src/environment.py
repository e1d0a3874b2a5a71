from __future__ import annotations

import logging
import os
import signal
import sys
import threading
from collections.abc import Iterable, Mapping

from reloader.src.models import ConfigSnapshot, MonitoredSource, SnapshotFetchError, SnapshotProvider
from reloader.src.strategy import UpdateEndpoints

LOGGER = logging.getLogger(__name__)


class LiveEnvironment:
    """The property view a running application reads its configuration from.

    Sources are layered in the order given: a key defined by a later source
    overrides the same key from an earlier one.  :meth:`refresh` re-fetches
    every source and swaps the whole view at once, so readers see either
    the old or the new configuration, never a mix.
    """

    def __init__(self, provider: SnapshotProvider, sources: Iterable[MonitoredSource]) -> None:
        self.provider = provider
        self.sources = tuple(sources)
        self._lock = threading.Lock()
        self._layers: dict[MonitoredSource, Mapping[str, str]] = {}
        self._merged: dict[str, str] = {}

    def _merge(self, layers: Mapping[MonitoredSource, Mapping[str, str]]) -> dict[str, str]:
        merged: dict[str, str] = {}
        for source in self.sources:
            merged.update(layers.get(source, {}))
        return merged

    def load(self) -> list[ConfigSnapshot]:
        """Initial load at startup.  Unreachable sources are logged and left empty."""
        snapshots: list[ConfigSnapshot] = []
        for source in self.sources:
            try:
                snapshots.append(self.provider.fetch(source))
            except SnapshotFetchError as exc:
                LOGGER.warning("Starting without %s: %s", source, exc.reason)

        layers = {snapshot.source: snapshot.data for snapshot in snapshots}
        with self._lock:
            self._layers = layers
            self._merged = self._merge(layers)
        return snapshots

    def refresh(self) -> set[str]:
        """Re-fetch every source and return the keys whose values changed.

        A source that no longer exists contributes no properties.  A source
        that cannot be fetched for any other reason keeps its previous layer;
        the remaining layers are still swapped in and the first such failure
        is raised afterwards so the caller does not treat the refresh as
        complete.
        """
        with self._lock:
            current = dict(self._layers)

        layers: dict[MonitoredSource, Mapping[str, str]] = {}
        failures: list[SnapshotFetchError] = []
        for source in self.sources:
            try:
                layers[source] = self.provider.fetch(source).data
            except SnapshotFetchError as exc:
                if exc.missing:
                    LOGGER.info("%s no longer exists; dropping its properties", source)
                    layers[source] = {}
                    continue
                LOGGER.warning("Keeping previous properties of %s: %s", source, exc.reason)
                layers[source] = current.get(source, {})
                failures.append(exc)

        merged = self._merge(layers)
        with self._lock:
            previous = self._merged
            self._layers = layers
            self._merged = merged
        if failures:
            raise failures[0]
        return {
            key
            for key in previous.keys() | merged.keys()
            if previous.get(key) != merged.get(key)
        }

    def get(self, key: str, default: str | None = None) -> str | None:
        with self._lock:
            return self._merged.get(key, default)

    def as_dict(self) -> dict[str, str]:
        with self._lock:
            return dict(self._merged)


def signal_shutdown() -> None:
    """Ask this process to terminate the same way the orchestrator would."""
    os.kill(os.getpid(), signal.SIGTERM)


def reexec_restart() -> None:
    """Replace the running process with a fresh copy of itself."""
    LOGGER.info("Re-executing %s", " ".join(sys.orig_argv))
    for handler in logging.root.handlers:
        handler.flush()
    os.execv(sys.executable, sys.orig_argv)


def process_endpoints(environment: LiveEnvironment) -> UpdateEndpoints:
    return UpdateEndpoints(
        refresh=environment.refresh,
        restart=reexec_restart,
        shutdown=signal_shutdown,
    )
