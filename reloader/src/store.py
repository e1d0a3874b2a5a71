from __future__ import annotations

import threading

from reloader.src.models import ConfigSnapshot, MonitoredSource


class ActiveConfigurationStore:
    """Fingerprints of the configuration the live application currently reflects.

    Detectors read from it; only the reload coordinator writes to it, after a
    successful update strategy run.  Every access goes through one lock so a
    reader never observes a partially applied update.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._fingerprints: dict[MonitoredSource, str] = {}

    def fingerprint(self, source: MonitoredSource) -> str | None:
        with self._lock:
            return self._fingerprints.get(source)

    def update(self, snapshot: ConfigSnapshot) -> None:
        with self._lock:
            self._fingerprints[snapshot.source] = snapshot.fingerprint

    def seed(self, snapshot: ConfigSnapshot) -> bool:
        """Record *snapshot* as the baseline unless the source already has one."""
        return self.compare_and_set(snapshot.source, None, snapshot.fingerprint)

    def compare_and_set(
        self, source: MonitoredSource, expected: str | None, fingerprint: str
    ) -> bool:
        """Replace the active fingerprint if it still equals *expected*."""
        with self._lock:
            if self._fingerprints.get(source) != expected:
                return False
            self._fingerprints[source] = fingerprint
            return True

    def snapshot(self) -> dict[MonitoredSource, str]:
        with self._lock:
            return dict(self._fingerprints)
