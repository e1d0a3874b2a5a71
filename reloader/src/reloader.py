from __future__ import annotations

import logging
import random
from collections.abc import Iterable
from typing import Any

from reloader.src.config import ConfigError, ReloadSettings
from reloader.src.coordinator import ReloadCoordinator
from reloader.src.detector import ChangeDetector
from reloader.src.fingerprint import empty_snapshot
from reloader.src.models import (
    ConfigSnapshot,
    DetectionMode,
    MonitoredSource,
    SnapshotFetchError,
    SnapshotProvider,
)
from reloader.src.polling import PollingChangeDetector
from reloader.src.store import ActiveConfigurationStore
from reloader.src.strategy import UpdateEndpoints, build_update_strategy
from reloader.src.watcher import EventChangeDetector

LOGGER = logging.getLogger(__name__)


def build_detectors(
    settings: ReloadSettings,
    provider: SnapshotProvider,
    store: ActiveConfigurationStore,
    coordinator: ReloadCoordinator,
    core_api: Any = None,
) -> list[ChangeDetector]:
    """Build one detector per monitored kind, or one per namespace in event mode.

    The detection mode configured for each kind picks the variant.
    """
    detectors: list[ChangeDetector] = []
    for kind, mode in settings.modes.items():
        sources = settings.sources_of(kind)
        if not sources:
            continue

        if mode is DetectionMode.POLLING:
            detectors.append(
                PollingChangeDetector(
                    kind=kind,
                    sources=sources,
                    provider=provider,
                    store=store,
                    sink=coordinator,
                    period_seconds=settings.period_seconds,
                )
            )
            continue

        if core_api is None:
            raise ConfigError(
                f"Event detection for {kind.value} sources requires a Kubernetes API client"
            )
        for namespace in dict.fromkeys(source.namespace for source in sources):
            detectors.append(
                EventChangeDetector(
                    kind=kind,
                    namespace=namespace,
                    sources=sources,
                    core_api=core_api,
                    store=store,
                    sink=coordinator,
                )
            )
    return detectors


class ConfigReloader:
    """Assembles detectors, coordinator and update strategy, and runs them.

    Construction validates everything that can be validated up front: an
    update strategy whose collaborator is missing raises :class:`ConfigError`
    here, before any detector exists.
    """

    def __init__(
        self,
        settings: ReloadSettings,
        provider: SnapshotProvider,
        endpoints: UpdateEndpoints,
        core_api: Any = None,
        store: ActiveConfigurationStore | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.provider = provider
        self.store = store or ActiveConfigurationStore()
        self.strategy = build_update_strategy(
            settings.strategy,
            endpoints,
            settings.max_wait_for_restart_seconds,
            rng=rng,
        )
        self.coordinator = ReloadCoordinator(self.strategy, self.store)
        self.detectors: list[ChangeDetector] = []
        if settings.enabled:
            self.detectors = build_detectors(
                settings,
                provider=provider,
                store=self.store,
                coordinator=self.coordinator,
                core_api=core_api,
            )

    @property
    def ready(self) -> bool:
        return all(detector.ready.is_set() for detector in self.detectors)

    def seed(self, initial: Iterable[ConfigSnapshot] | None = None) -> None:
        """Record the configuration the application started with.

        Uses *initial* when the host already loaded it, otherwise fetches each
        source.  A source the application started without gets an empty
        baseline, so its first successful detection is signalled and applied.
        """
        snapshots: list[ConfigSnapshot] = []
        if initial is not None:
            snapshots.extend(initial)
        else:
            for source in self.settings.sources:
                try:
                    snapshots.append(self.provider.fetch(source))
                except SnapshotFetchError as exc:
                    LOGGER.warning("No startup configuration from %s: %s", source, exc.reason)

        seeded: set[MonitoredSource] = set()
        for snapshot in snapshots:
            self.store.seed(snapshot)
            seeded.add(snapshot.source)
        for source in self.settings.sources:
            if source not in seeded:
                self.store.seed(empty_snapshot(source))

    def start(self, initial: Iterable[ConfigSnapshot] | None = None) -> None:
        if not self.settings.enabled:
            LOGGER.info("Configuration reload is disabled")
            return

        self.seed(initial)
        for detector in self.detectors:
            detector.start()
        LOGGER.info(
            "Configuration reload started: strategy=%s detectors=%s",
            self.strategy.name,
            ", ".join(detector.variant.name for detector in self.detectors),
        )

    def stop(self, timeout: float | None = 10.0) -> None:
        """Stop every detector and abandon in-flight or pending reloads."""
        for detector in self.detectors:
            detector.request_stop()
        self.coordinator.stop()
        for detector in self.detectors:
            detector.stop(timeout=timeout)
        LOGGER.info("Configuration reload stopped")
