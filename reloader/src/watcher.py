from __future__ import annotations

import enum
import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from reloader.src.detector import ChangeDetector, SignalSink
from reloader.src.fingerprint import aggregate_snapshot, matches_source, object_identity
from reloader.src.metrics import METRICS
from reloader.src.models import DetectionMode, MonitoredSource, SourceKind
from reloader.src.store import ActiveConfigurationStore

WATCHED_EVENT_TYPES = frozenset({"ADDED", "MODIFIED", "DELETED"})


class WatchState(str, enum.Enum):
    CONNECTING = "connecting"
    WATCHING = "watching"
    DISCONNECTED = "disconnected"
    STOPPED = "stopped"


class EventChangeDetector(ChangeDetector):
    """Watches one kind of object in one namespace and signals on data changes.

    The detector keeps a local copy of every object that belongs to a
    monitored source, seeded by a full list and kept current by watch
    events.  Snapshots are assembled from that copy, so a change to one
    member of a label-selected source is compared against the whole group.

    State machine::

        CONNECTING --first event or clean close--> WATCHING
        WATCHING --stream closed by server--> WATCHING (resume from resourceVersion)
        WATCHING --410 Gone--> CONNECTING (re-list)
        WATCHING/CONNECTING --error--> DISCONNECTED --backoff--> CONNECTING (re-list)
        any --stop()--> STOPPED

    ``Watch.stream`` is lazy, so the detector only counts as connected once
    the stream has delivered an event or ended without an error.  A stream
    the server closes early is reopened no sooner than
    ``min_reconnect_interval_seconds`` after it was opened.

    Every reconnect after an error (and every ``410 Gone``) re-lists, which
    evaluates all sources and catches changes missed while disconnected.
    The detector never gives up: ``401``/``403`` are logged as RBAC problems
    and retried with the same capped exponential backoff as other errors.
    """

    mode = DetectionMode.EVENT

    def __init__(
        self,
        kind: SourceKind,
        namespace: str,
        sources: Iterable[MonitoredSource],
        core_api: CoreV1Api,
        store: ActiveConfigurationStore,
        sink: SignalSink,
        watch_timeout_seconds: int = 30,
        max_backoff_seconds: float = 30.0,
        min_reconnect_interval_seconds: float = 1.0,
        on_connect: Callable[[], None] | None = None,
        on_disconnect: Callable[[], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(
            kind=kind,
            sources=(source for source in sources if source.namespace == namespace),
            store=store,
            sink=sink,
            logger=logger,
        )
        self.namespace = namespace
        self.core_api = core_api
        self.watch_timeout_seconds = watch_timeout_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.min_reconnect_interval_seconds = min_reconnect_interval_seconds
        self.on_connect = on_connect
        self.on_disconnect = on_disconnect

        self.state = WatchState.CONNECTING
        self._objects: dict[str, Any] = {}
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def _list_function(self) -> Callable[..., Any]:
        if self.kind is SourceKind.SECRET:
            return self.core_api.list_namespaced_secret
        return self.core_api.list_namespaced_config_map

    def _set_state(self, state: WatchState) -> None:
        previous = self.state
        self.state = state
        if previous is state:
            return

        callback = None
        if state is WatchState.WATCHING:
            callback = self.on_connect
        elif previous is WatchState.WATCHING:
            callback = self.on_disconnect
        if callback is None:
            return
        try:
            callback()
        except Exception:
            self.logger.exception("Watch %s callback failed", state.value)

    def _sources_for(self, name: str, labels: dict[str, str]) -> list[MonitoredSource]:
        return [
            source
            for source in self.sources
            if matches_source(source, self.namespace, name, labels)
        ]

    def _evaluate_source(self, source: MonitoredSource) -> bool:
        try:
            snapshot = aggregate_snapshot(
                source, self._objects.values(), namespace=self.namespace
            )
        except ValueError as exc:
            self.logger.warning("Cannot materialize %s: %s", source, exc)
            return False
        return self.evaluate(snapshot)

    def relist(self) -> str | None:
        """List all objects, rebuild the local copy, evaluate every source.

        Returns the list's ``resourceVersion`` to resume the watch from.
        """
        listing = self._list_function()(namespace=self.namespace)
        resource_version = getattr(getattr(listing, "metadata", None), "resource_version", None)

        objects: dict[str, Any] = {}
        for obj in getattr(listing, "items", None) or []:
            _, name, labels = object_identity(obj)
            if name and self._sources_for(name, labels):
                objects[name] = obj
        self._objects = objects

        for source in self.sources:
            self._evaluate_source(source)
        return resource_version

    def handle_event(self, event_type: str, obj: Any) -> bool:
        """Apply one watch notification.  Returns True if a change was signalled.

        Notifications for objects outside every monitored source are
        discarded without touching any state.
        """
        if event_type not in WATCHED_EVENT_TYPES:
            return False

        namespace, name, labels = object_identity(obj)
        if not name or (namespace is not None and namespace != self.namespace):
            return False

        affected = self._sources_for(name, labels)
        previous = self._objects.get(name)
        if previous is not None:
            # Also re-evaluate groups the object was relabelled out of.
            for source in self._sources_for(name, object_identity(previous)[2]):
                if source not in affected:
                    affected.append(source)

        if not affected:
            self.logger.debug(
                "Ignoring %s event for non-monitored %s %s/%s",
                event_type,
                self.kind.value,
                self.namespace,
                name,
            )
            return False

        if event_type == "DELETED" or not self._sources_for(name, labels):
            self._objects.pop(name, None)
        else:
            self._objects[name] = obj

        emitted = False
        for source in affected:
            if self._evaluate_source(source):
                emitted = True
        return emitted

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        super().request_stop()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _backoff(self, backoff_seconds: float) -> float:
        self._set_state(WatchState.DISCONNECTED)
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        self._stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, self.max_backoff_seconds)

    def _pace_reconnect(self, stream_started: float) -> None:
        remaining = self.min_reconnect_interval_seconds - (time.monotonic() - stream_started)
        if remaining > 0 and not self._stop.is_set():
            self._stop.wait(timeout=remaining)

    def run_forever(self) -> None:
        """List-then-watch until stopped, reconnecting with backoff on errors."""
        self.logger.info(
            "Watching %d %s source(s) in namespace %s",
            len(self.sources),
            self.kind.value,
            self.namespace,
        )
        resource_version: str | None = None
        relist_needed = True
        backoff_seconds = 1.0
        stream_count = 0

        while not self._stop.is_set():
            if relist_needed:
                self._set_state(WatchState.CONNECTING)
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if relist_needed:
                    resource_version = self.relist()
                    relist_needed = False
                    self.ready.set()

                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind.value).inc()
                stream_count += 1
                stream_started = time.monotonic()
                stream = watcher.stream(
                    self._list_function(),
                    namespace=self.namespace,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                )

                for event in stream:
                    self._set_state(WatchState.WATCHING)
                    if self._stop.is_set():
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version

                    self.handle_event(str(event.get("type", "")), obj)

                self._set_state(WatchState.WATCHING)
                backoff_seconds = 1.0
                self._pace_reconnect(stream_started)
            except ApiException as exc:
                relist_needed = True
                # 410 Gone: our resourceVersion was compacted away; re-list immediately.
                if exc.status == 410:
                    self.logger.warning(
                        "Watch resource version expired for %s in %s, re-listing",
                        self.kind.value,
                        self.namespace,
                    )
                    continue

                METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API denied %s watch in %s (status=%s). "
                        "Check RBAC and service account permissions; retrying.",
                        self.kind.value,
                        self.namespace,
                        exc.status,
                    )
                else:
                    self.logger.exception(
                        "Kubernetes API watch error for %s in %s", self.kind.value, self.namespace
                    )
                backoff_seconds = self._backoff(backoff_seconds)
            except Exception:
                relist_needed = True
                METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
                self.logger.exception(
                    "Unexpected watch error for %s in %s", self.kind.value, self.namespace
                )
                backoff_seconds = self._backoff(backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self._set_state(WatchState.STOPPED)
        self.ready.clear()
