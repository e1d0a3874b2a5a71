from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from reloader.src.fingerprint import aggregate_snapshot
from reloader.src.models import ConfigSnapshot, MonitoredSource, SnapshotFetchError, SourceKind

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_core_api() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


class KubernetesSnapshotProvider:
    """Materializes monitored sources straight from the Kubernetes API.

    Named sources are read individually; selector sources are listed with
    the selector and merged.  Secret values are base64-decoded.  Every
    failure surfaces as :class:`SnapshotFetchError` so callers handle one
    exception type.
    """

    def __init__(self, core_api: CoreV1Api) -> None:
        self.core_api = core_api

    def _objects_for(self, source: MonitoredSource) -> list[Any]:
        if source.name is not None:
            read = (
                self.core_api.read_namespaced_secret
                if source.kind is SourceKind.SECRET
                else self.core_api.read_namespaced_config_map
            )
            return [read(name=source.name, namespace=source.namespace)]

        list_objects = (
            self.core_api.list_namespaced_secret
            if source.kind is SourceKind.SECRET
            else self.core_api.list_namespaced_config_map
        )
        kwargs: dict[str, Any] = {"namespace": source.namespace}
        if source.label_selector:
            kwargs["label_selector"] = source.label_selector
        listing = list_objects(**kwargs)
        return list(getattr(listing, "items", None) or [])

    def fetch(self, source: MonitoredSource) -> ConfigSnapshot:
        try:
            objects = self._objects_for(source)
            return aggregate_snapshot(source, objects, namespace=source.namespace)
        except ApiException as exc:
            if exc.status == 404:
                raise SnapshotFetchError(source, "object not found", missing=True) from exc
            if exc.status in {401, 403}:
                raise SnapshotFetchError(
                    source, f"access denied (status={exc.status}); check RBAC"
                ) from exc
            raise SnapshotFetchError(source, f"API error (status={exc.status})") from exc
        except ValueError as exc:
            raise SnapshotFetchError(source, str(exc)) from exc
