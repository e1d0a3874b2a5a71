from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Iterable, Mapping
from hashlib import sha256
from typing import Any

from reloader.src.models import ConfigSnapshot, MonitoredSource, SourceKind


def normalize_data(raw_data: Any) -> dict[str, str]:
    """Coerce object ``data`` into a stable ``dict[str, str]``.

    ``None`` values become empty strings and non-string keys are dropped so
    that downstream hashing is deterministic.
    """
    if not isinstance(raw_data, Mapping):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw_data.items()
        if isinstance(k, str)
    }


def decode_secret_data(raw_data: Any) -> dict[str, str]:
    """Decode base64 Secret ``data`` values into text.

    Values that are not valid base64 or not UTF-8 are rejected with
    ``ValueError`` rather than silently kept, since an undecodable secret
    would otherwise fingerprint differently from what the application reads.
    """
    decoded: dict[str, str] = {}
    for key, value in normalize_data(raw_data).items():
        try:
            decoded[key] = base64.b64decode(value, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise ValueError(f"secret key {key!r} is not valid base64 text") from exc
    return decoded


def hash_data(data: Mapping[str, str]) -> str:
    """Return a SHA-256 hex digest of the key/value content.

    Keys are sorted before serialization, so two mappings with identical
    content hash equally regardless of retrieval order.
    """
    stable_payload = json.dumps(dict(data), sort_keys=True, separators=(",", ":"))
    return sha256(stable_payload.encode("utf-8")).hexdigest()


def object_data(kind: SourceKind, obj: Any) -> dict[str, str]:
    """Extract the materialized key/value data of a ConfigMap or Secret object."""
    if kind is SourceKind.SECRET:
        data = decode_secret_data(getattr(obj, "data", None))
        data.update(normalize_data(getattr(obj, "string_data", None)))
        return data
    data = normalize_data(getattr(obj, "data", None))
    # binary_data stays base64; it only needs to change the fingerprint when it changes
    data.update(normalize_data(getattr(obj, "binary_data", None)))
    return data


def build_snapshot(source: MonitoredSource, data: Mapping[str, str]) -> ConfigSnapshot:
    ordered = {key: data[key] for key in sorted(data)}
    return ConfigSnapshot(source=source, data=ordered, fingerprint=hash_data(ordered))


def parse_selector(selector: str) -> dict[str, str]:
    """Parse a Kubernetes label selector string (``k=v,k2=v2``) into a dict."""
    result: dict[str, str] = {}
    for part in selector.split(","):
        part = part.strip()
        if "=" in part:
            key, value = part.split("=", 1)
            if key.strip():
                result[key.strip()] = value.strip()
    return result


def object_identity(obj: Any) -> tuple[str | None, str | None, dict[str, str]]:
    """Return ``(namespace, name, labels)`` for a Kubernetes object, tolerating gaps."""
    metadata = getattr(obj, "metadata", None)
    if metadata is None:
        return None, None, {}
    labels = getattr(metadata, "labels", None)
    return (
        getattr(metadata, "namespace", None),
        getattr(metadata, "name", None),
        dict(labels) if isinstance(labels, Mapping) else {},
    )


def matches_source(
    source: MonitoredSource,
    namespace: str | None,
    name: str | None,
    labels: Mapping[str, str],
) -> bool:
    """Return True if an object with this identity belongs to *source*."""
    if namespace is not None and namespace != source.namespace:
        return False
    if source.name is not None:
        return name == source.name
    return all(labels.get(k) == v for k, v in source.selector or ())


def aggregate_snapshot(
    source: MonitoredSource,
    objects: Iterable[Any],
    *,
    namespace: str | None = None,
) -> ConfigSnapshot:
    """Merge the data of every object belonging to *source* into one snapshot.

    Objects are merged in name order and later names win on key collision,
    so the result does not depend on the order the API returned them in.
    *namespace* is used for objects whose metadata omits it.
    """
    matching: list[tuple[str, Any]] = []
    for obj in objects:
        obj_namespace, name, labels = object_identity(obj)
        if not name:
            continue
        if not matches_source(source, obj_namespace or namespace, name, labels):
            continue
        matching.append((name, obj))

    merged: dict[str, str] = {}
    for _, obj in sorted(matching, key=lambda item: item[0]):
        merged.update(object_data(source.kind, obj))
    return build_snapshot(source, merged)


def empty_snapshot(source: MonitoredSource) -> ConfigSnapshot:
    return build_snapshot(source, {})


def changed_sources(
    left: Iterable[ConfigSnapshot], right: Iterable[ConfigSnapshot]
) -> set[MonitoredSource]:
    """Return the sources whose content differs between two snapshot collections.

    A source present on only one side counts as changed.
    """
    before = {snapshot.source: snapshot.fingerprint for snapshot in left}
    after = {snapshot.source: snapshot.fingerprint for snapshot in right}
    return {
        source
        for source in before.keys() | after.keys()
        if before.get(source) != after.get(source)
    }
