from __future__ import annotations

import enum
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol


class SourceKind(str, enum.Enum):
    CONFIG_MAP = "configmap"
    SECRET = "secret"


class DetectionMode(str, enum.Enum):
    POLLING = "polling"
    EVENT = "event"


class ReloadStrategy(str, enum.Enum):
    REFRESH = "refresh"
    RESTART_CONTEXT = "restart_context"
    SHUTDOWN = "shutdown"


def parse_enum(enum_cls: type[enum.Enum], raw: str) -> enum.Enum:
    """Parse *raw* into *enum_cls* by value, case-insensitively, accepting ``-`` for ``_``."""
    normalized = raw.strip().lower().replace("-", "_")
    for member in enum_cls:
        if member.value == normalized:
            return member
    choices = ", ".join(member.value for member in enum_cls)
    raise ValueError(f"{raw!r} is not one of: {choices}")


class SnapshotFetchError(RuntimeError):
    """Raised by a snapshot provider when a source cannot be materialized.

    ``missing`` is set when the object does not exist, as opposed to an API
    or access failure; a missing source has no properties.
    """

    def __init__(self, source: MonitoredSource, reason: str, missing: bool = False) -> None:
        super().__init__(f"Failed to fetch {source}: {reason}")
        self.source = source
        self.reason = reason
        self.missing = missing


@dataclass(frozen=True)
class MonitoredSource:
    """One logical configuration object group the application reads from.

    A source is addressed either by object ``name`` or by a label
    ``selector``; exactly one of the two is set.  An empty selector matches
    every object of ``kind`` in ``namespace``.
    """

    kind: SourceKind
    namespace: str
    name: str | None = None
    selector: tuple[tuple[str, str], ...] | None = None

    def __post_init__(self) -> None:
        if not self.namespace:
            raise ValueError("namespace must be a non-empty string")
        if (self.name is None) == (self.selector is None):
            raise ValueError("exactly one of name or selector must be given")
        if self.name is not None and not self.name.strip():
            raise ValueError("name must be a non-empty string")

    @classmethod
    def named(cls, kind: SourceKind, namespace: str, name: str) -> MonitoredSource:
        return cls(kind=kind, namespace=namespace, name=name)

    @classmethod
    def selected(
        cls, kind: SourceKind, namespace: str, selector: Mapping[str, str]
    ) -> MonitoredSource:
        return cls(kind=kind, namespace=namespace, selector=tuple(sorted(selector.items())))

    @property
    def label_selector(self) -> str:
        """Render the selector in Kubernetes ``k=v,k2=v2`` form (empty for named sources)."""
        return ",".join(f"{k}={v}" for k, v in self.selector or ())

    def __str__(self) -> str:
        target = self.name if self.name is not None else f"[{self.label_selector}]"
        return f"{self.kind.value}:{self.namespace}/{target}"


@dataclass(frozen=True)
class ConfigSnapshot:
    """Materialized key/value view of a source plus its content fingerprint."""

    source: MonitoredSource
    data: Mapping[str, str]
    fingerprint: str

    @property
    def keys(self) -> frozenset[str]:
        return frozenset(self.data)


@dataclass(frozen=True)
class ChangeSignal:
    """Notification that ``source`` may have changed.

    ``snapshot`` carries the observed content so the coordinator can record it
    as active once the update strategy succeeds.
    """

    source: MonitoredSource
    detected_at: float = field(default_factory=time.time)
    snapshot: ConfigSnapshot | None = None


class SnapshotProvider(Protocol):
    def fetch(self, source: MonitoredSource) -> ConfigSnapshot:
        """Return the current snapshot or raise :class:`SnapshotFetchError`."""
        ...
