from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from reloader.src.fingerprint import parse_selector
from reloader.src.models import (
    DetectionMode,
    MonitoredSource,
    ReloadStrategy,
    SourceKind,
    parse_enum,
)


class ConfigError(RuntimeError):
    """Raised when the reload configuration is invalid."""


@dataclass(frozen=True)
class ReloadSettings:
    """Immutable reload configuration loaded at startup.

    Attributes:
        enabled:         Master switch; nothing is watched when ``False``.
        strategy:        How a detected change is applied.
        modes:           Detection mode per monitored source kind.  Only kinds
                         with monitoring enabled appear here.
        sources:         Every monitored source, across kinds.
        period_seconds:  Fixed poll period for polling detectors.
        max_wait_for_restart_seconds: Upper bound of the restart/shutdown jitter.
    """

    enabled: bool
    strategy: ReloadStrategy
    modes: Mapping[SourceKind, DetectionMode]
    sources: tuple[MonitoredSource, ...]
    period_seconds: float = 15.0
    max_wait_for_restart_seconds: float = 2.0

    def sources_of(self, kind: SourceKind) -> tuple[MonitoredSource, ...]:
        return tuple(source for source in self.sources if source.kind is kind)


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(
    name: str,
    default: float,
    *,
    minimum: float | None = None,
    exclusive_minimum: bool = False,
    env: Mapping[str, str] | None = None,
) -> float:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc

    if minimum is not None:
        if exclusive_minimum and value <= minimum:
            raise ConfigError(f"{name} must be > {minimum}, got: {value}")
        if value < minimum:
            raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def parse_sources(
    raw: str, kind: SourceKind, default_namespace: str, variable: str = "sources"
) -> list[MonitoredSource]:
    """Parse ``;``-separated ``namespace/name`` or ``namespace/k=v,k2=v2`` entries.

    The namespace prefix is optional and falls back to *default_namespace*.
    """
    sources: list[MonitoredSource] = []
    for entry in raw.split(";"):
        entry = entry.strip()
        if not entry:
            continue
        namespace, separator, target = entry.partition("/")
        if not separator:
            namespace, target = default_namespace, entry
        namespace, target = namespace.strip(), target.strip()
        if not namespace or not target:
            raise ConfigError(f"{variable} entry {entry!r} must be 'namespace/name-or-selector'")

        if "=" in target:
            selector = parse_selector(target)
            if not selector:
                raise ConfigError(f"{variable} entry {entry!r} has an empty label selector")
            sources.append(MonitoredSource.selected(kind, namespace, selector))
        else:
            sources.append(MonitoredSource.named(kind, namespace, target))
    return sources


def _parse_mode(values: Mapping[str, str], name: str, default: DetectionMode) -> DetectionMode:
    raw = values.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return parse_enum(DetectionMode, raw)  # type: ignore[return-value]
    except ValueError as exc:
        raise ConfigError(f"{name}: {exc}") from exc


_KIND_VARIABLES = {
    SourceKind.CONFIG_MAP: (
        "RELOAD_MONITORING_CONFIG_MAPS",
        True,
        "RELOAD_CONFIG_MAP_MODE",
        "RELOAD_CONFIG_MAP_SOURCES",
        "RELOAD_CONFIG_MAP_NAMESPACES",
    ),
    SourceKind.SECRET: (
        "RELOAD_MONITORING_SECRETS",
        False,
        "RELOAD_SECRET_MODE",
        "RELOAD_SECRET_SOURCES",
        "RELOAD_SECRETS_NAMESPACES",
    ),
}


def load_settings(env: Mapping[str, str] | None = None) -> ReloadSettings:
    """Load reload settings from ``RELOAD_*`` environment variables.

    Raises :class:`ConfigError` on any invalid value, and when a monitored
    kind has no sources, so the process never starts half-configured.
    """
    values = env if env is not None else os.environ

    enabled = parse_bool(values.get("RELOAD_ENABLED"))

    raw_strategy = values.get("RELOAD_STRATEGY", ReloadStrategy.REFRESH.value)
    try:
        strategy = parse_enum(ReloadStrategy, raw_strategy)
    except ValueError as exc:
        raise ConfigError(f"Unsupported configuration update strategy: {exc}") from exc

    default_mode = _parse_mode(values, "RELOAD_MODE", DetectionMode.EVENT)
    default_namespace = values.get("RELOAD_NAMESPACE", "default").strip()
    if not default_namespace:
        raise ConfigError("RELOAD_NAMESPACE must be a non-empty string")

    modes: dict[SourceKind, DetectionMode] = {}
    sources: list[MonitoredSource] = []
    for kind, (monitor_var, monitor_default, mode_var, sources_var, ns_var) in _KIND_VARIABLES.items():
        if not parse_bool(values.get(monitor_var), default=monitor_default):
            continue
        modes[kind] = _parse_mode(values, mode_var, default_mode)

        kind_sources = parse_sources(
            values.get(sources_var, ""), kind, default_namespace, variable=sources_var
        )
        for namespace in values.get(ns_var, "").split(","):
            namespace = namespace.strip()
            if namespace:
                kind_sources.append(MonitoredSource.selected(kind, namespace, {}))

        if enabled and not kind_sources:
            raise ConfigError(
                f"{monitor_var} is enabled but neither {sources_var} nor {ns_var} is set"
            )
        sources.extend(dict.fromkeys(kind_sources))

    return ReloadSettings(
        enabled=enabled,
        strategy=strategy,  # type: ignore[arg-type]
        modes=modes,
        sources=tuple(sources),
        period_seconds=env_float(
            "RELOAD_PERIOD_SECONDS", 15.0, minimum=0.0, exclusive_minimum=True, env=values
        ),
        max_wait_for_restart_seconds=env_float(
            "RELOAD_MAX_WAIT_FOR_RESTART_SECONDS", 2.0, minimum=0.0, env=values
        ),
    )
