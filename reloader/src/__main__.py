from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from reloader.src.config import env_int, load_settings
from reloader.src.environment import LiveEnvironment, process_endpoints
from reloader.src.health import start_health_server
from reloader.src.kube import KubernetesSnapshotProvider, build_core_api, load_kube_configuration
from reloader.src.metrics import METRICS
from reloader.src.reloader import ConfigReloader

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Reloader entrypoint: load settings, start detectors, and run until signalled."""
    configure_logging()
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    settings = load_settings()
    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    reloader: ConfigReloader | None = None
    if settings.enabled:
        load_kube_configuration()
        core_api = build_core_api()
        provider = KubernetesSnapshotProvider(core_api)
        environment = LiveEnvironment(provider, settings.sources)
        initial = environment.load()

        reloader = ConfigReloader(
            settings,
            provider=provider,
            endpoints=process_endpoints(environment),
            core_api=core_api,
        )
        health_server = start_health_server(ready_check=lambda: reloader.ready, port=health_port)
        reloader.start(initial=initial)
    else:
        logger.info("RELOAD_ENABLED is not set; serving health endpoints only")
        health_server = start_health_server(ready_check=lambda: True, port=health_port)

    while not shutdown_event.wait(timeout=1.0):
        pass

    if reloader is not None:
        reloader.stop()
    health_server.shutdown()
    logger.info("Reloader stopped")


if __name__ == "__main__":
    main()
