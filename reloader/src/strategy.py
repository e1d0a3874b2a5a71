from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from reloader.src.config import ConfigError
from reloader.src.metrics import METRICS
from reloader.src.models import ReloadStrategy

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpdateEndpoints:
    """Application hooks an update strategy can drive.

    ``refresh`` may return the collection of property keys it changed, which
    is logged.  ``restart`` and ``shutdown`` may never return.
    """

    refresh: Callable[[], Iterable[str] | None] | None = None
    restart: Callable[[], None] | None = None
    shutdown: Callable[[], None] | None = None


class JitterDelay:
    """Uniform random delay in ``[0, max_wait_seconds)`` before a disruptive action.

    Replicas watching the same source see the same change at nearly the same
    instant; spreading their restarts avoids a correlated availability dip.

    :meth:`interrupt` cuts a wait in progress short and lets the action
    proceed; an interrupt sent while no wait is running has no effect.
    :meth:`cancel` cuts the wait short and tells the caller to abandon the
    action because the process is already terminating.
    """

    def __init__(self, max_wait_seconds: float, rng: random.Random | None = None) -> None:
        if max_wait_seconds < 0:
            raise ValueError("max_wait_seconds must be >= 0")
        self.max_wait_seconds = max_wait_seconds
        self._rng = rng or random.Random()  # noqa: S311
        self._wake = threading.Event()
        self._cancelled = threading.Event()

    def sample(self) -> float:
        if self.max_wait_seconds <= 0:
            return 0.0
        return self._rng.random() * self.max_wait_seconds

    def wait(self) -> bool:
        """Sleep a random delay.  Returns False if the action should be abandoned."""
        self._wake.clear()
        if self._cancelled.is_set():
            return False

        delay = self.sample()
        METRICS.jitter_delay_seconds.observe(delay)
        if delay <= 0:
            return True

        LOGGER.info("Waiting %.2fs before applying configuration change", delay)
        if self._wake.wait(timeout=delay):
            if not self._cancelled.is_set():
                LOGGER.info("Jitter wait interrupted; applying configuration change now")
        return not self._cancelled.is_set()

    def interrupt(self) -> None:
        self._wake.set()

    def cancel(self) -> None:
        self._cancelled.set()
        self._wake.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()


@dataclass(frozen=True)
class UpdateStrategy:
    """The single way this process applies a detected configuration change."""

    name: str
    action: Callable[[], None]
    jitter: JitterDelay | None = None

    def apply(self) -> None:
        self.action()

    def cancel(self) -> None:
        """Abandon any in-progress jitter wait; the pending action will not run."""
        if self.jitter is not None:
            self.jitter.cancel()


def build_update_strategy(
    strategy: ReloadStrategy,
    endpoints: UpdateEndpoints,
    max_wait_seconds: float,
    rng: random.Random | None = None,
) -> UpdateStrategy:
    """Select the update strategy once, failing fast on a missing collaborator.

    Raises :class:`ConfigError` at assembly time instead of deferring the
    failure to the first reload.
    """
    if strategy is ReloadStrategy.REFRESH:
        refresh = endpoints.refresh
        if refresh is None:
            raise ConfigError("Refresh strategy selected but no refresh endpoint is registered")

        def _refresh() -> None:
            changed = refresh()
            if changed is not None:
                keys = sorted(changed)
                LOGGER.info("Refreshed %d property key(s): %s", len(keys), ", ".join(keys))

        return UpdateStrategy(name=strategy.value, action=_refresh)

    if strategy is ReloadStrategy.RESTART_CONTEXT:
        restart = endpoints.restart
        if restart is None:
            raise ConfigError(
                "Restart endpoint is not enabled: the restart_context strategy "
                "requires a restart collaborator"
            )
        jitter = JitterDelay(max_wait_seconds, rng=rng)

        def _restart() -> None:
            if not jitter.wait():
                LOGGER.info("Shutdown in progress; abandoning context restart")
                return
            LOGGER.info("Restarting application context")
            restart()

        return UpdateStrategy(name=strategy.value, action=_restart, jitter=jitter)

    if strategy is ReloadStrategy.SHUTDOWN:
        shutdown = endpoints.shutdown
        if shutdown is None:
            raise ConfigError("Shutdown strategy selected but no shutdown endpoint is registered")
        jitter = JitterDelay(max_wait_seconds, rng=rng)

        def _shutdown() -> None:
            if not jitter.wait():
                LOGGER.info("Shutdown already in progress; skipping shutdown action")
                return
            LOGGER.info("Shutting down so the orchestrator can replace this process")
            shutdown()

        return UpdateStrategy(name=strategy.value, action=_shutdown, jitter=jitter)

    raise ConfigError(f"Unsupported configuration update strategy: {strategy}")
