from __future__ import annotations

import random
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from reloader.src.config import ConfigError
from reloader.src.models import ReloadStrategy
from reloader.src.strategy import JitterDelay, UpdateEndpoints, build_update_strategy


def test_refresh_strategy_invokes_refresh_without_delay() -> None:
    refresh = MagicMock(return_value={"b", "a"})
    strategy = build_update_strategy(
        ReloadStrategy.REFRESH, UpdateEndpoints(refresh=refresh), max_wait_seconds=30
    )

    started = time.monotonic()
    strategy.apply()

    refresh.assert_called_once_with()
    assert strategy.name == "refresh"
    assert strategy.jitter is None
    assert time.monotonic() - started < 1


def test_restart_strategy_without_restart_endpoint_fails_fast() -> None:
    with pytest.raises(ConfigError, match="Restart endpoint is not enabled"):
        build_update_strategy(
            ReloadStrategy.RESTART_CONTEXT,
            UpdateEndpoints(refresh=MagicMock(), shutdown=MagicMock()),
            max_wait_seconds=2,
        )


@pytest.mark.parametrize(
    ("strategy", "endpoints"),
    [
        (ReloadStrategy.REFRESH, UpdateEndpoints(restart=MagicMock())),
        (ReloadStrategy.SHUTDOWN, UpdateEndpoints(refresh=MagicMock())),
    ],
)
def test_missing_endpoint_is_configuration_error(
    strategy: ReloadStrategy, endpoints: UpdateEndpoints
) -> None:
    with pytest.raises(ConfigError):
        build_update_strategy(strategy, endpoints, max_wait_seconds=0)


@pytest.mark.parametrize(
    ("strategy", "endpoint"),
    [(ReloadStrategy.RESTART_CONTEXT, "restart"), (ReloadStrategy.SHUTDOWN, "shutdown")],
)
def test_zero_max_wait_runs_action_without_waiting(
    strategy: ReloadStrategy, endpoint: str
) -> None:
    action = MagicMock()
    built = build_update_strategy(
        strategy, UpdateEndpoints(**{endpoint: action}), max_wait_seconds=0
    )

    with patch("reloader.src.strategy.threading.Event.wait") as mock_wait:
        started = time.monotonic()
        built.apply()
        elapsed = time.monotonic() - started

    action.assert_called_once_with()
    mock_wait.assert_not_called()
    assert elapsed < 0.05


def test_restart_waits_sampled_jitter_before_restarting() -> None:
    calls: list[str] = []
    waits: list[float] = []
    rng = MagicMock()
    rng.random.return_value = 0.25

    strategy = build_update_strategy(
        ReloadStrategy.RESTART_CONTEXT,
        UpdateEndpoints(restart=lambda: calls.append("restart")),
        max_wait_seconds=8,
        rng=rng,
    )

    def fake_wait(timeout: float | None = None) -> bool:
        waits.append(timeout or 0.0)
        calls.append("wait")
        return False

    with patch("reloader.src.strategy.threading.Event.wait", side_effect=fake_wait):
        strategy.apply()

    assert waits == [pytest.approx(2.0)]
    assert calls == ["wait", "restart"]


def test_jitter_samples_are_uniform_over_range() -> None:
    jitter = JitterDelay(15.0, rng=random.Random(42))
    samples = [jitter.sample() for _ in range(20000)]

    assert all(0.0 <= sample < 15.0 for sample in samples)
    buckets = [0] * 5
    for sample in samples:
        buckets[int(sample // 3.0)] += 1
    for count in buckets:
        assert count == pytest.approx(4000, rel=0.08)
    assert sum(samples) / len(samples) == pytest.approx(7.5, rel=0.03)


def test_two_replicas_pick_different_restart_delays() -> None:
    first = JitterDelay(15.0, rng=random.Random(1))
    second = JitterDelay(15.0, rng=random.Random(2))

    assert first.sample() != second.sample()


def test_jitter_rejects_negative_bound() -> None:
    with pytest.raises(ValueError):
        JitterDelay(-1)


def test_interrupted_wait_proceeds_with_action() -> None:
    restart = MagicMock()
    strategy = build_update_strategy(
        ReloadStrategy.RESTART_CONTEXT,
        UpdateEndpoints(restart=restart),
        max_wait_seconds=60,
        rng=MagicMock(random=MagicMock(return_value=0.99)),
    )
    assert strategy.jitter is not None

    worker = threading.Thread(target=strategy.apply)
    started = time.monotonic()
    worker.start()
    time.sleep(0.05)
    strategy.jitter.interrupt()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert time.monotonic() - started < 5
    restart.assert_called_once_with()


def test_interrupt_with_no_wait_in_progress_does_not_skip_next_delay() -> None:
    jitter = JitterDelay(0.3, rng=MagicMock(random=MagicMock(return_value=0.99)))

    jitter.interrupt()
    started = time.monotonic()
    proceed = jitter.wait()

    assert proceed is True
    assert time.monotonic() - started >= 0.25


def test_cancelled_wait_abandons_action() -> None:
    shutdown = MagicMock()
    strategy = build_update_strategy(
        ReloadStrategy.SHUTDOWN,
        UpdateEndpoints(shutdown=shutdown),
        max_wait_seconds=60,
        rng=MagicMock(random=MagicMock(return_value=0.99)),
    )

    worker = threading.Thread(target=strategy.apply)
    worker.start()
    time.sleep(0.05)
    strategy.cancel()
    worker.join(timeout=5)

    assert not worker.is_alive()
    shutdown.assert_not_called()


def test_cancel_before_apply_skips_action() -> None:
    restart = MagicMock()
    strategy = build_update_strategy(
        ReloadStrategy.RESTART_CONTEXT, UpdateEndpoints(restart=restart), max_wait_seconds=0
    )

    strategy.cancel()
    strategy.apply()

    restart.assert_not_called()


def test_refresh_failure_propagates_to_caller() -> None:
    strategy = build_update_strategy(
        ReloadStrategy.REFRESH,
        UpdateEndpoints(refresh=MagicMock(side_effect=RuntimeError("boom"))),
        max_wait_seconds=0,
    )

    with pytest.raises(RuntimeError, match="boom"):
        strategy.apply()
