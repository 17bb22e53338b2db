from __future__ import annotations

import threading
import time

import pytest

from conftest import FakeFactory, wait_for
from sage_bridge.errors import PoolClosedError, PoolExhaustedError, SessionStartError
from sage_bridge.execution.config import PoolSettings, default_pool_settings
from sage_bridge.execution.pool import SessionLease, SessionPool, should_rotate
from sage_bridge.execution.types import SessionState


def _pool(factory: FakeFactory, **overrides: float) -> SessionPool:
    options = {"pool_size": 1, "acquire_timeout": 2.0, "shutdown_grace": 0.5}
    options.update(overrides)
    return SessionPool(factory, PoolSettings(**options))


def test_default_pool_settings_are_bounded(monkeypatch) -> None:
    monkeypatch.setattr("os.cpu_count", lambda: 16)
    settings = default_pool_settings(30)
    assert settings.pool_size == 4
    assert settings.acquire_timeout == 32

    monkeypatch.setattr("os.cpu_count", lambda: None)
    assert default_pool_settings(0.5).pool_size == 1
    assert default_pool_settings(0.5).acquire_timeout == 3


def test_pool_settings_reject_invalid_values() -> None:
    with pytest.raises(ValueError):
        PoolSettings(pool_size=0, acquire_timeout=1)
    with pytest.raises(ValueError):
        PoolSettings(pool_size=1, acquire_timeout=0)


def test_should_rotate_by_run_count_and_ttl() -> None:
    settings = PoolSettings(pool_size=1, acquire_timeout=1, max_runs=3, ttl_seconds=60)
    assert should_rotate(SessionLease("s", 100.0, 100.0, 3), settings, now=101.0) is True
    assert should_rotate(SessionLease("s", 100.0, 100.0, 1), settings, now=170.0) is True
    assert should_rotate(SessionLease("s", 100.0, 100.0, 1), settings, now=101.0) is False


def test_should_rotate_disabled_by_zero_limits() -> None:
    settings = PoolSettings(pool_size=1, acquire_timeout=1)
    assert should_rotate(SessionLease("s", 0.0, 0.0, 10_000), settings, now=1e9) is False


def test_start_fills_every_slot(factory: FakeFactory) -> None:
    pool = _pool(factory, pool_size=3)
    pool.start()
    status = pool.status()
    assert status.size == 3
    assert status.idle == 3
    assert status.busy == 0
    assert len(factory.created) == 3
    pool.shutdown()


def test_start_tolerates_partial_failure(factory: FakeFactory) -> None:
    factory.fail_next = 1
    pool = _pool(factory, pool_size=2)
    pool.start()
    assert pool.status().idle == 1

    # The empty slot is filled lazily once the idle session is held.
    first = pool.acquire()
    second = pool.acquire()
    assert first is not second
    assert second.state is SessionState.IDLE
    pool.release(first)
    pool.release(second)
    pool.shutdown()


def test_start_raises_when_no_session_starts(factory: FakeFactory) -> None:
    factory.fail_next = 2
    pool = _pool(factory, pool_size=2)
    with pytest.raises(SessionStartError, match="Could not start any engine session"):
        pool.start()


def test_acquire_gives_exclusive_access(factory: FakeFactory) -> None:
    pool = _pool(factory, acquire_timeout=0.1)
    pool.start()
    session = pool.acquire()
    assert pool.status().busy == 1
    with pytest.raises(PoolExhaustedError, match="No engine session available after 0.1s"):
        pool.acquire()
    pool.release(session)
    assert pool.status().idle == 1
    pool.shutdown()


def test_waiters_are_served_in_arrival_order(factory: FakeFactory) -> None:
    pool = _pool(factory, acquire_timeout=5.0)
    pool.start()
    held = pool.acquire()
    order: list[str] = []

    def worker(name: str) -> None:
        session = pool.acquire()
        order.append(name)
        pool.release(session)

    first = threading.Thread(target=worker, args=("first",))
    first.start()
    assert wait_for(lambda: pool.status().waiting == 1)
    second = threading.Thread(target=worker, args=("second",))
    second.start()
    assert wait_for(lambda: pool.status().waiting == 2)

    pool.release(held)
    first.join(timeout=5)
    second.join(timeout=5)
    assert order == ["first", "second"]
    pool.shutdown()


def test_single_session_pool_serializes_callers(factory: FakeFactory) -> None:
    pool = _pool(factory, acquire_timeout=10.0)
    pool.start()

    def worker() -> None:
        with pool.lease() as session:
            session.submit("sleep:0.02", timeout=5)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(factory.created) == 1
    assert factory.created[0].max_active == 1
    assert factory.created[0].submissions == ["sleep:0.02"] * 6
    pool.shutdown()


def test_failed_session_is_replaced(factory: FakeFactory) -> None:
    pool = _pool(factory)
    pool.start()
    session = pool.acquire()
    session.mark_failed()
    pool.release(session)

    replacement = pool.acquire()
    assert replacement is not session
    assert replacement.state is SessionState.IDLE
    assert factory.created[0].terminated == 1
    pool.release(replacement)
    pool.shutdown()


def test_session_left_busy_is_not_reused(factory: FakeFactory) -> None:
    pool = _pool(factory)
    pool.start()
    session = pool.acquire()
    session._state = SessionState.BUSY
    pool.release(session)

    assert session.state is SessionState.FAILED
    replacement = pool.acquire()
    assert replacement is not session
    pool.release(replacement)
    pool.shutdown()


def test_dead_idle_session_is_retired_on_acquire(factory: FakeFactory) -> None:
    pool = _pool(factory)
    pool.start()
    factory.created[0].alive = False

    session = pool.acquire()
    assert session is not factory.created[0]
    assert factory.created[0].state is SessionState.TERMINATED
    pool.release(session)
    pool.shutdown()


def test_sessions_rotate_after_max_runs(factory: FakeFactory) -> None:
    pool = _pool(factory, max_runs=2)
    pool.start()
    seen = []
    for _ in range(3):
        with pool.lease() as session:
            seen.append(session)
    assert seen[0] is seen[1]
    assert seen[2] is not seen[0]
    pool.shutdown()


def test_release_of_unknown_session_terminates_it(factory: FakeFactory) -> None:
    pool = _pool(factory)
    stray = factory()
    stray.start()
    pool.release(stray)
    assert stray.state is SessionState.TERMINATED


def test_shutdown_wakes_waiters_and_terminates_sessions(factory: FakeFactory) -> None:
    pool = _pool(factory, acquire_timeout=10.0, shutdown_grace=0.2)
    pool.start()
    held = pool.acquire()
    errors: list[Exception] = []

    def waiter() -> None:
        try:
            pool.acquire()
        except Exception as exc:
            errors.append(exc)

    thread = threading.Thread(target=waiter)
    thread.start()
    assert wait_for(lambda: pool.status().waiting == 1)

    started = time.monotonic()
    pool.shutdown()
    thread.join(timeout=5)

    assert isinstance(errors[0], PoolClosedError)
    assert time.monotonic() - started < 5
    assert held.state is SessionState.TERMINATED
    assert pool.status().closed is True
    with pytest.raises(PoolClosedError):
        pool.acquire()


def test_shutdown_is_idempotent(factory: FakeFactory) -> None:
    pool = _pool(factory)
    pool.start()
    pool.shutdown()
    pool.shutdown()
    assert factory.created[0].terminated == 1
