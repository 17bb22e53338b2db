from __future__ import annotations

import sys

import pytest

from conftest import wait_for
from sage_bridge import Bridge, BridgeSettings, ProcessSession
from sage_bridge.errors import EvaluationTimeoutError, SessionCrashError, SessionIOError, SessionStartError
from sage_bridge.execution.types import SessionState
from sage_bridge.models import ExpressionRequest, OutputType

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="worker interrupts rely on SIGINT")


@pytest.fixture
def session():
    worker = ProcessSession(start_timeout=30)
    worker.start()
    yield worker
    worker.terminate()


def test_worker_evaluates_and_keeps_state(session: ProcessSession) -> None:
    assert session.state is SessionState.IDLE
    assert session.submit("1+1", timeout=10).text == "2"
    assert session.submit("x = 5", timeout=10).text is None
    out = session.submit("x + 1", timeout=10)
    assert out.text == "6"
    assert out.data["application/json"] == 6
    assert out.execution_count == 3


def test_worker_captures_stdout_and_errors(session: ProcessSession) -> None:
    out = session.submit("print('hello')\n1/0", timeout=10)
    assert out.stdout == "hello\n"
    assert out.error is not None
    assert out.error.ename == "ZeroDivisionError"
    assert session.state is SessionState.IDLE


def test_worker_survives_raising_repr(session: ProcessSession) -> None:
    session.submit("x = 41", timeout=10)
    out = session.submit("class A:\n    def __repr__(self):\n        raise ValueError('bad repr')\nA()", timeout=10)
    assert out.error is not None
    assert out.error.describe() == "ValueError: bad repr"
    assert session.state is SessionState.IDLE
    assert session.submit("x + 1", timeout=10).text == "42"


def test_worker_timeout_then_interrupt(session: ProcessSession) -> None:
    session.submit("import time", timeout=10)
    with pytest.raises(EvaluationTimeoutError, match="timeout after 0.5s"):
        session.submit("while True: time.sleep(0.01)", timeout=0.5)
    assert session.state is SessionState.BUSY
    assert session.interrupt(grace_seconds=5) is True
    assert session.state is SessionState.IDLE
    assert session.submit("'still here'", timeout=10).text == "'still here'"


def test_worker_crash_is_detected(session: ProcessSession) -> None:
    with pytest.raises(SessionCrashError, match="exited unexpectedly"):
        session.submit("import os; os._exit(1)", timeout=10)
    assert session.state is SessionState.FAILED
    assert wait_for(lambda: not session.is_alive())
    with pytest.raises(SessionIOError):
        session.submit("1", timeout=1)


def test_worker_preamble_failure_stops_start() -> None:
    worker = ProcessSession(preamble="import module_that_does_not_exist", start_timeout=30)
    with pytest.raises(SessionStartError, match="ModuleNotFoundError"):
        worker.start()
    assert worker.state is SessionState.FAILED


def test_missing_interpreter_fails_to_start() -> None:
    worker = ProcessSession(command=["/nonexistent/interpreter"], start_timeout=5)
    with pytest.raises(SessionStartError, match="Failed to spawn worker"):
        worker.start()


def test_terminate_stops_worker(session: ProcessSession) -> None:
    session.terminate()
    assert session.state is SessionState.TERMINATED
    assert session.is_alive() is False


def test_bridge_recovers_after_worker_crash() -> None:
    settings = BridgeSettings(
        backend="process",
        pool_size=1,
        timeout_seconds=10,
        start_timeout_seconds=30,
        shutdown_grace_seconds=1,
    )
    with Bridge.from_settings(settings) as bridge:
        crashed = bridge.handle_execute(ExpressionRequest("import os; os._exit(1)"))
        assert crashed.success is False
        assert "exited unexpectedly" in crashed.error

        recovered = bridge.handle_execute(ExpressionRequest("2**10"))
        assert recovered.success is True
        assert recovered.value == "1024"


def test_bridge_batch_on_real_worker() -> None:
    settings = BridgeSettings(backend="process", pool_size=2, timeout_seconds=10, start_timeout_seconds=30)
    with Bridge.from_settings(settings) as bridge:
        responses = bridge.handle_batch(
            [
                ExpressionRequest("x = 5"),
                ExpressionRequest("x + 1"),
                ExpressionRequest("{'a': [1, 2]}", OutputType.JSON),
                ExpressionRequest("y"),
            ]
        )
    assert [r.success for r in responses] == [True, True, True, False]
    assert responses[1].value == "6"
    assert responses[2].value == '{"a": [1, 2]}'
    assert responses[3].error == "NameError: name 'y' is not defined"
