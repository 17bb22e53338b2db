from __future__ import annotations

import itertools
import threading
import time
from typing import Any, Callable

import pytest

from sage_bridge import Bridge, BridgeSettings
from sage_bridge.errors import EvaluationTimeoutError, SessionCrashError, SessionIOError, SessionStartError
from sage_bridge.execution.types import EngineError, EngineOutput, SessionState

_IDS = itertools.count(1)


class FakeSession:
    """In-memory session evaluating Python in a persistent namespace.

    Directives understood besides plain Python:
    `sleep:<seconds>`, `crash`, `raise:<ExceptionName>`, `latex:<text>`.
    """

    def __init__(self, *, fail_start: bool = False, interruptible: bool = True) -> None:
        self.id = f"fake-{next(_IDS)}"
        self._state = SessionState.STARTING
        self.fail_start = fail_start
        self.interruptible = interruptible
        self.namespace: dict[str, Any] = {}
        self.submissions: list[str] = []
        self.alive = False
        self.terminated = 0
        self.interrupts = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()
        self._cancel = threading.Event()

    @property
    def state(self) -> SessionState:
        return self._state

    def start(self) -> None:
        if self.fail_start:
            self._state = SessionState.FAILED
            raise SessionStartError(f"{self.id} refused to start")
        self.alive = True
        self._state = SessionState.IDLE

    def submit(self, code: str, timeout: float) -> EngineOutput:
        if self._state is not SessionState.IDLE:
            raise SessionIOError(f"{self.id} is {self._state.value}")
        self._state = SessionState.BUSY
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            self.submissions.append(code)
            return self._run(code, timeout)
        finally:
            with self._lock:
                self.active -= 1

    def _run(self, code: str, timeout: float) -> EngineOutput:
        if code.startswith("sleep:"):
            seconds = float(code.split(":", 1)[1])
            if seconds >= timeout:
                self._cancel.wait(timeout)
                raise EvaluationTimeoutError(timeout)
            time.sleep(seconds)
            self._state = SessionState.IDLE
            return EngineOutput()
        if code == "crash":
            self.alive = False
            self._state = SessionState.FAILED
            raise SessionCrashError(f"{self.id} crashed")
        if code.startswith("raise:"):
            self._state = SessionState.IDLE
            return EngineOutput(stdout="partial\n", error=EngineError(code.split(":", 1)[1], "boom"))
        if code.startswith("latex:"):
            self._state = SessionState.IDLE
            text = code.split(":", 1)[1]
            return EngineOutput(text=text, data={"text/plain": text, "text/latex": f"${text}$"})
        try:
            value = eval(code, self.namespace)
        except SyntaxError:
            exec(code, self.namespace)
            value = None
        except Exception as exc:
            self._state = SessionState.IDLE
            return EngineOutput(error=EngineError(type(exc).__name__, str(exc)))
        self._state = SessionState.IDLE
        if value is None:
            return EngineOutput()
        return EngineOutput(text=repr(value), data={"text/plain": repr(value)})

    def interrupt(self, grace_seconds: float) -> bool:
        self.interrupts += 1
        if not self.interruptible:
            self._state = SessionState.FAILED
            return False
        self._state = SessionState.IDLE
        return True

    def mark_failed(self) -> None:
        if self._state is not SessionState.TERMINATED:
            self._state = SessionState.FAILED

    def is_alive(self) -> bool:
        return self.alive

    def terminate(self) -> None:
        self.terminated += 1
        self.alive = False
        self._state = SessionState.TERMINATED


class FakeFactory:
    """Callable session factory remembering every session it built."""

    def __init__(self, **session_kwargs: Any) -> None:
        self.session_kwargs = session_kwargs
        self.created: list[FakeSession] = []
        self.fail_next = 0

    def __call__(self) -> FakeSession:
        fail = self.fail_next > 0
        if fail:
            self.fail_next -= 1
        session = FakeSession(fail_start=fail, **self.session_kwargs)
        self.created.append(session)
        return session


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def make_bridge(factory: FakeFactory):
    bridges: list[Bridge] = []

    def _make(**overrides: Any) -> Bridge:
        options: dict[str, Any] = {
            "backend": "process",
            "pool_size": 1,
            "timeout_seconds": 1.0,
            "acquire_timeout_seconds": 2.0,
            "interrupt_grace_seconds": 0.5,
            "shutdown_grace_seconds": 0.5,
        }
        options.update(overrides)
        bridge = Bridge.from_settings(BridgeSettings(**options), session_factory=factory)
        bridge.start()
        bridges.append(bridge)
        return bridge

    yield _make
    for bridge in bridges:
        bridge.shutdown()
