from __future__ import annotations

import queue

import pytest
import zmq

from sage_bridge.errors import EvaluationTimeoutError, SessionCrashError, SessionIOError, SessionStartError
from sage_bridge.execution import kernel_session
from sage_bridge.execution.kernel_session import KernelSession, apply_iopub_message, strip_ansi
from sage_bridge.execution.types import EngineOutput, SessionState


def _msg(msg_type: str, content: dict, parent: str = "m1") -> dict:
    return {"msg_type": msg_type, "content": content, "parent_header": {"msg_id": parent}}


class _FakeClient:
    def __init__(self, script: list[dict]) -> None:
        self.script = list(script)
        self.executed: list[str] = []
        self.stopped = False

    def start_channels(self) -> None:
        pass

    def wait_for_ready(self, timeout: float) -> None:
        pass

    def execute(self, code: str, **kwargs) -> str:
        self.executed.append(code)
        return f"m{len(self.executed)}"

    def get_iopub_msg(self, timeout: float) -> dict:
        if not self.script:
            raise queue.Empty
        return self.script.pop(0)

    def get_shell_msg(self, timeout: float) -> dict:
        return _msg("execute_reply", {"execution_count": 7}, parent=f"m{len(self.executed)}")

    def stop_channels(self) -> None:
        self.stopped = True


class _FakeManager:
    instances: list["_FakeManager"] = []
    script: list[dict] = []

    def __init__(self, kernel_name: str) -> None:
        self.kernel_name = kernel_name
        self.alive = True
        self.has_kernel = True
        self.interrupted = 0
        self.shutdown = False
        self.client_obj = _FakeClient(self.script)
        _FakeManager.instances.append(self)

    def start_kernel(self) -> None:
        if self.kernel_name == "missing":
            raise kernel_session.NoSuchKernel(self.kernel_name)

    def client(self) -> _FakeClient:
        return self.client_obj

    def is_alive(self) -> bool:
        return self.alive

    def interrupt_kernel(self) -> None:
        self.interrupted += 1

    def shutdown_kernel(self, now: bool = False) -> None:
        self.shutdown = True
        self.has_kernel = False


@pytest.fixture(autouse=True)
def _patch_manager(monkeypatch: pytest.MonkeyPatch) -> None:
    _FakeManager.instances = []
    _FakeManager.script = []
    monkeypatch.setattr(kernel_session, "KernelManager", _FakeManager)


def _started(script: list[dict]) -> KernelSession:
    _FakeManager.script = script
    session = KernelSession(kernel_name="sagemath", poll_interval=0.01)
    session.start()
    return session


def test_strip_ansi() -> None:
    assert strip_ansi("\x1b[0;31mNameError\x1b[0m: x") == "NameError: x"


def test_apply_iopub_message_folds_output() -> None:
    output = EngineOutput()
    assert apply_iopub_message(_msg("stream", {"name": "stdout", "text": "a"}), output) is False
    apply_iopub_message(_msg("stream", {"name": "stderr", "text": "warn"}), output)
    apply_iopub_message(_msg("display_data", {"data": {"text/html": "<p>plot</p>"}}), output)
    apply_iopub_message(
        _msg("execute_result", {"data": {"text/plain": "1/2", "text/latex": "$\\frac{1}{2}$"}, "execution_count": 3}),
        output,
    )
    assert apply_iopub_message(_msg("status", {"execution_state": "idle"}), output) is True
    assert output.stdout == "a"
    assert output.stderr == "warn"
    assert output.text == "1/2"
    assert output.data["text/latex"] == "$\\frac{1}{2}$"
    assert output.execution_count == 3


def test_apply_iopub_message_records_errors() -> None:
    output = EngineOutput()
    apply_iopub_message(
        _msg("error", {"ename": "NameError", "evalue": "name 'y' is not defined", "traceback": ["\x1b[31mboom\x1b[0m"]}),
        output,
    )
    assert output.error.describe() == "NameError: name 'y' is not defined"
    assert output.error.traceback == ["boom"]


def test_submit_collects_messages_for_own_request() -> None:
    session = _started(
        [
            _msg("stream", {"name": "stdout", "text": "stale"}, parent="other"),
            _msg("status", {"execution_state": "busy"}),
            _msg("execute_result", {"data": {"text/plain": "42"}}),
            _msg("status", {"execution_state": "idle"}),
        ]
    )
    out = session.submit("6*7", timeout=5)
    assert out.text == "42"
    assert out.stdout == ""
    assert out.execution_count == 7
    assert session.state is SessionState.IDLE


def test_submit_timeout_leaves_session_busy_until_interrupted() -> None:
    session = _started([])
    with pytest.raises(EvaluationTimeoutError, match="timeout after 0.05s"):
        session.submit("sleep(100)", timeout=0.05)
    assert session.state is SessionState.BUSY

    session._client.script.append(_msg("status", {"execution_state": "idle"}))
    assert session.interrupt(grace_seconds=1) is True
    assert _FakeManager.instances[0].interrupted == 1
    assert session.state is SessionState.IDLE


def test_interrupt_without_idle_marks_failed() -> None:
    session = _started([])
    with pytest.raises(EvaluationTimeoutError):
        session.submit("sleep(100)", timeout=0.05)
    assert session.interrupt(grace_seconds=0.05) is False
    assert session.state is SessionState.FAILED


def test_dead_kernel_raises_crash() -> None:
    session = _started([])
    _FakeManager.instances[0].alive = False
    with pytest.raises(SessionCrashError, match="died"):
        session.submit("1", timeout=5)
    assert session.state is SessionState.FAILED
    with pytest.raises(SessionIOError):
        session.submit("1", timeout=5)


def test_missing_kernel_becomes_start_error() -> None:
    session = KernelSession(kernel_name="missing")
    with pytest.raises(SessionStartError, match="'missing' is not installed"):
        session.start()
    assert session.state is SessionState.FAILED


def test_terminate_shuts_kernel_down() -> None:
    session = _started([])
    session.terminate()
    manager = _FakeManager.instances[0]
    assert manager.shutdown is True
    assert manager.client_obj.stopped is True
    assert session.state is SessionState.TERMINATED


def test_channel_failure_shuts_launched_kernel_down(monkeypatch: pytest.MonkeyPatch) -> None:
    def refuse(self) -> None:
        raise zmq.ZMQError(msg="address in use")

    monkeypatch.setattr(_FakeClient, "start_channels", refuse)
    session = KernelSession(kernel_name="sagemath")
    with pytest.raises(SessionStartError, match="Failed to connect to kernel 'sagemath'"):
        session.start()
    assert _FakeManager.instances[0].shutdown is True
    assert session.state is SessionState.FAILED
