from __future__ import annotations

import logging
import queue
import re
import time
import uuid
from typing import Any

import zmq
from jupyter_client.blocking import BlockingKernelClient
from jupyter_client.kernelspec import NoSuchKernel
from jupyter_client.manager import KernelManager

from ..errors import EvaluationTimeoutError, SessionCrashError, SessionIOError, SessionStartError
from .config import SESSION_NAME_PREFIX
from .types import EngineError, EngineOutput, SessionState

logger = logging.getLogger(__name__)

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


def strip_ansi(text: str) -> str:
    """Remove terminal color codes from kernel tracebacks.

    Example:
        ```python
        strip_ansi("\\x1b[0;31mNameError\\x1b[0m")  # "NameError"
        ```
    """
    return _ANSI_ESCAPE.sub("", text)


def apply_iopub_message(message: dict[str, Any], output: EngineOutput) -> bool:
    """Fold one IOPub message into an EngineOutput; True once the kernel is idle again.

    Example:
        ```python
        done = apply_iopub_message({"msg_type": "stream", "content": {"name": "stdout", "text": "hi"}}, out)
        ```
    """
    msg_type = message.get("msg_type") or message.get("header", {}).get("msg_type")
    content = message.get("content", {})
    if msg_type == "stream":
        if content.get("name") == "stderr":
            output.stderr += content.get("text", "")
        else:
            output.stdout += content.get("text", "")
    elif msg_type == "execute_result":
        output.data = dict(content.get("data", {}))
        plain = output.data.get("text/plain")
        output.text = None if plain is None else str(plain)
        output.execution_count = content.get("execution_count")
    elif msg_type == "display_data":
        for mime, value in content.get("data", {}).items():
            output.data.setdefault(mime, value)
    elif msg_type == "error":
        output.error = EngineError(
            ename=str(content.get("ename", "Error")),
            evalue=str(content.get("evalue", "")),
            traceback=[strip_ansi(str(line)) for line in content.get("traceback", [])],
        )
    elif msg_type == "status":
        return content.get("execution_state") == "idle"
    return False


class KernelSession:
    """Session backed by a Jupyter kernel (SageMath by default).

    Example:
        ```python
        session = KernelSession(kernel_name="sagemath", start_timeout=60)
        session.start()
        out = session.submit("factor(2^64 - 1)", timeout=30)
        ```
    """

    def __init__(
        self,
        *,
        kernel_name: str = "sagemath",
        start_timeout: float = 60.0,
        poll_interval: float = 0.2,
    ) -> None:
        """Configure the kernel; nothing is launched until `start()`.

        Example:
            ```python
            session = KernelSession(kernel_name="python3")
            ```
        """
        self.id = f"{SESSION_NAME_PREFIX}-{uuid.uuid4().hex[:12]}"
        self._kernel_name = kernel_name
        self._start_timeout = start_timeout
        self._poll_interval = poll_interval
        self._state = SessionState.STARTING
        self._manager: KernelManager | None = None
        self._client: BlockingKernelClient | None = None
        self._pending: str | None = None

    @property
    def state(self) -> SessionState:
        """Return the current lifecycle state.

        Example:
            ```python
            session.state
            ```
        """
        return self._state

    def start(self) -> None:
        """Launch the kernel process and wait until it answers on its channels.

        Example:
            ```python
            session.start()
            ```
        """
        manager = KernelManager(kernel_name=self._kernel_name)
        self._manager = manager
        try:
            manager.start_kernel()
        except NoSuchKernel as exc:
            self._state = SessionState.FAILED
            raise SessionStartError(f"Jupyter kernel '{self._kernel_name}' is not installed") from exc
        except (OSError, RuntimeError) as exc:
            self._state = SessionState.FAILED
            raise SessionStartError(f"Failed to launch kernel '{self._kernel_name}': {exc}") from exc

        try:
            client = manager.client()
            client.start_channels()
        except (OSError, RuntimeError, zmq.ZMQError) as exc:
            self.terminate()
            self._state = SessionState.FAILED
            raise SessionStartError(
                f"Failed to connect to kernel '{self._kernel_name}': {exc}"
            ) from exc
        self._client = client
        try:
            client.wait_for_ready(timeout=self._start_timeout)
        except RuntimeError as exc:
            self.terminate()
            self._state = SessionState.FAILED
            raise SessionStartError(
                f"Kernel '{self._kernel_name}' not ready after {self._start_timeout:g}s: {exc}"
            ) from exc
        self._state = SessionState.IDLE
        logger.debug("Kernel %s (%s) ready", self.id, self._kernel_name)

    def submit(self, code: str, timeout: float) -> EngineOutput:
        """Execute code in the kernel and collect its IOPub output until idle.

        Example:
            ```python
            out = session.submit("x = 5", timeout=10)
            ```
        """
        client = self._client
        if self._state is not SessionState.IDLE or client is None:
            raise SessionIOError(f"Session {self.id} cannot accept work in state {self._state.value}")
        self._state = SessionState.BUSY
        try:
            msg_id = client.execute(code, store_history=True, allow_stdin=False, stop_on_error=False)
        except zmq.ZMQError as exc:
            self._state = SessionState.FAILED
            raise SessionIOError(f"Failed to send execute request: {exc}") from exc
        self._pending = msg_id

        output = EngineOutput()
        deadline = time.monotonic() + timeout
        while True:
            message = self._next_message(deadline, msg_id)
            if message is None:
                raise EvaluationTimeoutError(timeout)
            if apply_iopub_message(message, output):
                break
        self._finish(msg_id, output)
        return output

    def interrupt(self, grace_seconds: float) -> bool:
        """Interrupt the kernel and wait for the pending execution to wind down.

        Example:
            ```python
            reusable = session.interrupt(grace_seconds=3)
            ```
        """
        if self._state is not SessionState.BUSY:
            return self._state is SessionState.IDLE
        manager, msg_id = self._manager, self._pending
        if manager is None or msg_id is None:
            self._state = SessionState.FAILED
            return False
        try:
            manager.interrupt_kernel()
        except (OSError, RuntimeError) as exc:
            logger.warning("Could not interrupt kernel %s: %s", self.id, exc)
            self._state = SessionState.FAILED
            return False
        deadline = time.monotonic() + grace_seconds
        discarded = EngineOutput()
        try:
            while True:
                message = self._next_message(deadline, msg_id)
                if message is None:
                    self._state = SessionState.FAILED
                    return False
                if apply_iopub_message(message, discarded):
                    break
        except (SessionCrashError, SessionIOError):
            return False
        self._finish(msg_id, discarded)
        return True

    def mark_failed(self) -> None:
        """Force the session into FAILED.

        Example:
            ```python
            session.mark_failed()
            ```
        """
        if self._state is not SessionState.TERMINATED:
            self._state = SessionState.FAILED

    def is_alive(self) -> bool:
        """Return whether the kernel process is running.

        Example:
            ```python
            session.is_alive()
            ```
        """
        return self._manager is not None and self._manager.is_alive()

    def terminate(self) -> None:
        """Stop the channels and shut the kernel down immediately.

        Example:
            ```python
            session.terminate()
            ```
        """
        self._state = SessionState.TERMINATED
        client, manager = self._client, self._manager
        self._client = None
        if client is not None:
            try:
                client.stop_channels()
            except (RuntimeError, zmq.ZMQError) as exc:
                logger.debug("Stopping channels of %s failed: %s", self.id, exc)
        if manager is not None and manager.has_kernel:
            try:
                manager.shutdown_kernel(now=True)
            except (OSError, RuntimeError) as exc:
                logger.debug("Shutting down kernel of %s failed: %s", self.id, exc)

    def _next_message(self, deadline: float, msg_id: str) -> dict[str, Any] | None:
        """Return the next IOPub message answering `msg_id`, or None at the deadline.

        Example:
            ```python
            message = session._next_message(time.monotonic() + 5, msg_id)
            ```
        """
        client = self._client
        if client is None:
            self._state = SessionState.FAILED
            raise SessionIOError(f"Session {self.id} has no kernel client")
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            try:
                message = client.get_iopub_msg(timeout=min(remaining, self._poll_interval))
            except queue.Empty:
                if not self.is_alive():
                    self._state = SessionState.FAILED
                    raise SessionCrashError(f"Kernel of session {self.id} died during evaluation")
                continue
            except zmq.ZMQError as exc:
                self._state = SessionState.FAILED
                raise SessionIOError(f"Kernel channel of session {self.id} broke: {exc}") from exc
            if message.get("parent_header", {}).get("msg_id") == msg_id:
                return message

    def _finish(self, msg_id: str, output: EngineOutput) -> None:
        """Consume the shell reply for `msg_id` and return to IDLE.

        Example:
            ```python
            session._finish(msg_id, output)
            ```
        """
        client = self._client
        deadline = time.monotonic() + self._poll_interval * 5
        while client is not None and time.monotonic() < deadline:
            try:
                reply = client.get_shell_msg(timeout=self._poll_interval)
            except queue.Empty:
                break
            if reply.get("parent_header", {}).get("msg_id") == msg_id:
                if output.execution_count is None:
                    output.execution_count = reply.get("content", {}).get("execution_count")
                break
        self._pending = None
        self._state = SessionState.IDLE
