from __future__ import annotations

import json
import logging
import queue
import signal
import subprocess
import sys
import threading
import time
import uuid
from pathlib import Path
from typing import IO, Any

from ..errors import EvaluationTimeoutError, SessionCrashError, SessionIOError, SessionStartError
from .config import SESSION_NAME_PREFIX
from .types import EngineError, EngineOutput, SessionState

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.25


def _worker_path() -> Path:
    """Return the absolute path to the worker module file.

    Example:
        ```python
        path = _worker_path()
        ```
    """
    return Path(__file__).resolve().parents[1] / "worker.py"


def _pump(stream: IO[str], sink: "queue.Queue[str | None]") -> None:
    """Copy worker stdout lines into a queue; None marks end of stream.

    Example:
        ```python
        threading.Thread(target=_pump, args=(proc.stdout, lines), daemon=True).start()
        ```
    """
    try:
        for line in stream:
            sink.put(line)
    except (OSError, ValueError):
        pass
    finally:
        sink.put(None)


def _to_output(message: dict[str, Any]) -> EngineOutput:
    """Convert a worker reply line into an EngineOutput.

    Example:
        ```python
        out = _to_output({"ok": True, "text": "2", "data": {"text/plain": "2"}})
        ```
    """
    raw_error = message.get("error")
    error = None
    if isinstance(raw_error, dict):
        error = EngineError(
            ename=str(raw_error.get("ename", "Error")),
            evalue=str(raw_error.get("evalue", "")),
            traceback=[str(line) for line in raw_error.get("traceback") or []],
        )
    data = message.get("data")
    return EngineOutput(
        text=message.get("text"),
        data=dict(data) if isinstance(data, dict) else {},
        stdout=str(message.get("stdout") or ""),
        stderr=str(message.get("stderr") or ""),
        error=error,
        execution_count=message.get("execution_count"),
    )


class ProcessSession:
    """Session backed by a persistent JSON-lines worker subprocess.

    The interpreter can be any Python, including ``sage -python`` with a
    ``from sage.all import *`` preamble.

    Example:
        ```python
        session = ProcessSession(command=["sage", "-python"], preamble="from sage.all import *", preparse=True)
        session.start()
        ```
    """

    def __init__(
        self,
        *,
        command: list[str] | None = None,
        preamble: str = "",
        preparse: bool = False,
        start_timeout: float = 60.0,
        max_output_kb: int = 1024,
    ) -> None:
        """Configure the worker command; nothing is spawned until `start()`.

        Example:
            ```python
            session = ProcessSession(start_timeout=10)
            ```
        """
        self.id = f"{SESSION_NAME_PREFIX}-{uuid.uuid4().hex[:12]}"
        self._command = list(command) if command else [sys.executable]
        self._preamble = preamble
        self._preparse = preparse
        self._start_timeout = start_timeout
        self._max_output_kb = max_output_kb
        self._state = SessionState.STARTING
        self._proc: subprocess.Popen[str] | None = None
        self._lines: queue.Queue[str | None] = queue.Queue()
        self._next_request = 0
        self._pending: int | None = None
        self._stray: list[str] = []

    @property
    def state(self) -> SessionState:
        """Return the current lifecycle state.

        Example:
            ```python
            session.state
            ```
        """
        return self._state

    def argv(self) -> list[str]:
        """Return the full worker command line.

        Example:
            ```python
            ProcessSession().argv()  # [sys.executable, ".../worker.py", "--max-output-kb", "1024"]
            ```
        """
        args = [*self._command, str(_worker_path()), "--max-output-kb", str(self._max_output_kb)]
        if self._preamble:
            args.extend(["--preamble", self._preamble])
        if self._preparse:
            args.append("--preparse")
        return args

    def start(self) -> None:
        """Spawn the worker and wait for its readiness line.

        Example:
            ```python
            session.start()
            ```
        """
        argv = self.argv()
        try:
            self._proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                bufsize=1,
            )
        except OSError as exc:
            self._state = SessionState.FAILED
            raise SessionStartError(f"Failed to spawn worker {argv[0]!r}: {exc}") from exc

        assert self._proc.stdout is not None
        threading.Thread(
            target=_pump,
            args=(self._proc.stdout, self._lines),
            name=f"{self.id}-stdout",
            daemon=True,
        ).start()

        try:
            ready = self._read_message(time.monotonic() + self._start_timeout)
        except SessionCrashError as exc:
            self.terminate()
            self._state = SessionState.FAILED
            raise SessionStartError(f"Worker exited during startup: {exc}") from exc
        if ready is None:
            self.terminate()
            self._state = SessionState.FAILED
            raise SessionStartError(f"Worker not ready after {self._start_timeout:g}s")
        if not ready.get("ready"):
            self.terminate()
            self._state = SessionState.FAILED
            raise SessionStartError(f"Worker failed to start: {ready.get('error')}")
        self._state = SessionState.IDLE
        logger.debug("Worker %s ready (pid %s)", self.id, self._proc.pid)

    def submit(self, code: str, timeout: float) -> EngineOutput:
        """Send one cell to the worker and wait for its reply.

        Example:
            ```python
            out = session.submit("x + 1", timeout=5)
            ```
        """
        if self._state is not SessionState.IDLE or self._proc is None or self._proc.stdin is None:
            raise SessionIOError(f"Session {self.id} cannot accept work in state {self._state.value}")
        self._state = SessionState.BUSY
        self._next_request += 1
        request_id = self._next_request
        self._pending = request_id
        try:
            self._proc.stdin.write(json.dumps({"id": request_id, "code": code}) + "\n")
            self._proc.stdin.flush()
        except (OSError, ValueError) as exc:
            self._state = SessionState.FAILED
            raise SessionIOError(f"Failed to write to worker {self.id}: {exc}") from exc

        deadline = time.monotonic() + timeout
        while True:
            message = self._read_message(deadline)
            if message is None:
                raise EvaluationTimeoutError(timeout)
            if message.get("id") != request_id:
                continue
            self._pending = None
            self._state = SessionState.IDLE
            output = _to_output(message)
            if self._stray:
                output.stdout = "".join(self._stray) + output.stdout
                self._stray.clear()
            return output

    def interrupt(self, grace_seconds: float) -> bool:
        """Send SIGINT to the worker and wait for the interrupted reply.

        Example:
            ```python
            reusable = session.interrupt(grace_seconds=2)
            ```
        """
        if self._state is not SessionState.BUSY:
            return self._state is SessionState.IDLE
        if self._proc is None or self._proc.poll() is not None:
            self._state = SessionState.FAILED
            return False
        try:
            self._proc.send_signal(signal.SIGINT)
        except OSError as exc:
            logger.warning("Could not interrupt worker %s: %s", self.id, exc)
            self._state = SessionState.FAILED
            return False
        deadline = time.monotonic() + grace_seconds
        try:
            while True:
                message = self._read_message(deadline)
                if message is None:
                    self._state = SessionState.FAILED
                    return False
                if message.get("id") == self._pending:
                    self._pending = None
                    self._state = SessionState.IDLE
                    return True
        except SessionCrashError:
            return False

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
        """Return whether the worker process is running.

        Example:
            ```python
            session.is_alive()
            ```
        """
        return self._proc is not None and self._proc.poll() is None

    def terminate(self) -> None:
        """Close the worker's stdin, then kill it if it does not exit promptly.

        Example:
            ```python
            session.terminate()
            ```
        """
        self._state = SessionState.TERMINATED
        proc = self._proc
        if proc is None:
            return
        if proc.poll() is None:
            try:
                if proc.stdin is not None:
                    proc.stdin.close()
                proc.wait(timeout=1)
            except (OSError, ValueError, subprocess.TimeoutExpired):
                proc.kill()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    logger.warning("Worker %s (pid %s) did not exit after kill", self.id, proc.pid)

    def _read_message(self, deadline: float) -> dict[str, Any] | None:
        """Return the next protocol message, or None once the deadline passes.

        Example:
            ```python
            message = session._read_message(time.monotonic() + 5)
            ```
        """
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            try:
                line = self._lines.get(timeout=min(remaining, _POLL_SECONDS))
            except queue.Empty:
                continue
            if line is None:
                self._state = SessionState.FAILED
                code = self._proc.poll() if self._proc is not None else None
                raise SessionCrashError(f"Worker {self.id} exited unexpectedly (exit code {code})")
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                self._stray.append(line)
                continue
            if isinstance(message, dict):
                return message
            self._stray.append(line)
