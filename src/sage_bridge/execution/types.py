from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class SessionState(str, Enum):
    """Lifecycle state of one engine session.

    Example:
        ```python
        session.state is SessionState.IDLE
        ```
    """

    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"
    FAILED = "failed"
    TERMINATED = "terminated"


@dataclass(frozen=True, slots=True)
class EngineError:
    """Exception raised by user code inside the engine.

    Example:
        ```python
        err = EngineError("NameError", "name 'y' is not defined", [])
        ```
    """

    ename: str
    evalue: str
    traceback: list[str] = field(default_factory=list)

    def describe(self) -> str:
        """Return the one-line `ename: evalue` form used in responses.

        Example:
            ```python
            EngineError("ZeroDivisionError", "division by zero").describe()
            ```
        """
        if not self.evalue:
            return self.ename
        return f"{self.ename}: {self.evalue}"


@dataclass(slots=True)
class EngineOutput:
    """Normalized reply returned by a session for one submission.

    Example:
        ```python
        out = EngineOutput(text="2", data={"text/plain": "2"})
        ```
    """

    text: str | None = None
    data: dict[str, object] = field(default_factory=dict)
    stdout: str = ""
    stderr: str = ""
    error: EngineError | None = None
    execution_count: int | None = None


@dataclass(frozen=True, slots=True)
class SessionInfo:
    """Snapshot of one pooled session.

    Example:
        ```python
        info = SessionInfo("session-a1", "idle", True, 3, 12.5)
        ```
    """

    session_id: str
    state: str
    in_use: bool
    run_count: int
    age_seconds: float


@dataclass(frozen=True, slots=True)
class PoolStatus:
    """Snapshot of pool occupancy.

    Example:
        ```python
        status = pool.status()
        ```
    """

    size: int
    idle: int
    busy: int
    starting: int
    waiting: int
    closed: bool
    sessions: list[SessionInfo] = field(default_factory=list)
