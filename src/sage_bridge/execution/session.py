from __future__ import annotations

from typing import Callable, Protocol

from .types import EngineOutput, SessionState


class Session(Protocol):
    """One addressable engine interpreter evaluating one code string at a time.

    Example:
        ```python
        session.start()
        out = session.submit("1+1", timeout=5)
        ```
    """

    id: str

    @property
    def state(self) -> SessionState:
        """Return the current lifecycle state.

        Example:
            ```python
            if session.state is SessionState.FAILED: ...
            ```
        """
        ...

    def start(self) -> None:
        """Launch the engine and wait for readiness.

        Example:
            ```python
            session.start()
            ```
        """
        ...

    def submit(self, code: str, timeout: float) -> EngineOutput:
        """Evaluate code and return the engine's reply.

        Example:
            ```python
            out = session.submit("x = 5", timeout=10)
            ```
        """
        ...

    def interrupt(self, grace_seconds: float) -> bool:
        """Abort the outstanding evaluation; True when the session is reusable.

        Example:
            ```python
            reusable = session.interrupt(grace_seconds=2)
            ```
        """
        ...

    def mark_failed(self) -> None:
        """Force the session into FAILED so the pool replaces it.

        Example:
            ```python
            session.mark_failed()
            ```
        """
        ...

    def is_alive(self) -> bool:
        """Return whether the underlying process is running.

        Example:
            ```python
            alive = session.is_alive()
            ```
        """
        ...

    def terminate(self) -> None:
        """Release the underlying process; idempotent and never raises.

        Example:
            ```python
            session.terminate()
            ```
        """
        ...


SessionFactory = Callable[[], Session]
