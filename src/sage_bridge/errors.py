from __future__ import annotations


class BridgeError(Exception):
    """Base class for every failure the bridge converts into a response.

    Example:
        ```python
        try:
            pool.acquire()
        except BridgeError as exc:
            message = str(exc)
        ```
    """


class ValidationError(BridgeError):
    """Request rejected before it reaches a session (empty code, unknown output type).

    Example:
        ```python
        raise ValidationError("code must not be empty")
        ```
    """


class PoolExhaustedError(BridgeError):
    """No session became available within the acquire timeout.

    Example:
        ```python
        raise PoolExhaustedError("no session available after 7s")
        ```
    """


class PoolClosedError(BridgeError):
    """The pool was shut down while a caller was waiting or arrived afterwards.

    Example:
        ```python
        raise PoolClosedError("session pool is shut down")
        ```
    """


class SessionError(BridgeError):
    """Base class for failures of the engine process behind a session.

    Example:
        ```python
        except SessionError:
            session.mark_failed()
        ```
    """


class SessionStartError(SessionError):
    """The engine process could not be spawned or never signalled readiness.

    Example:
        ```python
        raise SessionStartError("kernel 'sagemath' not ready after 60s")
        ```
    """


class SessionCrashError(SessionError):
    """The engine process exited while an evaluation was outstanding.

    Example:
        ```python
        raise SessionCrashError("engine process exited with code -9")
        ```
    """


class SessionIOError(SessionError):
    """The channel to the engine process broke.

    Example:
        ```python
        raise SessionIOError("broken pipe writing to worker")
        ```
    """


class EvaluationTimeoutError(BridgeError):
    """No output arrived from the engine before the deadline.

    Example:
        ```python
        raise EvaluationTimeoutError(5.0)
        ```
    """

    def __init__(self, timeout_seconds: float) -> None:
        """Store the deadline that elapsed.

        Example:
            ```python
            err = EvaluationTimeoutError(2.5)
            ```
        """
        self.timeout_seconds = timeout_seconds
        super().__init__(f"timeout after {timeout_seconds:g}s")


class RenderError(BridgeError):
    """Engine output could not be converted into the requested output type.

    Example:
        ```python
        raise RenderError("engine produced no LaTeX representation")
        ```
    """
