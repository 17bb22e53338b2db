from __future__ import annotations

import logging
import time

from ..errors import BridgeError, EvaluationTimeoutError, SessionError
from ..models import ExpressionRequest, ExpressionResponse
from ..rendering import render
from .pool import SessionPool
from .session import Session
from .types import SessionState

logger = logging.getLogger(__name__)


def _elapsed_ms(started: float) -> int:
    """Return whole milliseconds since a monotonic timestamp.

    Example:
        ```python
        ms = _elapsed_ms(time.monotonic())
        ```
    """
    return max(0, int((time.monotonic() - started) * 1000))


class Evaluator:
    """Run one request against a pooled session and always return a response.

    Example:
        ```python
        evaluator = Evaluator(pool, default_timeout=30)
        resp = evaluator.evaluate(ExpressionRequest("1+1"))
        ```
    """

    def __init__(
        self,
        pool: SessionPool,
        *,
        default_timeout: float,
        interrupt_on_timeout: bool = True,
        interrupt_grace: float = 3.0,
    ) -> None:
        """Bind the evaluator to its pool and timeout policy.

        Example:
            ```python
            evaluator = Evaluator(pool, default_timeout=10, interrupt_on_timeout=False)
            ```
        """
        self._pool = pool
        self._default_timeout = default_timeout
        self._interrupt_on_timeout = interrupt_on_timeout
        self._interrupt_grace = interrupt_grace

    @property
    def pool(self) -> SessionPool:
        """Return the pool this evaluator draws sessions from.

        Example:
            ```python
            evaluator.pool.status()
            ```
        """
        return self._pool

    def resolve_timeout(self, timeout: float | None) -> float:
        """Return the effective timeout for a call.

        Example:
            ```python
            evaluator.resolve_timeout(None)  # default_timeout
            ```
        """
        if timeout is None or timeout <= 0:
            return self._default_timeout
        return float(timeout)

    def evaluate(self, request: ExpressionRequest, timeout: float | None = None) -> ExpressionResponse:
        """Acquire a session, evaluate, render and release; never raises.

        Example:
            ```python
            resp = evaluator.evaluate(ExpressionRequest("factor(12)"), timeout=5)
            ```
        """
        started = time.monotonic()
        effective = self.resolve_timeout(timeout)
        try:
            with self._pool.lease() as session:
                return self._evaluate(session, request, effective, started)
        except BridgeError as exc:
            logger.warning("Evaluation could not run: %s", exc)
            return ExpressionResponse.failure(
                request.output_type, str(exc), execution_time_ms=_elapsed_ms(started)
            )
        except Exception as exc:
            logger.exception("Unexpected failure while evaluating a request")
            return ExpressionResponse.failure(
                request.output_type,
                f"internal error: {type(exc).__name__}: {exc}",
                execution_time_ms=_elapsed_ms(started),
            )

    def evaluate_on(
        self,
        session: Session,
        request: ExpressionRequest,
        timeout: float | None = None,
    ) -> ExpressionResponse:
        """Evaluate on a session the caller already holds; never raises.

        Example:
            ```python
            with pool.lease() as session:
                resp = evaluator.evaluate_on(session, ExpressionRequest("x + 1"))
            ```
        """
        started = time.monotonic()
        try:
            return self._evaluate(session, request, self.resolve_timeout(timeout), started)
        except Exception as exc:
            logger.exception("Unexpected failure while evaluating on session %s", session.id)
            if session.state is SessionState.BUSY:
                session.mark_failed()
            return ExpressionResponse.failure(
                request.output_type,
                f"internal error: {type(exc).__name__}: {exc}",
                execution_time_ms=_elapsed_ms(started),
            )

    def _evaluate(
        self,
        session: Session,
        request: ExpressionRequest,
        timeout: float,
        started: float,
    ) -> ExpressionResponse:
        """Submit, apply the timeout policy and map the outcome to a response.

        Example:
            ```python
            resp = evaluator._evaluate(session, request, 5.0, time.monotonic())
            ```
        """
        output_type = request.output_type
        logger.debug("Submitting %d chars to session %s", len(request.code), session.id)
        try:
            output = session.submit(request.code, timeout)
        except EvaluationTimeoutError as exc:
            self._cancel(session)
            logger.warning("Session %s timed out after %gs", session.id, timeout)
            return ExpressionResponse.failure(
                output_type, str(exc), execution_time_ms=_elapsed_ms(started)
            )
        except SessionError as exc:
            session.mark_failed()
            logger.error("Session %s failed: %s", session.id, exc)
            return ExpressionResponse.failure(
                output_type, str(exc), execution_time_ms=_elapsed_ms(started)
            )

        if output.error is not None:
            return ExpressionResponse.failure(
                output_type,
                output.error.describe(),
                value=output.stdout,
                execution_time_ms=_elapsed_ms(started),
            )
        try:
            value = render(output, output_type)
        except BridgeError as exc:
            return ExpressionResponse.failure(
                output_type,
                f"render error: {exc}",
                value=output.text or output.stdout,
                execution_time_ms=_elapsed_ms(started),
            )
        return ExpressionResponse.ok(output_type, value, execution_time_ms=_elapsed_ms(started))

    def _cancel(self, session: Session) -> None:
        """Leave a timed-out session either IDLE (interrupted) or FAILED.

        Example:
            ```python
            evaluator._cancel(session)
            ```
        """
        if self._interrupt_on_timeout and session.interrupt(self._interrupt_grace):
            logger.info("Session %s interrupted and kept", session.id)
            return
        session.mark_failed()
        logger.info("Session %s marked failed after timeout", session.id)
