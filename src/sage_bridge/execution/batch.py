from __future__ import annotations

import logging
from typing import Sequence

from ..errors import BridgeError
from ..models import ExpressionRequest, ExpressionResponse
from .evaluator import Evaluator
from .session import Session
from .types import SessionState

logger = logging.getLogger(__name__)


def batch_execution_time_ms(responses: Sequence[ExpressionResponse]) -> int:
    """Return the total batch time as the sum of per-item times.

    Example:
        ```python
        total = batch_execution_time_ms(responses)
        ```
    """
    return sum(response.execution_time_ms for response in responses)


class BatchCoordinator:
    """Run an ordered batch on one held session, isolating per-item failures.

    Example:
        ```python
        coordinator = BatchCoordinator(evaluator)
        responses = coordinator.run_batch([ExpressionRequest("x = 5"), ExpressionRequest("x + 1")])
        ```
    """

    def __init__(self, evaluator: Evaluator) -> None:
        """Bind the coordinator to an evaluator and its pool.

        Example:
            ```python
            coordinator = BatchCoordinator(evaluator)
            ```
        """
        self._evaluator = evaluator
        self._pool = evaluator.pool

    def run_batch(
        self,
        requests: Sequence[ExpressionRequest],
        timeout: float | None = None,
    ) -> list[ExpressionResponse]:
        """Evaluate requests in order; the result has the same length and order.

        A failing item does not stop the batch. When the held session dies,
        it is handed back for replacement and the remaining items continue
        on a fresh session without the earlier state.

        Example:
            ```python
            responses = coordinator.run_batch(requests, timeout=10)
            ```
        """
        responses: list[ExpressionResponse] = []
        session: Session | None = None
        try:
            for index, request in enumerate(requests):
                if session is not None and session.state is not SessionState.IDLE:
                    logger.warning(
                        "Batch session %s became %s at item %d; continuing on a new session",
                        session.id,
                        session.state.value,
                        index,
                    )
                    self._pool.release(session)
                    session = None
                if session is None:
                    try:
                        session = self._pool.acquire()
                    except BridgeError as exc:
                        logger.warning("Batch aborted at item %d: %s", index, exc)
                        responses.extend(
                            ExpressionResponse.failure(item.output_type, str(exc), execution_time_ms=0)
                            for item in requests[index:]
                        )
                        break
                responses.append(self._evaluator.evaluate_on(session, request, timeout))
        finally:
            if session is not None:
                self._pool.release(session)
        logger.info(
            "Batch of %d item(s) finished: %d failed, %d ms total",
            len(responses),
            sum(1 for response in responses if not response.success),
            batch_execution_time_ms(responses),
        )
        return responses
