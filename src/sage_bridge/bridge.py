from __future__ import annotations

import logging
from functools import partial
from typing import Any, Sequence

from .errors import ValidationError
from .execution.batch import BatchCoordinator
from .execution.evaluator import Evaluator
from .execution.kernel_session import KernelSession
from .execution.pool import SessionPool
from .execution.process_session import ProcessSession
from .execution.session import SessionFactory
from .execution.types import PoolStatus
from .models import ExpressionRequest, ExpressionResponse, OutputType
from .settings import BridgeSettings

logger = logging.getLogger(__name__)


def build_session_factory(settings: BridgeSettings) -> SessionFactory:
    """Return a zero-argument constructor for the configured session backend.

    Example:
        ```python
        factory = build_session_factory(BridgeSettings(backend="process"))
        session = factory()
        ```
    """
    if settings.backend == "process":
        return partial(
            ProcessSession,
            command=settings.process_command or None,
            preamble=settings.process_preamble,
            preparse=settings.process_preparse,
            start_timeout=settings.start_timeout_seconds,
        )
    return partial(
        KernelSession,
        kernel_name=settings.kernel_name,
        start_timeout=settings.start_timeout_seconds,
    )


def _output_type_or_raw(payload: Any) -> OutputType:
    """Best-effort output type for responses to invalid requests.

    Example:
        ```python
        _output_type_or_raw({"outputType": "bogus"})  # OutputType.RAW
        ```
    """
    if isinstance(payload, dict):
        try:
            return OutputType.parse(payload.get("outputType", OutputType.RAW.value))
        except ValidationError:
            return OutputType.RAW
    return OutputType.RAW


class Bridge:
    """Single entry point for the HTTP layer and the CLI.

    Validates requests and delegates to the evaluator or the batch
    coordinator. The pool is built explicitly and injected, never global.

    Example:
        ```python
        with Bridge.from_settings(BridgeSettings(backend="process", pool_size=1)) as bridge:
            resp = bridge.handle_execute(ExpressionRequest("1+1"))
        ```
    """

    def __init__(
        self,
        evaluator: Evaluator,
        coordinator: BatchCoordinator | None = None,
    ) -> None:
        """Wire the facade to an evaluator (and optionally a custom coordinator).

        Example:
            ```python
            bridge = Bridge(Evaluator(pool, default_timeout=10))
            ```
        """
        self._evaluator = evaluator
        self._coordinator = coordinator or BatchCoordinator(evaluator)
        self._pool = evaluator.pool

    @classmethod
    def from_settings(
        cls,
        settings: BridgeSettings,
        *,
        session_factory: SessionFactory | None = None,
    ) -> "Bridge":
        """Build pool, evaluator and coordinator from settings.

        Example:
            ```python
            bridge = Bridge.from_settings(load_settings(None))
            ```
        """
        pool = SessionPool(
            session_factory or build_session_factory(settings),
            settings.pool_settings(),
        )
        evaluator = Evaluator(
            pool,
            default_timeout=settings.timeout_seconds,
            interrupt_on_timeout=settings.interrupt_on_timeout,
            interrupt_grace=settings.interrupt_grace_seconds,
        )
        return cls(evaluator)

    @property
    def pool(self) -> SessionPool:
        """Return the session pool behind this bridge.

        Example:
            ```python
            bridge.pool.settings.pool_size
            ```
        """
        return self._pool

    def start(self) -> None:
        """Start the pool; raises SessionStartError if no session comes up.

        Example:
            ```python
            bridge.start()
            ```
        """
        self._pool.start()

    def shutdown(self) -> None:
        """Terminate every session.

        Example:
            ```python
            bridge.shutdown()
            ```
        """
        self._pool.shutdown()

    def __enter__(self) -> "Bridge":
        """Start the bridge for a with-block.

        Example:
            ```python
            with Bridge.from_settings(settings) as bridge: ...
            ```
        """
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        """Shut the bridge down when the with-block exits.

        Example:
            ```python
            with bridge: ...
            ```
        """
        self.shutdown()

    def status(self) -> PoolStatus:
        """Return pool occupancy.

        Example:
            ```python
            bridge.status().busy
            ```
        """
        return self._pool.status()

    def handle_execute(
        self,
        request: ExpressionRequest,
        timeout: float | None = None,
    ) -> ExpressionResponse:
        """Validate and evaluate one request.

        Example:
            ```python
            resp = bridge.handle_execute(ExpressionRequest("1+1", OutputType.RAW))
            ```
        """
        try:
            request.validate()
        except ValidationError as exc:
            return ExpressionResponse.failure(request.output_type, str(exc), execution_time_ms=0)
        return self._evaluator.evaluate(request, timeout)

    def handle_batch(
        self,
        requests: Sequence[ExpressionRequest],
        timeout: float | None = None,
    ) -> list[ExpressionResponse]:
        """Validate and evaluate a batch; invalid items fail in place.

        Example:
            ```python
            responses = bridge.handle_batch([ExpressionRequest("x = 5"), ExpressionRequest("x + 1")])
            ```
        """
        results: list[ExpressionResponse | None] = [None] * len(requests)
        runnable: list[tuple[int, ExpressionRequest]] = []
        for index, request in enumerate(requests):
            try:
                request.validate()
            except ValidationError as exc:
                results[index] = ExpressionResponse.failure(
                    request.output_type, str(exc), execution_time_ms=0
                )
                continue
            runnable.append((index, request))
        return self._run_batch(results, runnable, timeout)

    def handle_execute_payload(
        self,
        payload: Any,
        timeout: float | None = None,
    ) -> ExpressionResponse:
        """Evaluate one wire request dictionary.

        Example:
            ```python
            resp = bridge.handle_execute_payload({"code": "1+1", "outputType": "RAW"})
            ```
        """
        try:
            request = ExpressionRequest.from_payload(payload)
        except ValidationError as exc:
            return ExpressionResponse.failure(
                _output_type_or_raw(payload), str(exc), execution_time_ms=0
            )
        return self._evaluator.evaluate(request, timeout)

    def handle_batch_payload(
        self,
        payload: Any,
        timeout: float | None = None,
    ) -> list[ExpressionResponse]:
        """Evaluate a wire batch (a list of request dictionaries).

        Raises ValidationError when the batch itself is not a list.

        Example:
            ```python
            responses = bridge.handle_batch_payload([{"code": "x = 5"}, {"code": "x + 1"}])
            ```
        """
        if not isinstance(payload, list):
            raise ValidationError("batch must be a JSON array of requests")
        results: list[ExpressionResponse | None] = [None] * len(payload)
        runnable: list[tuple[int, ExpressionRequest]] = []
        for index, item in enumerate(payload):
            try:
                runnable.append((index, ExpressionRequest.from_payload(item)))
            except ValidationError as exc:
                results[index] = ExpressionResponse.failure(
                    _output_type_or_raw(item), str(exc), execution_time_ms=0
                )
        return self._run_batch(results, runnable, timeout)

    def _run_batch(
        self,
        results: list[ExpressionResponse | None],
        runnable: list[tuple[int, ExpressionRequest]],
        timeout: float | None,
    ) -> list[ExpressionResponse]:
        """Run the valid items in order and merge them with pre-failed ones.

        Example:
            ```python
            merged = bridge._run_batch([None], [(0, ExpressionRequest("1"))], None)
            ```
        """
        if runnable:
            responses = self._coordinator.run_batch([request for _, request in runnable], timeout)
            for (index, _), response in zip(runnable, responses):
                results[index] = response
        return [response for response in results if response is not None]
