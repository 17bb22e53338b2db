from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import Body, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from . import __version__
from .bridge import Bridge
from .errors import ValidationError
from .settings import BridgeSettings, load_settings

logger = logging.getLogger(__name__)

_EXECUTE_EXAMPLE = {"code": "factor(2^32 + 1)", "outputType": "RAW"}
_BATCH_EXAMPLE = [{"code": "x = 5"}, {"code": "x + 1", "outputType": "LATEX"}]


class ExpressionResponseBody(BaseModel):
    """Wire shape of one expression response.

    Example:
        ```python
        body = ExpressionResponseBody(type="RAW", value="2", success=True, error=None, executionTimeMs=3)
        ```
    """

    type: str
    value: str
    success: bool
    error: str | None = None
    executionTimeMs: int


def create_app(
    bridge: Bridge | None = None,
    *,
    settings: BridgeSettings | None = None,
) -> FastAPI:
    """Build the HTTP application around a bridge.

    When no bridge is given one is built from settings and started and shut
    down with the application; an injected bridge is left to its owner.

    Request bodies are taken as raw JSON and validated by the bridge, so a
    well-formed body with bad fields still gets HTTP 200 and `success: false`.

    Example:
        ```python
        app = create_app(settings=BridgeSettings(backend="process", pool_size=1))
        ```
    """
    owns_bridge = bridge is None
    active = bridge if bridge is not None else Bridge.from_settings(settings or load_settings())

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        """Start and stop an owned bridge with the application.

        Example:
            ```python
            app = FastAPI(lifespan=lifespan)
            ```
        """
        if owns_bridge:
            await run_in_threadpool(active.start)
        try:
            yield
        finally:
            if owns_bridge:
                await run_in_threadpool(active.shutdown)

    app = FastAPI(
        title="Sage Bridge",
        description="Evaluate SageMath expressions against pooled, stateful engine sessions.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.bridge = active

    @app.exception_handler(RequestValidationError)
    async def malformed_request(_: Request, exc: RequestValidationError) -> JSONResponse:
        """Report an undecodable or missing JSON body as HTTP 400.

        Example:
            ```python
            # POST /execute with body "{not json" -> 400
            ```
        """
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.exception_handler(ValidationError)
    async def malformed_batch(_: Request, exc: ValidationError) -> JSONResponse:
        """Report a batch body that is not a JSON array as HTTP 400.

        Example:
            ```python
            # POST /batch with body {"code": "1"} -> 400
            ```
        """
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.get("/", response_class=PlainTextResponse)
    def index() -> str:
        """Report that the service is up.

        Example:
            ```python
            client.get("/").text  # "Sage Bridge is running!"
            ```
        """
        return "Sage Bridge is running!"

    @app.get("/health", response_class=PlainTextResponse)
    def health() -> str:
        """Liveness check; never touches the engine.

        Example:
            ```python
            client.get("/health").text  # "OK"
            ```
        """
        return "OK"

    @app.post("/execute", response_model=ExpressionResponseBody)
    def execute(payload: Any = Body(..., examples=[_EXECUTE_EXAMPLE])) -> dict[str, object]:
        """Evaluate one expression; application errors still return HTTP 200.

        Example:
            ```python
            client.post("/execute", json={"code": "1+1", "outputType": "RAW"})
            ```
        """
        return active.handle_execute_payload(payload).to_payload()

    @app.post("/batch", response_model=list[ExpressionResponseBody])
    def batch(payload: Any = Body(..., examples=[_BATCH_EXAMPLE])) -> list[dict[str, object]]:
        """Evaluate an ordered batch on shared interpreter state.

        Invalid items fail in place; the rest still run.

        Example:
            ```python
            client.post("/batch", json=[{"code": "x = 5"}, {"code": "x + 1"}])
            ```
        """
        responses = active.handle_batch_payload(payload)
        return [response.to_payload() for response in responses]

    return app
