__version__ = "0.1.0"

from .bridge import Bridge, build_session_factory
from .errors import (
    BridgeError,
    EvaluationTimeoutError,
    PoolClosedError,
    PoolExhaustedError,
    RenderError,
    SessionCrashError,
    SessionIOError,
    SessionStartError,
    ValidationError,
)
from .execution.batch import BatchCoordinator
from .execution.evaluator import Evaluator
from .execution.kernel_session import KernelSession
from .execution.pool import SessionPool
from .execution.process_session import ProcessSession
from .models import ExpressionRequest, ExpressionResponse, OutputType
from .settings import BridgeSettings, load_settings

__all__ = [
    "__version__",
    "BatchCoordinator",
    "Bridge",
    "BridgeError",
    "BridgeSettings",
    "EvaluationTimeoutError",
    "Evaluator",
    "ExpressionRequest",
    "ExpressionResponse",
    "KernelSession",
    "OutputType",
    "PoolClosedError",
    "PoolExhaustedError",
    "ProcessSession",
    "RenderError",
    "SessionCrashError",
    "SessionIOError",
    "SessionPool",
    "SessionStartError",
    "ValidationError",
    "build_session_factory",
    "load_settings",
]
