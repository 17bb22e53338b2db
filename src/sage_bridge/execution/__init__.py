from .config import PoolSettings
from .pool import SessionPool
from .session import Session, SessionFactory
from .types import EngineError, EngineOutput, PoolStatus, SessionInfo, SessionState

__all__ = [
    "EngineError",
    "EngineOutput",
    "PoolSettings",
    "PoolStatus",
    "Session",
    "SessionFactory",
    "SessionInfo",
    "SessionPool",
    "SessionState",
]
