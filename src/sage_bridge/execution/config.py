from __future__ import annotations

import os
from dataclasses import dataclass

SESSION_NAME_PREFIX = "sage-bridge"


@dataclass(frozen=True, slots=True)
class PoolSettings:
    """Runtime limits for the session pool.

    Example:
        ```python
        settings = PoolSettings(pool_size=2, acquire_timeout=7, max_runs=0, ttl_seconds=0)
        ```
    """

    pool_size: int
    acquire_timeout: float
    max_runs: int = 0
    ttl_seconds: float = 0
    shutdown_grace: float = 5

    def __post_init__(self) -> None:
        """Reject a pool that could never serve a request.

        Example:
            ```python
            PoolSettings(pool_size=0, acquire_timeout=1)  # raises ValueError
            ```
        """
        if self.pool_size < 1:
            raise ValueError("pool_size must be >= 1")
        if self.acquire_timeout <= 0:
            raise ValueError("acquire_timeout must be > 0")


def default_pool_settings(timeout_seconds: float) -> PoolSettings:
    """Return default pool settings derived from an evaluation timeout.

    Example:
        ```python
        defaults = default_pool_settings(timeout_seconds=5)
        ```
    """
    size = min(os.cpu_count() or 1, 4)
    return PoolSettings(
        pool_size=size,
        acquire_timeout=max(1.0, float(timeout_seconds)) + 2,
    )
