from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .execution.config import PoolSettings, default_pool_settings

CONFIG_ENV_VAR = "SAGE_BRIDGE_CONFIG"
BACKENDS = {"kernel", "process"}


def _default_settings_path() -> Path:
    """Return bundled default settings TOML path.

    Example:
        ```python
        path = _default_settings_path()
        ```
    """
    return Path(__file__).with_name("default_bridge.toml")


def _read_settings_toml(path: Path) -> dict[str, Any]:
    """Read settings TOML and return the normalized `bridge` table.

    Example:
        ```python
        raw = _read_settings_toml(Path("/etc/sage-bridge.toml"))
        ```
    """
    if not path.exists():
        return {
            "backend": "kernel",
            "kernel_name": "sagemath",
            "process_command": [],
            "process_preamble": "",
            "process_preparse": False,
            "pool_size": 0,
            "timeout_seconds": 30,
            "acquire_timeout_seconds": 0,
            "start_timeout_seconds": 60,
            "interrupt_on_timeout": True,
            "interrupt_grace_seconds": 3,
            "max_runs": 0,
            "ttl_seconds": 0,
            "shutdown_grace_seconds": 5,
        }
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    settings_obj = raw.get("bridge", raw)
    if not isinstance(settings_obj, dict):
        raise ValueError("Bridge config must be a TOML table")
    return settings_obj


def _list_of_str(value: Any, field_name: str) -> list[str]:
    """Validate and normalize a list-of-strings settings field.

    Example:
        ```python
        cmd = _list_of_str(["sage", "-python"], "process_command")
        ```
    """
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"'{field_name}' must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"'{field_name}' must contain only strings")
        out.append(item)
    return out


def _as_bool(value: Any, field_name: str) -> bool:
    """Validate a boolean settings field.

    Example:
        ```python
        enabled = _as_bool(True, "interrupt_on_timeout")
        ```
    """
    if not isinstance(value, bool):
        raise ValueError(f"'{field_name}' must be true or false")
    return value


_DEFAULT_SETTINGS_RAW = _read_settings_toml(_default_settings_path())
DEFAULT_BACKEND = str(_DEFAULT_SETTINGS_RAW.get("backend", "kernel"))
DEFAULT_KERNEL_NAME = str(_DEFAULT_SETTINGS_RAW.get("kernel_name", "sagemath"))
DEFAULT_PROCESS_COMMAND = _list_of_str(
    _DEFAULT_SETTINGS_RAW.get("process_command", []), "process_command"
)
DEFAULT_PROCESS_PREAMBLE = str(_DEFAULT_SETTINGS_RAW.get("process_preamble", ""))
DEFAULT_PROCESS_PREPARSE = _as_bool(
    _DEFAULT_SETTINGS_RAW.get("process_preparse", False), "process_preparse"
)
DEFAULT_POOL_SIZE = int(_DEFAULT_SETTINGS_RAW.get("pool_size", 0))
DEFAULT_TIMEOUT_SECONDS = float(_DEFAULT_SETTINGS_RAW.get("timeout_seconds", 30))
DEFAULT_ACQUIRE_TIMEOUT_SECONDS = float(_DEFAULT_SETTINGS_RAW.get("acquire_timeout_seconds", 0))
DEFAULT_START_TIMEOUT_SECONDS = float(_DEFAULT_SETTINGS_RAW.get("start_timeout_seconds", 60))
DEFAULT_INTERRUPT_ON_TIMEOUT = _as_bool(
    _DEFAULT_SETTINGS_RAW.get("interrupt_on_timeout", True), "interrupt_on_timeout"
)
DEFAULT_INTERRUPT_GRACE_SECONDS = float(_DEFAULT_SETTINGS_RAW.get("interrupt_grace_seconds", 3))
DEFAULT_MAX_RUNS = int(_DEFAULT_SETTINGS_RAW.get("max_runs", 0))
DEFAULT_TTL_SECONDS = float(_DEFAULT_SETTINGS_RAW.get("ttl_seconds", 0))
DEFAULT_SHUTDOWN_GRACE_SECONDS = float(_DEFAULT_SETTINGS_RAW.get("shutdown_grace_seconds", 5))


@dataclass(slots=True)
class BridgeSettings:
    """Runtime configuration for the execution bridge.

    Example:
        ```python
        settings = BridgeSettings(backend="process", pool_size=2, timeout_seconds=10)
        ```
    """

    backend: str = DEFAULT_BACKEND
    kernel_name: str = DEFAULT_KERNEL_NAME
    process_command: list[str] = field(default_factory=lambda: DEFAULT_PROCESS_COMMAND.copy())
    process_preamble: str = DEFAULT_PROCESS_PREAMBLE
    process_preparse: bool = DEFAULT_PROCESS_PREPARSE
    pool_size: int = DEFAULT_POOL_SIZE
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    acquire_timeout_seconds: float = DEFAULT_ACQUIRE_TIMEOUT_SECONDS
    start_timeout_seconds: float = DEFAULT_START_TIMEOUT_SECONDS
    interrupt_on_timeout: bool = DEFAULT_INTERRUPT_ON_TIMEOUT
    interrupt_grace_seconds: float = DEFAULT_INTERRUPT_GRACE_SECONDS
    max_runs: int = DEFAULT_MAX_RUNS
    ttl_seconds: float = DEFAULT_TTL_SECONDS
    shutdown_grace_seconds: float = DEFAULT_SHUTDOWN_GRACE_SECONDS
    config_path: str | None = None

    def __post_init__(self) -> None:
        """Validate ranges and the backend name after initialization.

        Example:
            ```python
            BridgeSettings(backend="kernel")
            ```
        """
        if self.backend not in BACKENDS:
            raise ValueError("backend must be 'kernel' or 'process'")
        if self.backend == "kernel" and not self.kernel_name.strip():
            raise ValueError("kernel backend requires a non-empty 'kernel_name'")
        if self.pool_size < 0:
            raise ValueError("pool_size must be >= 0 (0 derives it from the CPU count)")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.start_timeout_seconds <= 0:
            raise ValueError("start_timeout_seconds must be > 0")
        for name in (
            "acquire_timeout_seconds",
            "interrupt_grace_seconds",
            "max_runs",
            "ttl_seconds",
            "shutdown_grace_seconds",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    @classmethod
    def from_file(cls, config_path: str) -> "BridgeSettings":
        """Create settings from a TOML file.

        Example:
            ```python
            settings = BridgeSettings.from_file("/etc/sage-bridge.toml")
            ```
        """
        path = Path(config_path)
        if not path.exists():
            raise ValueError(f"Config file not found: {config_path}")
        raw = _read_settings_toml(path)
        return cls(
            backend=str(raw.get("backend", DEFAULT_BACKEND)),
            kernel_name=str(raw.get("kernel_name", DEFAULT_KERNEL_NAME)),
            process_command=_list_of_str(
                raw.get("process_command", DEFAULT_PROCESS_COMMAND), "process_command"
            ),
            process_preamble=str(raw.get("process_preamble", DEFAULT_PROCESS_PREAMBLE)),
            process_preparse=_as_bool(
                raw.get("process_preparse", DEFAULT_PROCESS_PREPARSE), "process_preparse"
            ),
            pool_size=int(raw.get("pool_size", DEFAULT_POOL_SIZE)),
            timeout_seconds=float(raw.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)),
            acquire_timeout_seconds=float(
                raw.get("acquire_timeout_seconds", DEFAULT_ACQUIRE_TIMEOUT_SECONDS)
            ),
            start_timeout_seconds=float(
                raw.get("start_timeout_seconds", DEFAULT_START_TIMEOUT_SECONDS)
            ),
            interrupt_on_timeout=_as_bool(
                raw.get("interrupt_on_timeout", DEFAULT_INTERRUPT_ON_TIMEOUT),
                "interrupt_on_timeout",
            ),
            interrupt_grace_seconds=float(
                raw.get("interrupt_grace_seconds", DEFAULT_INTERRUPT_GRACE_SECONDS)
            ),
            max_runs=int(raw.get("max_runs", DEFAULT_MAX_RUNS)),
            ttl_seconds=float(raw.get("ttl_seconds", DEFAULT_TTL_SECONDS)),
            shutdown_grace_seconds=float(
                raw.get("shutdown_grace_seconds", DEFAULT_SHUTDOWN_GRACE_SECONDS)
            ),
            config_path=config_path,
        )

    def pool_settings(self) -> PoolSettings:
        """Project the pool-level knobs into frozen PoolSettings.

        Example:
            ```python
            pool_settings = BridgeSettings(pool_size=1).pool_settings()
            ```
        """
        defaults = default_pool_settings(self.timeout_seconds)
        return PoolSettings(
            pool_size=self.pool_size or defaults.pool_size,
            acquire_timeout=self.acquire_timeout_seconds or defaults.acquire_timeout,
            max_runs=self.max_runs,
            ttl_seconds=self.ttl_seconds,
            shutdown_grace=self.shutdown_grace_seconds,
        )


def load_settings(config_path: str | None = None) -> BridgeSettings:
    """Resolve settings from an explicit path, the environment, or defaults.

    Example:
        ```python
        settings = load_settings(None)  # honours SAGE_BRIDGE_CONFIG
        ```
    """
    path = config_path or os.environ.get(CONFIG_ENV_VAR)
    if path:
        return BridgeSettings.from_file(path)
    return BridgeSettings()
