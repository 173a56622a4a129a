"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import os
import sys


def get_default_data_dir(
    app_name: str,
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return an OS-specific user data directory for ``app_name``."""

    platform_id = (platform or sys.platform).lower()
    environ = dict(env or os.environ)
    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = Path(environ.get("APPDATA") or home_dir / "Library" / "Application Support")
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return (base.expanduser() / sanitized)


APP_NAME = "TaskSync"


DATA_DIR = get_default_data_dir(APP_NAME)
LOG_DIR = DATA_DIR / "logs"

DB_PATH = Path(os.environ.get("DATABASE_PATH") or DATA_DIR / "tasks.db")
SYNC_LOG_PATH = LOG_DIR / "sync.log"


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class SyncSettings:
    max_retries: int = 3
    batch_size: int = 50
    retry_backoff_sec: float = 0.0
    retry_backoff_max_sec: float = 30.0
    claim_timeout_sec: int = 300
    auto_sync_interval_sec: int = 30
    auto_push_on_edit: bool = True

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be > 0, got {self.batch_size}")
        if self.retry_backoff_sec < 0 or self.retry_backoff_max_sec < 0:
            raise ValueError("retry backoff must not be negative")
        if self.claim_timeout_sec <= 0:
            raise ValueError(f"claim_timeout_sec must be > 0, got {self.claim_timeout_sec}")


@dataclass(frozen=True)
class SimulationSettings:
    """Knobs for the simulated remote authority used by the CLI."""

    failure_rate: float = 0.1
    delay_ms: int = 10
    seed: Optional[int] = None


def load_sync_settings(env: Optional[Mapping[str, str]] = None) -> SyncSettings:
    environ = dict(os.environ if env is None else env)
    defaults = SyncSettings()
    return SyncSettings(
        max_retries=_env_int(environ, "MAX_RETRIES", defaults.max_retries),
        batch_size=_env_int(environ, "SYNC_BATCH_SIZE", defaults.batch_size),
        retry_backoff_sec=_env_float(environ, "SYNC_RETRY_BACKOFF_SEC", defaults.retry_backoff_sec),
        retry_backoff_max_sec=_env_float(
            environ, "SYNC_RETRY_BACKOFF_MAX_SEC", defaults.retry_backoff_max_sec
        ),
        claim_timeout_sec=_env_int(environ, "SYNC_CLAIM_TIMEOUT_SEC", defaults.claim_timeout_sec),
        auto_sync_interval_sec=_env_int(environ, "SYNC_INTERVAL_SEC", defaults.auto_sync_interval_sec),
        auto_push_on_edit=_env_bool(environ, "SYNC_ON_EDIT", defaults.auto_push_on_edit),
    )


def load_simulation_settings(env: Optional[Mapping[str, str]] = None) -> SimulationSettings:
    environ = dict(os.environ if env is None else env)
    defaults = SimulationSettings()
    seed_raw = environ.get("SIMULATED_SEED")
    seed = None
    if seed_raw and seed_raw.strip():
        try:
            seed = int(seed_raw)
        except ValueError:
            seed = None
    return SimulationSettings(
        failure_rate=_env_float(environ, "SIMULATED_FAILURE_RATE", defaults.failure_rate),
        delay_ms=_env_int(environ, "SIMULATED_DELAY_MS", defaults.delay_ms),
        seed=seed,
    )


SYNC = load_sync_settings()
SIMULATION = load_simulation_settings()


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "LOG_DIR",
    "DB_PATH",
    "SYNC_LOG_PATH",
    "SYNC",
    "SIMULATION",
    "SimulationSettings",
    "SyncSettings",
    "get_default_data_dir",
    "load_simulation_settings",
    "load_sync_settings",
]
