from __future__ import annotations

import math
import os
from collections.abc import Mapping
from pathlib import Path

from taskdag.config.schema import RunConfig, parse_failure_mode
from taskdag.util.errors import ConfigError

DEFAULT_HOME = Path(".taskdag")


def _get_env_str(env: Mapping[str, str], name: str, default: str) -> str:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _get_env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"environment variable {name} must be an int, got: {raw!r}") from exc


def _get_env_timeout(env: Mapping[str, str], name: str, default: float | None) -> float | None:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    if raw.strip().lower() in {"0", "none", "off"}:
        return None
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"environment variable {name} must be a number, got: {raw!r}") from exc
    if not math.isfinite(value) or value <= 0:
        raise ConfigError(f"environment variable {name} must be > 0, got: {raw!r}")
    return value


def load_run_config(env: Mapping[str, str] | None = None) -> RunConfig:
    """
    Load run configuration from environment variables with defaults.

    Env vars:
      - TASKDAG_MAX_CONCURRENCY (default: 4)
      - TASKDAG_FAILURE_MODE (default: continue-independent)
      - TASKDAG_DEFAULT_TIMEOUT_SEC (default: 300; 0/none/off disables)
    """
    source = os.environ if env is None else env
    defaults = RunConfig()
    return RunConfig(
        max_concurrency=_get_env_int(source, "TASKDAG_MAX_CONCURRENCY", defaults.max_concurrency),
        failure_mode=parse_failure_mode(
            _get_env_str(source, "TASKDAG_FAILURE_MODE", defaults.failure_mode)
        ),
        default_task_timeout_sec=_get_env_timeout(
            source, "TASKDAG_DEFAULT_TIMEOUT_SEC", defaults.default_task_timeout_sec
        ),
    )


def home_dir(env: Mapping[str, str] | None = None) -> Path:
    source = os.environ if env is None else env
    return Path(_get_env_str(source, "TASKDAG_HOME", str(DEFAULT_HOME))).expanduser()


def log_level(env: Mapping[str, str] | None = None) -> str:
    source = os.environ if env is None else env
    return _get_env_str(source, "TASKDAG_LOG_LEVEL", "warning").lower()
