"""Layered runtime configuration: defaults, then config.toml, then environment."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from platformdirs import user_config_dir

from .errors import ConfigError

DEFAULT_APP_NAME = "opa-embed"
CONFIG_FILE_NAME = "config.toml"
CONFIG_PATH_ENV = "OPA_EMBED_CONFIG"

_ENV_KEY_MAP: dict[str, str] = {
    "fuel": "OPA_EMBED_FUEL",
    "max_memory_bytes": "OPA_EMBED_MAX_MEMORY_BYTES",
}


@dataclass(frozen=True)
class RuntimeLimits:
    """Host limits applied to every store created by an engine."""

    fuel: int | None = None
    max_memory_bytes: int | None = None


def default_config_path() -> Path:
    """Return the platform-specific default config path."""

    base_dir = Path(user_config_dir(DEFAULT_APP_NAME, appauthor=False))
    return base_dir / CONFIG_FILE_NAME


def load_runtime_limits(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> RuntimeLimits:
    env = os.environ if env is None else env
    if path is None:
        override = (env.get(CONFIG_PATH_ENV) or "").strip()
        path = Path(override) if override else default_config_path()

    values: dict[str, Any] = {}
    runtime = _load_config_from_file(path).get("runtime", {})
    if not isinstance(runtime, dict):
        raise ConfigError(f"[runtime] in {path} must be a table")
    for key in _ENV_KEY_MAP:
        if key in runtime:
            values[key] = runtime[key]

    for key, env_name in _ENV_KEY_MAP.items():
        raw = (env.get(env_name) or "").strip()
        if raw:
            values[key] = raw

    return RuntimeLimits(**{key: _coerce_limit(key, value) for key, value in values.items()})


def _load_config_from_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"unable to read config at {path}") from exc


def _coerce_limit(key: str, value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"'{key}' must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{key}' must be an integer, got {value!r}") from exc
    if number < 0:
        raise ConfigError(f"'{key}' cannot be negative")
    return number
