"""Runtime limit configuration layering."""

from __future__ import annotations

from pathlib import Path

import pytest

from opa_embed import ConfigError, ExecutionEngine, RuntimeLimits, default_config_path, load_runtime_limits

EXPECTED_FUEL = 5000
EXPECTED_MEMORY = 1 << 24


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    assert load_runtime_limits(tmp_path / "absent.toml", env={}) == RuntimeLimits()


def test_file_values_are_loaded(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text(f"[runtime]\nfuel = {EXPECTED_FUEL}\nmax_memory_bytes = {EXPECTED_MEMORY}\n", encoding="utf-8")
    limits = load_runtime_limits(path, env={})
    assert limits.fuel == EXPECTED_FUEL
    assert limits.max_memory_bytes == EXPECTED_MEMORY


def test_environment_overrides_file(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text("[runtime]\nfuel = 1\n", encoding="utf-8")
    limits = load_runtime_limits(path, env={"OPA_EMBED_FUEL": str(EXPECTED_FUEL)})
    assert limits.fuel == EXPECTED_FUEL
    assert limits.max_memory_bytes is None


def test_config_path_from_environment(tmp_path: Path) -> None:
    path = tmp_path / "custom.toml"
    path.write_text("[runtime]\nmax_memory_bytes = 4096\n", encoding="utf-8")
    limits = load_runtime_limits(env={"OPA_EMBED_CONFIG": str(path)})
    assert limits.max_memory_bytes == 4096


@pytest.mark.parametrize(
    "content",
    [
        "[runtime\n",
        "runtime = 3\n",
        "[runtime]\nfuel = 'lots'\n",
        "[runtime]\nfuel = true\n",
        "[runtime]\nmax_memory_bytes = -5\n",
    ],
)
def test_invalid_config_raises(tmp_path: Path, content: str) -> None:
    path = tmp_path / "config.toml"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ConfigError):
        load_runtime_limits(path, env={})


def test_invalid_environment_value_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_runtime_limits(tmp_path / "absent.toml", env={"OPA_EMBED_MAX_MEMORY_BYTES": "big"})


def test_default_config_path_name() -> None:
    assert default_config_path().name == "config.toml"


def test_engine_carries_limits() -> None:
    limits = RuntimeLimits(fuel=EXPECTED_FUEL)
    engine = ExecutionEngine(limits)
    assert engine.limits is limits
    store = engine.new_store()
    assert store is not engine.new_store()
