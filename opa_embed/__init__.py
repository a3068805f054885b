"""Embedded OPA WebAssembly policy evaluation."""

from .abi import AbiVersion
from .builtins import BuiltinRegistry, EvaluationContext, default_builtins
from .bundle import PolicyBundle, load_bundle, parse_bundle, read_bundle
from .config import RuntimeLimits, default_config_path, load_runtime_limits
from .engine import ExecutionEngine
from .errors import (
    AbortError,
    BuiltinError,
    BundleError,
    CompileError,
    ConfigError,
    DeserializeError,
    EntrypointNotFoundError,
    ExecuteError,
    InstanceFaultedError,
    InstantiateError,
    PolicyError,
    PolicyIOError,
    SerializeError,
)
from .module import NO_DATA, CompiledModule, ModuleLoader, PolicyInfo, evaluate_once
from .policy import InstanceState, PolicyInstance

__version__ = "0.1.0"

__all__ = [
    "AbiVersion",
    "BuiltinRegistry",
    "EvaluationContext",
    "default_builtins",
    "PolicyBundle",
    "load_bundle",
    "parse_bundle",
    "read_bundle",
    "RuntimeLimits",
    "default_config_path",
    "load_runtime_limits",
    "ExecutionEngine",
    "CompiledModule",
    "ModuleLoader",
    "PolicyInfo",
    "NO_DATA",
    "evaluate_once",
    "PolicyInstance",
    "InstanceState",
    "PolicyError",
    "PolicyIOError",
    "BundleError",
    "CompileError",
    "InstantiateError",
    "SerializeError",
    "DeserializeError",
    "ExecuteError",
    "EntrypointNotFoundError",
    "AbortError",
    "BuiltinError",
    "InstanceFaultedError",
    "ConfigError",
]
