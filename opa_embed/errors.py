"""Typed policy runtime errors."""

from __future__ import annotations

from typing import Iterable


class PolicyError(RuntimeError):
    """Base policy runtime error."""

    kind = "policy"


class PolicyIOError(PolicyError):
    """Reading a module file or bundle stream failed."""

    kind = "io"


class BundleError(PolicyError):
    """The bundle archive is malformed or does not hold a policy."""

    kind = "bundle"


class CompileError(PolicyError):
    """The bytecode is not a valid module for the engine."""

    kind = "compile"


class InstantiateError(PolicyError):
    """The module could not be instantiated into a fresh store."""

    kind = "instantiate"


class SerializeError(PolicyError):
    """A value could not be converted into a JSON document."""

    kind = "serialize"


class DeserializeError(PolicyError):
    """A sandbox result could not be converted into the requested type."""

    kind = "deserialize"


class ExecuteError(PolicyError):
    """Evaluation failed inside the sandbox."""

    kind = "execute"


class EntrypointNotFoundError(ExecuteError, LookupError):
    """The requested entrypoint is not exposed by the module."""

    kind = "not_found"

    def __init__(self, entrypoint: str, available: Iterable[str] = ()) -> None:
        self.entrypoint = entrypoint
        self.available = tuple(sorted(available))
        known = ", ".join(self.available) or "none"
        super().__init__(f"unknown entrypoint '{entrypoint}' (available: {known})")


class AbortError(ExecuteError):
    """The policy called opa_abort."""

    kind = "abort"


class BuiltinError(ExecuteError):
    """A host builtin failed or was not available."""

    kind = "builtin"


class InstanceFaultedError(ExecuteError):
    """The instance trapped or was cancelled and must be discarded."""

    kind = "faulted"


class ConfigError(PolicyError):
    """Runtime configuration is unreadable or invalid."""

    kind = "config"
