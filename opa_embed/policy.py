"""Policy instances: one isolated sandbox store per instance."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

from .abi import AbiVersion, SandboxRuntime
from .errors import EntrypointNotFoundError, ExecuteError, InstanceFaultedError
from .serialization import decode_value, encode_value

if TYPE_CHECKING:
    from .module import CompiledModule

logger = logging.getLogger(__name__)


class InstanceState(str, Enum):
    BUILT = "built"
    EVALUATING = "evaluating"
    FAULTED = "faulted"


class PolicyInstance:
    """Exclusive execution context built from a :class:`CompiledModule`.

    Evaluations on one instance are serialized. The sandbox heap is rewound to
    the end of the bound data document before every call, but anything else the
    module keeps in its store (globals, memory outside the heap) carries over
    between calls. Use :meth:`CompiledModule.evaluate` for per-call isolation.

    A trap, an abort or a cancelled evaluation leaves the instance FAULTED;
    discard it and build a new one.
    """

    def __init__(self, module: "CompiledModule", runtime: SandboxRuntime, *, has_data: bool) -> None:
        self._module = module
        self._runtime = runtime
        self._has_data = has_data
        self._entrypoints = runtime.entrypoints
        self._state = InstanceState.BUILT
        self._lock = asyncio.Lock()

    @property
    def module(self) -> "CompiledModule":
        return self._module

    @property
    def state(self) -> InstanceState:
        return self._state

    @property
    def has_data(self) -> bool:
        return self._has_data

    @property
    def entrypoints(self) -> frozenset[str]:
        return frozenset(self._entrypoints)

    @property
    def default_entrypoint(self) -> str | None:
        for name, ident in self._entrypoints.items():
            if ident == 0:
                return name
        return None

    @property
    def abi_version(self) -> AbiVersion:
        return self._runtime.abi_version

    async def eval(self, entrypoint: str, input: Any, *, result_type: Any = None) -> Any:
        """Evaluate ``entrypoint`` against ``input`` and decode the result."""

        self._ensure_usable()
        try:
            entrypoint_id = self._entrypoints[entrypoint]
        except KeyError as exc:
            raise EntrypointNotFoundError(entrypoint, self._entrypoints) from exc
        payload = encode_value(input)

        async with self._lock:
            self._ensure_usable()
            self._state = InstanceState.EVALUATING
            try:
                raw = await asyncio.to_thread(self._runtime.evaluate, entrypoint_id, payload)
            except asyncio.CancelledError:
                self._state = InstanceState.FAULTED
                logger.warning("evaluation of %s cancelled; instance faulted", entrypoint)
                raise
            except ExecuteError as exc:
                self._state = InstanceState.FAULTED
                logger.warning("evaluation of %s failed; instance faulted: %s", entrypoint, exc)
                raise
            finally:
                if self._state is InstanceState.EVALUATING:
                    self._state = InstanceState.BUILT

        logger.debug("evaluated %s result_bytes=%s", entrypoint, len(raw))
        return decode_value(raw, result_type)

    def _ensure_usable(self) -> None:
        if self._state is InstanceState.FAULTED:
            raise InstanceFaultedError("policy instance faulted during a previous evaluation")
