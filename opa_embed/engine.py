"""Shared wasmtime engine used to compile modules and create stores."""

from __future__ import annotations

import logging

from wasmtime import Config, Engine, Module, Store, WasmtimeError

from .config import RuntimeLimits
from .errors import CompileError

logger = logging.getLogger(__name__)


class ExecutionEngine:
    """Immutable compilation context shared by modules and their instances.

    Evaluation is asynchronous at the host level: sandbox calls are driven
    from worker threads by the policy layer, so the engine itself only carries
    the compiler configuration and the limits stamped onto every new store.
    """

    def __init__(self, limits: RuntimeLimits | None = None) -> None:
        self._limits = limits or RuntimeLimits()
        config = Config()
        if self._limits.fuel is not None:
            config.consume_fuel = True
        self._engine = Engine(config)

    @property
    def limits(self) -> RuntimeLimits:
        return self._limits

    @property
    def wasm_engine(self) -> Engine:
        return self._engine

    def compile(self, bytecode: bytes) -> Module:
        try:
            module = Module(self._engine, bytecode)
        except WasmtimeError as exc:
            raise CompileError(f"invalid policy bytecode: {exc}") from exc
        logger.debug("compiled module bytes=%s", len(bytecode))
        return module

    def new_store(self) -> Store:
        store = Store(self._engine)
        if self._limits.max_memory_bytes is not None:
            store.set_limits(memory_size=self._limits.max_memory_bytes)
        self.refuel(store)
        return store

    def refuel(self, store: Store) -> None:
        if self._limits.fuel is not None:
            store.set_fuel(self._limits.fuel)
