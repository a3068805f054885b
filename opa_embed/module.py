"""Compiled policy modules and the loader that produces them."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from wasmtime import Module

from .abi import EMPTY_DATA, AbiVersion, SandboxRuntime
from .builtins import BuiltinRegistry, default_builtins
from .bundle import BundleSource, PolicyBundle, load_bundle, read_bundle, read_file
from .config import RuntimeLimits
from .engine import ExecutionEngine
from .policy import PolicyInstance
from .serialization import encode_value

logger = logging.getLogger(__name__)


class _NoData:
    def __repr__(self) -> str:
        return "NO_DATA"


NO_DATA: Any = _NoData()


@dataclass(frozen=True)
class PolicyInfo:
    entrypoints: frozenset[str]
    default_entrypoint: str | None
    abi_version: AbiVersion
    digest: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "entrypoints": sorted(self.entrypoints),
            "default_entrypoint": self.default_entrypoint,
            "abi_version": str(self.abi_version),
            "digest": self.digest,
        }


@dataclass(frozen=True)
class CompiledModule:
    """Immutable compiled policy, shareable across any number of instances."""

    engine: ExecutionEngine = field(repr=False)
    wasm_module: Module = field(repr=False, compare=False)
    builtins: BuiltinRegistry = field(repr=False, compare=False)
    digest: str
    size_bytes: int

    @classmethod
    def from_bytecode(cls, bytecode: bytes, **kwargs: Any) -> "CompiledModule":
        return ModuleLoader(**kwargs).from_bytecode(bytecode)

    @classmethod
    async def from_file(cls, path: Path | str, **kwargs: Any) -> "CompiledModule":
        return await ModuleLoader(**kwargs).from_file(path)

    @classmethod
    async def from_bundle(cls, source: BundleSource, **kwargs: Any) -> "CompiledModule":
        return await ModuleLoader(**kwargs).from_bundle(source)

    @classmethod
    async def from_bundle_file(cls, path: Path | str, **kwargs: Any) -> "CompiledModule":
        return await ModuleLoader(**kwargs).from_bundle_file(path)

    @staticmethod
    async def extract_bytecode_from_bundle(source: BundleSource) -> bytes:
        return (await load_bundle(source)).policy_wasm

    @staticmethod
    async def extract_bytecode_from_bundle_file(path: Path | str) -> bytes:
        return (await read_bundle(path)).policy_wasm

    async def build_with_data(self, data: Any, *, builtins: BuiltinRegistry | None = None) -> PolicyInstance:
        """Instantiate into a fresh store with ``data`` bound as the data document."""

        return await self._build(encode_value(data), builtins, has_data=True)

    async def build_without_data(self, *, builtins: BuiltinRegistry | None = None) -> PolicyInstance:
        """Instantiate into a fresh store with no data document bound."""

        return await self._build(EMPTY_DATA, builtins, has_data=False)

    async def evaluate(
        self,
        entrypoint: str,
        input: Any,
        *,
        data: Any = NO_DATA,
        result_type: Any = None,
        builtins: BuiltinRegistry | None = None,
    ) -> Any:
        """Build a throwaway instance, evaluate once and discard it."""

        if data is NO_DATA:
            policy = await self.build_without_data(builtins=builtins)
        else:
            policy = await self.build_with_data(data, builtins=builtins)
        return await policy.eval(entrypoint, input, result_type=result_type)

    async def inspect(self, *, builtins: BuiltinRegistry | None = None) -> PolicyInfo:
        policy = await self.build_without_data(builtins=builtins)
        return PolicyInfo(
            entrypoints=policy.entrypoints,
            default_entrypoint=policy.default_entrypoint,
            abi_version=policy.abi_version,
            digest=self.digest,
        )

    async def _build(self, data: bytes, builtins: BuiltinRegistry | None, *, has_data: bool) -> PolicyInstance:
        runtime = await asyncio.to_thread(
            SandboxRuntime.instantiate,
            self.engine,
            self.wasm_module,
            builtins if builtins is not None else self.builtins,
            data,
        )
        logger.debug("built policy instance digest=%s has_data=%s", self.digest[:12], has_data)
        return PolicyInstance(self, runtime, has_data=has_data)


class ModuleLoader:
    """Compile policy modules against one shared execution engine."""

    def __init__(
        self,
        engine: ExecutionEngine | None = None,
        *,
        limits: RuntimeLimits | None = None,
        builtins: BuiltinRegistry | None = None,
    ) -> None:
        if engine is not None and limits is not None:
            raise ValueError("pass either an engine or limits, not both")
        self.engine = engine or ExecutionEngine(limits)
        self.builtins = builtins if builtins is not None else default_builtins()

    def from_bytecode(self, bytecode: bytes) -> CompiledModule:
        raw = bytes(bytecode)
        wasm_module = self.engine.compile(raw)
        digest = hashlib.sha256(raw).hexdigest()
        logger.debug("loaded policy module digest=%s bytes=%s", digest[:12], len(raw))
        return CompiledModule(
            engine=self.engine,
            wasm_module=wasm_module,
            builtins=self.builtins,
            digest=digest,
            size_bytes=len(raw),
        )

    async def from_file(self, path: Path | str) -> CompiledModule:
        return self.from_bytecode(await read_file(path))

    async def from_bundle(self, source: BundleSource) -> CompiledModule:
        return self.from_bytecode((await load_bundle(source)).policy_wasm)

    async def from_bundle_file(self, path: Path | str) -> CompiledModule:
        return self.from_bytecode((await read_bundle(path)).policy_wasm)

    async def load_bundle(self, source: BundleSource) -> PolicyBundle:
        return await load_bundle(source)

    async def read_bundle(self, path: Path | str) -> PolicyBundle:
        return await read_bundle(path)


async def evaluate_once(
    module: CompiledModule,
    entrypoint: str,
    input: Any,
    *,
    data: Any = NO_DATA,
    result_type: Any = None,
    builtins: BuiltinRegistry | None = None,
) -> Any:
    return await module.evaluate(entrypoint, input, data=data, result_type=result_type, builtins=builtins)
