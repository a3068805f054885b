"""Host side of the OPA WebAssembly ABI.

A policy module imports its linear memory plus a handful of host hooks from
the ``env`` namespace and exports an allocator, a JSON codec and the
evaluation entry points. Values never cross the boundary directly: the host
writes JSON text into sandbox memory and asks the module to parse it, and
reads results back as NUL-terminated JSON text.

ABI 1.0/1.1 modules are driven through an evaluation context
(``opa_eval_ctx_new`` ... ``eval``). ABI 1.2 added ``opa_eval``, which takes
the input text and the heap pointer in a single call.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from wasmtime import (
    Caller,
    Func,
    FuncType,
    Global,
    Instance,
    Limits,
    Linker,
    Memory,
    MemoryType,
    Module,
    Store,
    Trap,
    ValType,
    WasmtimeError,
)

from .builtins import BuiltinRegistry, EvaluationContext
from .engine import ExecutionEngine
from .errors import (
    AbortError,
    BuiltinError,
    ExecuteError,
    InstantiateError,
    PolicyError,
    SerializeError,
)
from .serialization import encode_value

logger = logging.getLogger(__name__)

SUPPORTED_ABI_MAJOR = 1
FAST_EVAL_MINOR = 2
WASM_PAGE_SIZE = 65536
MAX_BUILTIN_ARITY = 4
EMPTY_DATA = b"{}"

_READ_CHUNK = 4096
_REQUIRED_EXPORTS = (
    "opa_malloc",
    "opa_json_parse",
    "opa_json_dump",
    "opa_heap_ptr_get",
    "opa_heap_ptr_set",
    "builtins",
    "entrypoints",
)
_CONTEXT_EXPORTS = (
    "opa_eval_ctx_new",
    "opa_eval_ctx_set_input",
    "opa_eval_ctx_set_data",
    "opa_eval_ctx_set_entrypoint",
    "opa_eval_ctx_get_result",
    "eval",
)


@dataclass(frozen=True, order=True)
class AbiVersion:
    major: int
    minor: int = 0

    @property
    def supports_fast_eval(self) -> bool:
        return self.major == SUPPORTED_ABI_MAJOR and self.minor >= FAST_EVAL_MINOR

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}"


class SandboxRuntime:
    """One module instantiated into its own store, with data bound."""

    def __init__(self, engine: ExecutionEngine, store: Store, builtins: BuiltinRegistry) -> None:
        self._engine = engine
        self._store = store
        self._builtins = builtins
        self._memory: Memory | None = None
        self._funcs: dict[str, Func] = {}
        self._builtin_names: dict[int, str] = {}
        self._entrypoints: dict[str, int] = {}
        self._abi_version = AbiVersion(SUPPORTED_ABI_MAJOR)
        self._context = EvaluationContext.fresh()
        self._data_addr = 0
        self._data_heap_ptr = 0
        self._host_error: PolicyError | None = None

    @classmethod
    def instantiate(
        cls,
        engine: ExecutionEngine,
        module: Module,
        builtins: BuiltinRegistry,
        data: bytes,
    ) -> "SandboxRuntime":
        runtime = cls(engine, engine.new_store(), builtins)
        runtime._link(module)
        runtime._bind_data(data)
        return runtime

    @property
    def abi_version(self) -> AbiVersion:
        return self._abi_version

    @property
    def entrypoints(self) -> dict[str, int]:
        return dict(self._entrypoints)

    def evaluate(self, entrypoint_id: int, payload: bytes) -> bytes:
        """Run one entrypoint against JSON ``payload`` and return the JSON result."""

        store = self._store
        self._host_error = None
        self._context = EvaluationContext.fresh()
        self._engine.refuel(store)
        try:
            if self._abi_version.supports_fast_eval and "opa_eval" in self._funcs:
                return self._fast_eval(store, entrypoint_id, payload)
            return self._context_eval(store, entrypoint_id, payload)
        except PolicyError:
            raise
        except (Trap, WasmtimeError) as exc:
            raise self._trap_error(exc) from exc

    def _fast_eval(self, store: Store, entrypoint_id: int, payload: bytes) -> bytes:
        input_addr = self._data_heap_ptr
        heap_ptr = input_addr + len(payload)
        self._ensure_capacity(store, heap_ptr)
        self._require_memory().write(store, payload, input_addr)
        result_addr = self._call(
            store,
            "opa_eval",
            0,
            entrypoint_id,
            self._data_addr,
            input_addr,
            len(payload),
            heap_ptr,
            0,
        )
        return self._read_cstring(store, result_addr)

    def _context_eval(self, store: Store, entrypoint_id: int, payload: bytes) -> bytes:
        self._call(store, "opa_heap_ptr_set", self._data_heap_ptr)
        input_addr = self._load_json(store, payload)
        ctx = self._call(store, "opa_eval_ctx_new")
        self._call(store, "opa_eval_ctx_set_input", ctx, input_addr)
        self._call(store, "opa_eval_ctx_set_data", ctx, self._data_addr)
        self._call(store, "opa_eval_ctx_set_entrypoint", ctx, entrypoint_id)
        code = self._call(store, "eval", ctx)
        if code:
            raise ExecuteError(f"policy evaluation returned error code {code}")
        result_addr = self._call(store, "opa_eval_ctx_get_result", ctx)
        dump_addr = self._call(store, "opa_json_dump", result_addr)
        return self._read_cstring(store, dump_addr)

    def _link(self, module: Module) -> None:
        store = self._store
        memory_type = _memory_type(module)
        linker = Linker(self._engine.wasm_engine)
        i32 = ValType.i32()
        linker.define_func("env", "opa_abort", FuncType([i32], []), self._abort, access_caller=True)
        linker.define_func("env", "opa_println", FuncType([i32], []), self._println, access_caller=True)
        for arity in range(MAX_BUILTIN_ARITY + 1):
            linker.define_func(
                "env",
                f"opa_builtin{arity}",
                FuncType([i32] * (arity + 2), [i32]),
                self._dispatch_builtin,
                access_caller=True,
            )

        try:
            self._memory = Memory(store, memory_type)
            linker.define(store, "env", "memory", self._memory)
            instance = linker.instantiate(store, module)
        except PolicyError as exc:
            raise InstantiateError(f"module start failed: {exc}") from exc
        except (Trap, WasmtimeError) as exc:
            raise InstantiateError(f"unable to instantiate policy module: {exc}") from exc

        self._abi_version = _read_abi_version(store, instance)
        if self._abi_version.major != SUPPORTED_ABI_MAJOR:
            raise InstantiateError(
                f"unsupported ABI version {self._abi_version} (host supports {SUPPORTED_ABI_MAJOR}.x)"
            )
        self._funcs = _collect_exports(store, instance, self._abi_version)

        try:
            builtin_ids = self._dump_json(store, self._call(store, "builtins"))
            entrypoint_ids = self._dump_json(store, self._call(store, "entrypoints"))
        except (PolicyError, Trap, WasmtimeError) as exc:
            raise InstantiateError(f"unable to read module tables: {exc}") from exc
        if not isinstance(builtin_ids, dict) or not isinstance(entrypoint_ids, dict):
            raise InstantiateError("module builtin/entrypoint tables must be JSON objects")

        self._builtin_names = {int(ident): str(name) for name, ident in builtin_ids.items()}
        missing = sorted(name for name in self._builtin_names.values() if name not in self._builtins)
        if missing:
            raise InstantiateError(f"module requires unavailable builtins: {', '.join(missing)}")
        self._entrypoints = {str(name): int(ident) for name, ident in entrypoint_ids.items()}
        logger.debug(
            "instantiated policy abi=%s entrypoints=%s builtins=%s",
            self._abi_version,
            len(self._entrypoints),
            len(self._builtin_names),
        )

    def _bind_data(self, data: bytes) -> None:
        store = self._store
        try:
            self._data_addr = self._load_json(store, data)
            self._data_heap_ptr = self._call(store, "opa_heap_ptr_get")
        except (Trap, WasmtimeError) as exc:
            raise InstantiateError(f"unable to bind data document: {exc}") from exc

    def _call(self, store: Store | Caller, name: str, *args: int) -> Any:
        return self._funcs[name](store, *args)

    def _require_memory(self) -> Memory:
        if self._memory is None:
            raise InstantiateError("policy memory is not linked")
        return self._memory

    def _ensure_capacity(self, store: Store, end: int) -> None:
        memory = self._require_memory()
        size = memory.data_len(store)
        if end <= size:
            return
        pages = -(-(end - size) // WASM_PAGE_SIZE)
        try:
            memory.grow(store, pages)
        except WasmtimeError as exc:
            raise ExecuteError(f"unable to grow policy memory by {pages} pages: {exc}") from exc

    def _load_json(self, store: Store | Caller, payload: bytes) -> int:
        memory = self._require_memory()
        addr = self._call(store, "opa_malloc", len(payload))
        memory.write(store, payload, addr)
        value_addr = self._call(store, "opa_json_parse", addr, len(payload))
        if not value_addr:
            raise SerializeError("policy module rejected JSON document")
        return value_addr

    def _dump_json(self, store: Store | Caller, value_addr: int) -> Any:
        raw = self._read_cstring(store, self._call(store, "opa_json_dump", value_addr))
        try:
            return json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ExecuteError(f"policy module produced invalid JSON: {exc}") from exc

    def _read_cstring(self, store: Store | Caller, addr: int) -> bytes:
        memory = self._require_memory()
        size = memory.data_len(store)
        buffer = bytearray()
        cursor = addr
        while cursor < size:
            end = min(cursor + _READ_CHUNK, size)
            chunk = memory.read(store, cursor, end)
            terminator = chunk.find(0)
            if terminator >= 0:
                buffer += chunk[:terminator]
                return bytes(buffer)
            buffer += chunk
            cursor = end
        raise ExecuteError(f"unterminated string at address {addr}")

    def _fail(self, error: PolicyError) -> PolicyError:
        self._host_error = error
        return error

    def _trap_error(self, exc: Exception) -> PolicyError:
        if self._host_error is not None:
            return self._host_error
        return ExecuteError(f"policy trapped: {exc}")

    def _abort(self, caller: Caller, addr: int) -> None:
        message = self._read_cstring(caller, addr).decode("utf-8", errors="replace")
        logger.debug("policy aborted: %s", message)
        raise self._fail(AbortError(message))

    def _println(self, caller: Caller, addr: int) -> None:
        message = self._read_cstring(caller, addr).decode("utf-8", errors="replace")
        logger.info("policy: %s", message)

    def _dispatch_builtin(self, caller: Caller, builtin_id: int, _ctx: int, *arg_addrs: int) -> int:
        name = self._builtin_names.get(builtin_id)
        if name is None:
            raise self._fail(BuiltinError(f"unknown builtin id {builtin_id}"))
        args = [self._dump_json(caller, addr) for addr in arg_addrs]
        try:
            result = self._builtins.call(name, self._context, args)
            payload = encode_value(result)
        except BuiltinError as exc:
            raise self._fail(exc)
        except Exception as exc:
            raise self._fail(BuiltinError(f"builtin '{name}' failed: {exc}")) from exc
        try:
            return self._load_json(caller, payload)
        except SerializeError as exc:
            raise self._fail(BuiltinError(f"builtin '{name}' result rejected: {exc}")) from exc


def _memory_type(module: Module) -> MemoryType:
    for item in module.imports:
        if item.module == "env" and item.name == "memory":
            if not isinstance(item.type, MemoryType):
                raise InstantiateError("env.memory import is not a memory")
            limits = item.type.limits
            return MemoryType(Limits(limits.min, limits.max))
    raise InstantiateError("module does not import env.memory")


def _export(store: Store, instance: Instance, name: str) -> Any:
    try:
        return instance.exports(store)[name]
    except KeyError:
        return None


def _read_abi_version(store: Store, instance: Instance) -> AbiVersion:
    major = _export(store, instance, "opa_wasm_abi_version")
    if not isinstance(major, Global):
        raise InstantiateError("module does not export opa_wasm_abi_version")
    minor = _export(store, instance, "opa_wasm_abi_minor_version")
    minor_value = minor.value(store) if isinstance(minor, Global) else 0
    return AbiVersion(int(major.value(store)), int(minor_value))


def _collect_exports(store: Store, instance: Instance, version: AbiVersion) -> dict[str, Func]:
    funcs: dict[str, Func] = {}
    wanted = _REQUIRED_EXPORTS + _CONTEXT_EXPORTS + ("opa_eval", "opa_free")
    for name in wanted:
        item = _export(store, instance, name)
        if isinstance(item, Func):
            funcs[name] = item
    required = list(_REQUIRED_EXPORTS)
    if not (version.supports_fast_eval and "opa_eval" in funcs):
        required.extend(_CONTEXT_EXPORTS)
    missing = [name for name in required if name not in funcs]
    if missing:
        raise InstantiateError(f"module is missing exports: {', '.join(missing)}")
    return funcs
