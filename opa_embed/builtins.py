"""Host implementations of OPA builtins that policies call through the sandbox ABI."""

from __future__ import annotations

import base64
import hashlib
import random
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping
from urllib.parse import quote_plus, unquote_plus, urlencode

from .errors import BuiltinError

BuiltinFunc = Callable[..., Any]


@dataclass
class EvaluationContext:
    """State shared by builtin calls during one evaluation."""

    now_ns: int
    cache: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def fresh(cls) -> "EvaluationContext":
        return cls(now_ns=time.time_ns())

    def memo(self, key: str, factory: Callable[[], Any]) -> Any:
        if key not in self.cache:
            self.cache[key] = factory()
        return self.cache[key]


class BuiltinRegistry:
    """Name to callable table consulted when a module is instantiated."""

    def __init__(self, functions: Mapping[str, BuiltinFunc] | None = None) -> None:
        self._functions: dict[str, BuiltinFunc] = dict(functions or {})

    def register(self, name: str, func: BuiltinFunc | None = None):
        """Register ``func`` under ``name``; usable as a decorator."""

        def decorator(target: BuiltinFunc) -> BuiltinFunc:
            self._functions[name] = target
            return target

        if func is not None:
            return decorator(func)
        return decorator

    def extended(self, functions: Mapping[str, BuiltinFunc]) -> "BuiltinRegistry":
        merged = dict(self._functions)
        merged.update(functions)
        return BuiltinRegistry(merged)

    def names(self) -> frozenset[str]:
        return frozenset(self._functions)

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._functions))

    def __len__(self) -> int:
        return len(self._functions)

    def call(self, name: str, context: EvaluationContext, args: list[Any]) -> Any:
        try:
            func = self._functions[name]
        except KeyError as exc:
            raise BuiltinError(f"builtin '{name}' is not registered") from exc
        return func(context, *args)


_STANDARD: dict[str, BuiltinFunc] = {}


def _builtin(name: str) -> Callable[[BuiltinFunc], BuiltinFunc]:
    def decorator(func: BuiltinFunc) -> BuiltinFunc:
        _STANDARD[name] = func
        return func

    return decorator


def default_builtins() -> BuiltinRegistry:
    """Return a fresh registry holding the standard host builtins."""

    return BuiltinRegistry(_STANDARD)


def _require_str(name: str, value: Any) -> str:
    if not isinstance(value, str):
        raise BuiltinError(f"{name}: operand must be a string, got {type(value).__name__}")
    return value


@_builtin("time.now_ns")
def _time_now_ns(ctx: EvaluationContext) -> int:
    return ctx.now_ns


@_builtin("base64url.encode_no_pad")
def _base64url_encode_no_pad(ctx: EvaluationContext, value: Any) -> str:
    raw = _require_str("base64url.encode_no_pad", value).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _digest(name: str, algorithm: str) -> BuiltinFunc:
    def func(ctx: EvaluationContext, value: Any) -> str:
        return hashlib.new(algorithm, _require_str(name, value).encode("utf-8")).hexdigest()

    return func


for _algorithm in ("md5", "sha1", "sha256"):
    _builtin(f"crypto.{_algorithm}")(_digest(f"crypto.{_algorithm}", _algorithm))


@_builtin("hex.encode")
def _hex_encode(ctx: EvaluationContext, value: Any) -> str:
    return _require_str("hex.encode", value).encode("utf-8").hex()


@_builtin("hex.decode")
def _hex_decode(ctx: EvaluationContext, value: Any) -> str:
    try:
        return bytes.fromhex(_require_str("hex.decode", value)).decode("utf-8")
    except (ValueError, UnicodeDecodeError) as exc:
        raise BuiltinError(f"hex.decode: invalid input: {exc}") from exc


_GLOB_META = re.compile(r"([*?\\\[\]{}])")


@_builtin("glob.quote_meta")
def _glob_quote_meta(ctx: EvaluationContext, pattern: Any) -> str:
    return _GLOB_META.sub(r"\\\1", _require_str("glob.quote_meta", pattern))


@_builtin("urlquery.encode")
def _urlquery_encode(ctx: EvaluationContext, value: Any) -> str:
    return quote_plus(_require_str("urlquery.encode", value))


@_builtin("urlquery.decode")
def _urlquery_decode(ctx: EvaluationContext, value: Any) -> str:
    return unquote_plus(_require_str("urlquery.decode", value))


@_builtin("urlquery.encode_object")
def _urlquery_encode_object(ctx: EvaluationContext, value: Any) -> str:
    if not isinstance(value, dict):
        raise BuiltinError("urlquery.encode_object: operand must be an object")
    pairs: list[tuple[str, str]] = []
    for key in sorted(value):
        item = value[key]
        if isinstance(item, list):
            pairs.extend((key, str(entry)) for entry in item)
        else:
            pairs.append((key, str(item)))
    return urlencode(pairs)


@_builtin("uuid.rfc4122")
def _uuid_rfc4122(ctx: EvaluationContext, key: Any) -> str:
    name = _require_str("uuid.rfc4122", key)
    return ctx.memo(f"uuid.rfc4122:{name}", lambda: str(uuid.uuid4()))


@_builtin("rand.intn")
def _rand_intn(ctx: EvaluationContext, key: Any, n: Any) -> int:
    name = _require_str("rand.intn", key)
    if not isinstance(n, int) or isinstance(n, bool):
        raise BuiltinError("rand.intn: n must be an integer")
    bound = abs(n)
    if bound == 0:
        return 0
    return ctx.memo(f"rand.intn:{name}:{bound}", lambda: random.randrange(bound))


def _merge_objects(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _merge_objects(current, value)
        else:
            merged[key] = value
    return merged


@_builtin("object.union_n")
def _object_union_n(ctx: EvaluationContext, objects: Any) -> dict[str, Any]:
    if not isinstance(objects, list) or not all(isinstance(item, dict) for item in objects):
        raise BuiltinError("object.union_n: operand must be an array of objects")
    result: dict[str, Any] = {}
    for item in objects:
        result = _merge_objects(result, item)
    return result


@_builtin("opa.runtime")
def _opa_runtime(ctx: EvaluationContext) -> dict[str, Any]:
    return {}


_SEMVER = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)


@_builtin("semver.is_valid")
def _semver_is_valid(ctx: EvaluationContext, value: Any) -> bool:
    return isinstance(value, str) and _SEMVER.match(value) is not None


def _semver_key(value: Any) -> tuple[tuple[int, int, int], tuple[str, ...] | None]:
    match = _SEMVER.match(_require_str("semver.compare", value))
    if match is None:
        raise BuiltinError(f"semver.compare: '{value}' is not a valid SemVer string")
    core = (int(match.group(1)), int(match.group(2)), int(match.group(3)))
    prerelease = tuple(match.group(4).split(".")) if match.group(4) else None
    return core, prerelease


def _compare_identifiers(left: str, right: str) -> int:
    if left.isdigit() and right.isdigit():
        return (int(left) > int(right)) - (int(left) < int(right))
    if left.isdigit():
        return -1
    if right.isdigit():
        return 1
    return (left > right) - (left < right)


@_builtin("semver.compare")
def _semver_compare(ctx: EvaluationContext, left: Any, right: Any) -> int:
    left_core, left_pre = _semver_key(left)
    right_core, right_pre = _semver_key(right)
    if left_core != right_core:
        return 1 if left_core > right_core else -1
    # a version without prerelease sorts after any prerelease of the same core
    if left_pre is None or right_pre is None:
        return (left_pre is None) - (right_pre is None)
    for a, b in zip(left_pre, right_pre):
        order = _compare_identifiers(a, b)
        if order:
            return order
    return (len(left_pre) > len(right_pre)) - (len(left_pre) < len(right_pre))
