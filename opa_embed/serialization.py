"""JSON conversion at the sandbox boundary."""

from __future__ import annotations

import json
from functools import lru_cache
from typing import Any

from pydantic import TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError, to_jsonable_python

from .errors import DeserializeError, SerializeError


def to_json_value(value: Any) -> Any:
    """Convert dataclasses, models and other supported values to plain JSON data."""

    try:
        return to_jsonable_python(value)
    except PydanticSerializationError as exc:
        raise SerializeError(f"value of type {type(value).__name__} is not serializable: {exc}") from exc


def encode_value(value: Any) -> bytes:
    plain = to_json_value(value)
    try:
        text = json.dumps(plain, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise SerializeError(f"value cannot be encoded as JSON: {exc}") from exc
    return text.encode("utf-8")


def decode_value(raw: bytes, result_type: Any = None) -> Any:
    try:
        value = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DeserializeError(f"sandbox returned invalid JSON: {exc}") from exc
    if result_type is None:
        return value
    try:
        return _adapter(result_type).validate_python(value)
    except ValidationError as exc:
        raise DeserializeError(f"result does not match {result_type!r}: {exc}") from exc


@lru_cache(maxsize=128)
def _adapter(result_type: Any) -> TypeAdapter[Any]:
    return TypeAdapter(result_type)
