"""Shared fixtures: WebAssembly test policies and bundles built from them."""

from __future__ import annotations

import io
import json
import tarfile
from pathlib import Path
from typing import Any

import pytest
from wasmtime import wat2wasm

from opa_embed import BuiltinRegistry, EvaluationContext, default_builtins

FIXTURES = Path(__file__).parent / "fixtures"
EXAMPLE_WAT = FIXTURES / "policies" / "example.wat"


def build_policy_wasm(*, major: int = 1, minor: int = 2) -> bytes:
    text = EXAMPLE_WAT.read_text(encoding="utf-8")
    text = text.replace("__ABI_MAJOR__", str(major)).replace("__ABI_MINOR__", str(minor))
    return bytes(wat2wasm(text))


def build_bundle(members: dict[str, bytes], *, gzip: bool = True) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz" if gzip else "w") as archive:
        for name, payload in members.items():
            info = tarfile.TarInfo(name=name)
            info.size = len(payload)
            archive.addfile(info, io.BytesIO(payload))
    return buffer.getvalue()


def _echo(ctx: EvaluationContext, value: Any) -> list[dict[str, Any]]:
    return [{"result": value}]


def _pair(ctx: EvaluationContext, first: Any, second: Any) -> list[dict[str, Any]]:
    return [{"result": [first, second]}]


def example_builtins() -> BuiltinRegistry:
    return default_builtins().extended({"test.echo": _echo, "test.pair": _pair})


@pytest.fixture(params=[1, 2], ids=["abi-1.1", "abi-1.2"])
def policy_wasm(request: pytest.FixtureRequest) -> bytes:
    return build_policy_wasm(minor=request.param)


@pytest.fixture
def builtins() -> BuiltinRegistry:
    return example_builtins()


@pytest.fixture
def bundle_bytes(policy_wasm: bytes) -> bytes:
    manifest = {"revision": "rev-42", "roots": ["example"], "wasm": [{"entrypoint": "example/hello", "module": "/policy.wasm"}]}
    return build_bundle(
        {
            "/.manifest": json.dumps(manifest).encode("utf-8"),
            "/policy.wasm": policy_wasm,
            "/data.json": json.dumps({"world": "world"}).encode("utf-8"),
        }
    )


@pytest.fixture
def bundle_path(tmp_path: Path, bundle_bytes: bytes) -> Path:
    path = tmp_path / "bundle.tar.gz"
    path.write_bytes(bundle_bytes)
    return path
