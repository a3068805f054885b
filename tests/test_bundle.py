"""Bundle archive parsing."""

from __future__ import annotations

import io
import json

import pytest

from conftest import build_bundle, build_policy_wasm
from opa_embed import BundleError, CompiledModule, ModuleLoader, PolicyIOError, load_bundle, parse_bundle


def _json(value: object) -> bytes:
    return json.dumps(value).encode("utf-8")


def test_parse_bundle_reads_manifest_and_policy(bundle_bytes: bytes, policy_wasm: bytes) -> None:
    bundle = parse_bundle(bundle_bytes)
    assert bundle.policy_wasm == policy_wasm
    assert bundle.revision == "rev-42"
    assert bundle.wasm_entrypoints == ("example/hello",)
    assert bundle.data == {"world": "world"}


def test_member_paths_are_normalized() -> None:
    wasm = build_policy_wasm()
    for name in ("policy.wasm", "./policy.wasm", "/policy.wasm"):
        assert parse_bundle(build_bundle({name: wasm})).policy_wasm == wasm


def test_uncompressed_tarball_is_accepted() -> None:
    wasm = build_policy_wasm()
    assert parse_bundle(build_bundle({"/policy.wasm": wasm}, gzip=False)).policy_wasm == wasm


def test_nested_data_documents_merge_by_directory() -> None:
    archive = build_bundle(
        {
            "/policy.wasm": build_policy_wasm(),
            "/data.json": _json({"top": 1}),
            "/roles/data.json": _json({"admin": ["alice"]}),
            "/roles/eu/data.json": _json({"admin": ["bob"]}),
        }
    )
    bundle = parse_bundle(archive)
    assert bundle.data == {"top": 1, "roles": {"admin": ["alice"], "eu": {"admin": ["bob"]}}}
    assert bundle.revision is None
    assert bundle.wasm_entrypoints == ()


def test_conflicting_data_documents_are_rejected() -> None:
    archive = build_bundle(
        {
            "/policy.wasm": build_policy_wasm(),
            "/data.json": _json({"roles": 1}),
            "/roles/data.json": _json({"admin": []}),
        }
    )
    with pytest.raises(BundleError, match="conflict"):
        parse_bundle(archive)


def test_invalid_manifest_is_rejected() -> None:
    archive = build_bundle({"/policy.wasm": build_policy_wasm(), "/.manifest": b"[1, 2"})
    with pytest.raises(BundleError, match=".manifest"):
        parse_bundle(archive)


def test_garbage_is_rejected() -> None:
    with pytest.raises(BundleError):
        parse_bundle(b"\x1f\x8b not really gzip")


@pytest.mark.asyncio
async def test_unreadable_stream_raises_io_error() -> None:
    class _Broken(io.RawIOBase):
        def read(self, size: int = -1) -> bytes:
            raise OSError("disk gone")

    with pytest.raises(PolicyIOError, match="disk gone"):
        await load_bundle(_Broken())


@pytest.mark.asyncio
async def test_text_stream_is_rejected() -> None:
    with pytest.raises(TypeError):
        await load_bundle(io.StringIO("policy"))


@pytest.mark.asyncio
async def test_extracted_bytecode_evaluates_like_bundle(bundle_bytes: bytes, builtins) -> None:
    loader = ModuleLoader(builtins=builtins)
    via_bundle = await loader.from_bundle(bundle_bytes)
    via_bytecode = loader.from_bytecode(await CompiledModule.extract_bytecode_from_bundle(bundle_bytes))
    assert via_bundle.digest == via_bytecode.digest

    data = (await loader.load_bundle(bundle_bytes)).data
    for message in ("world", "worlds"):
        left = await via_bundle.evaluate("example/hello", {"message": message}, data=data)
        right = await via_bytecode.evaluate("example/hello", {"message": message}, data=data)
        assert left == right
