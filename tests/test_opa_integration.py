"""End-to-end check against a policy compiled by the real opa toolchain."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from opa_embed import CompiledModule

FIXTURES = Path(__file__).parent / "fixtures" / "policies"
OPA = shutil.which("opa")

pytestmark = pytest.mark.skipif(OPA is None, reason="opa binary not on PATH")


@pytest.fixture(scope="module")
def opa_bundle(tmp_path_factory: pytest.TempPathFactory) -> Path:
    workdir = tmp_path_factory.mktemp("opa")
    shutil.copy(FIXTURES / "example.rego", workdir / "example.rego")
    subprocess.run(
        [OPA, "build", "-t", "wasm", "-e", "example/hello", "-o", "bundle.tar.gz", "example.rego"],
        cwd=workdir,
        check=True,
        capture_output=True,
    )
    return workdir / "bundle.tar.gz"


@pytest.mark.asyncio
async def test_bundle_file(opa_bundle: Path) -> None:
    module = await CompiledModule.from_bundle_file(opa_bundle)
    policy = await module.build_with_data({"world": "world"})
    assert "example/hello" in policy.entrypoints
    assert await policy.eval("example/hello", {"message": "world"}) == [{"result": True}]
    assert await module.evaluate("example/hello", {"message": "worlds"}, data={"world": "world"}) == [
        {"result": False}
    ]


@pytest.mark.asyncio
async def test_wasm_file(opa_bundle: Path, tmp_path: Path) -> None:
    wasm_path = tmp_path / "policy.wasm"
    wasm_path.write_bytes(await CompiledModule.extract_bytecode_from_bundle_file(opa_bundle))
    module = await CompiledModule.from_file(wasm_path)
    policy = await module.build_with_data({"world": "world"})
    assert await policy.eval("example/hello", {"message": "world"}) == [{"result": True}]
    assert await policy.eval("example/hello", {"message": "worlds"}) == [{"result": False}]
