"""Read OPA bundle archives: policy bytecode, manifest and data documents."""

from __future__ import annotations

import asyncio
import inspect
import io
import json
import logging
import tarfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, BinaryIO, Union

from .errors import BundleError, PolicyIOError

logger = logging.getLogger(__name__)

POLICY_WASM_PATH = "policy.wasm"
MANIFEST_PATH = ".manifest"
DATA_FILE_NAME = "data.json"

BundleSource = Union[bytes, bytearray, memoryview, BinaryIO, Any]


@dataclass(frozen=True)
class PolicyBundle:
    policy_wasm: bytes
    manifest: dict[str, Any] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def revision(self) -> str | None:
        revision = self.manifest.get("revision")
        return str(revision) if revision is not None else None

    @property
    def wasm_entrypoints(self) -> tuple[str, ...]:
        entries = self.manifest.get("wasm")
        if not isinstance(entries, list):
            return ()
        return tuple(
            str(entry["entrypoint"])
            for entry in entries
            if isinstance(entry, dict) and entry.get("entrypoint")
        )


def parse_bundle(raw: bytes) -> PolicyBundle:
    """Parse an in-memory (optionally gzipped) bundle tarball."""

    policy: bytes | None = None
    manifest: dict[str, Any] = {}
    data: dict[str, Any] = {}
    try:
        with tarfile.open(fileobj=io.BytesIO(raw), mode="r:*") as archive:
            for member in archive:
                if not member.isfile():
                    continue
                path = _normalize_member(member.name)
                if path == POLICY_WASM_PATH:
                    policy = _read_member(archive, member)
                elif path == MANIFEST_PATH:
                    manifest = _parse_json_object(path, _read_member(archive, member))
                elif PurePosixPath(path).name == DATA_FILE_NAME:
                    document = _parse_json_document(path, _read_member(archive, member))
                    _merge_at(data, PurePosixPath(path).parent.parts, document, path)
    except (tarfile.TarError, EOFError, OSError, zlib.error) as exc:
        raise BundleError(f"malformed bundle archive: {exc}") from exc

    if policy is None:
        raise BundleError(f"bundle does not contain /{POLICY_WASM_PATH}")
    logger.debug("parsed bundle policy_bytes=%s revision=%s", len(policy), manifest.get("revision"))
    return PolicyBundle(policy_wasm=policy, manifest=manifest, data=data)


async def load_bundle(source: BundleSource) -> PolicyBundle:
    raw = await read_source(source)
    return await asyncio.to_thread(parse_bundle, raw)


async def read_bundle(path: Path | str) -> PolicyBundle:
    return await load_bundle(await read_file(path))


async def read_file(path: Path | str) -> bytes:
    target = Path(path)
    try:
        return await asyncio.to_thread(target.read_bytes)
    except OSError as exc:
        raise PolicyIOError(f"unable to read {target}: {exc}") from exc


async def read_source(source: BundleSource) -> bytes:
    """Drain bytes, a binary file object or an async reader into memory."""

    if isinstance(source, (bytes, bytearray, memoryview)):
        return bytes(source)
    reader = getattr(source, "read", None)
    if reader is None:
        raise TypeError(f"unsupported bundle source {type(source).__name__}")
    try:
        if inspect.iscoroutinefunction(reader):
            chunk = await reader()
        else:
            chunk = await asyncio.to_thread(reader)
    except OSError as exc:
        raise PolicyIOError(f"unable to read bundle stream: {exc}") from exc
    if isinstance(chunk, str):
        raise TypeError("bundle stream must be opened in binary mode")
    return bytes(chunk)


def _normalize_member(name: str) -> str:
    parts = [part for part in PurePosixPath(name).parts if part not in ("/", ".")]
    return "/".join(parts)


def _read_member(archive: tarfile.TarFile, member: tarfile.TarInfo) -> bytes:
    handle = archive.extractfile(member)
    if handle is None:
        raise BundleError(f"unable to read bundle member {member.name}")
    with handle:
        return handle.read()


def _parse_json_document(path: str, raw: bytes) -> Any:
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise BundleError(f"invalid JSON in bundle member {path}: {exc}") from exc


def _parse_json_object(path: str, raw: bytes) -> dict[str, Any]:
    document = _parse_json_document(path, raw)
    if not isinstance(document, dict):
        raise BundleError(f"bundle member {path} must hold a JSON object")
    return document


def _merge_at(tree: dict[str, Any], parts: tuple[str, ...], document: Any, path: str) -> None:
    if not parts:
        if not isinstance(document, dict):
            raise BundleError(f"root {path} must hold a JSON object")
        _merge_objects(tree, document, path)
        return
    node = tree
    for part in parts[:-1]:
        child = node.setdefault(part, {})
        if not isinstance(child, dict):
            raise BundleError(f"data conflict at {path}")
        node = child
    leaf = parts[-1]
    if leaf in node and isinstance(node[leaf], dict) and isinstance(document, dict):
        _merge_objects(node[leaf], document, path)
    elif leaf in node:
        raise BundleError(f"data conflict at {path}")
    else:
        node[leaf] = document


def _merge_objects(target: dict[str, Any], overlay: dict[str, Any], path: str) -> None:
    for key, value in overlay.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            _merge_objects(current, value, path)
        elif key in target:
            raise BundleError(f"data conflict for key '{key}' in {path}")
        else:
            target[key] = value
