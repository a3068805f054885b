"""Inspect, evaluate and unpack policy modules from the command line."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

from opa_embed import (
    NO_DATA,
    BuiltinRegistry,
    CompiledModule,
    ModuleLoader,
    PolicyError,
    __version__,
    load_runtime_limits,
)

_BUNDLE_SUFFIXES = (".tar.gz", ".tgz")


class UsageError(Exception):
    """Raised when a command line argument cannot be used."""


def main(
    argv: Sequence[str] | None = None,
    *,
    builtins: BuiltinRegistry | None = None,
) -> int:
    """Parse arguments and run one command."""

    parser = build_parser()
    tokens = list(argv) if argv is not None else list(sys.argv[1:])
    if not tokens:
        parser.print_help()
        return 0

    try:
        args = parser.parse_args(tokens)
    except SystemExit as exc:
        return exc.code or 0

    if args.version:
        print(f"opa-embed v{__version__}")
        return 0
    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_dispatch(args, builtins))
    except PolicyError as exc:
        print(f"error[{exc.kind}]: {exc}", file=sys.stderr)
        return 1
    except UsageError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="opa-embed", description="Evaluate OPA WebAssembly policies in-process.")
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.toml with a [runtime] table.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    commands = parser.add_subparsers(dest="command")

    inspect_cmd = commands.add_parser("inspect", help="Show entrypoints and ABI version.")
    inspect_cmd.add_argument("path", type=Path)
    inspect_cmd.add_argument("--bundle", action="store_true", help="Treat PATH as a bundle archive.")

    eval_cmd = commands.add_parser("eval", help="Evaluate one entrypoint.")
    eval_cmd.add_argument("path", type=Path)
    eval_cmd.add_argument("-e", "--entrypoint", default=None, help="Entrypoint name (default: the module default).")
    eval_cmd.add_argument("--input", default="null", help="Input JSON, or @file to read it from a file.")
    eval_cmd.add_argument("--data", default=None, help="Data JSON, or @file to read it from a file.")
    eval_cmd.add_argument(
        "--bundle-data",
        action="store_true",
        dest="bundle_data",
        help="Bind the data documents shipped inside the bundle.",
    )
    eval_cmd.add_argument("--bundle", action="store_true", help="Treat PATH as a bundle archive.")

    extract_cmd = commands.add_parser("extract", help="Write the policy bytecode held by a bundle.")
    extract_cmd.add_argument("path", type=Path)
    extract_cmd.add_argument("-o", "--output", type=Path, required=True)
    return parser


async def _dispatch(args: argparse.Namespace, builtins: BuiltinRegistry | None) -> int:
    if args.command == "extract":
        wasm = await CompiledModule.extract_bytecode_from_bundle_file(args.path)
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_bytes(wasm)
        print(f"wrote {len(wasm)} bytes to {args.output}")
        return 0

    loader = ModuleLoader(limits=load_runtime_limits(args.config), builtins=builtins)
    bundle = None
    if args.bundle or _looks_like_bundle(args.path):
        bundle = await loader.read_bundle(args.path)
        module = loader.from_bytecode(bundle.policy_wasm)
    else:
        module = await loader.from_file(args.path)

    if args.command == "inspect":
        info = (await module.inspect()).to_dict()
        if bundle is not None:
            info["revision"] = bundle.revision
        _print_json(info)
        return 0

    data: Any = NO_DATA
    if args.data is not None:
        data = _read_json_argument(args.data, "--data")
    elif args.bundle_data:
        if bundle is None:
            raise UsageError("--bundle-data requires a bundle")
        data = bundle.data

    entrypoint = args.entrypoint
    if entrypoint is None:
        entrypoint = (await module.inspect()).default_entrypoint
        if entrypoint is None:
            raise UsageError("module has no default entrypoint; pass --entrypoint")

    result = await module.evaluate(entrypoint, _read_json_argument(args.input, "--input"), data=data)
    _print_json(result)
    return 0


def _looks_like_bundle(path: Path) -> bool:
    return path.name.endswith(_BUNDLE_SUFFIXES)


def _read_json_argument(raw: str, flag: str) -> Any:
    text = raw
    if raw.startswith("@"):
        try:
            text = Path(raw[1:]).read_text(encoding="utf-8")
        except OSError as exc:
            raise UsageError(f"{flag}: unable to read {raw[1:]}: {exc}") from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise UsageError(f"{flag}: invalid JSON: {exc}") from exc


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, sort_keys=True))
