"""Run the opa-embed command line with ``python -m opa_embed_cli``."""

from .main import main as _main


def run() -> int:
    return _main()


def main() -> int:
    """Entry point for the ``opa-embed`` console script."""
    return run()


if __name__ == "__main__":
    raise SystemExit(run())
