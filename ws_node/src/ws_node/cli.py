"""Command-line entry points for ws_node."""

from __future__ import annotations

import sys

from uvicorn.main import main as uvicorn_main


def main() -> None:
    """Delegate to uvicorn's CLI entry point.

    Usage: ``ws-node ws_node.app.main:app --host 127.0.0.1 --port 8090``
    """

    sys.exit(uvicorn_main())
