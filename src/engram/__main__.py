"""Entry point for ``python -m engram``.

Dispatches to CLI commands (hook, health, stats, ...) or starts the MCP
server over stdio transport if no CLI command is given.
"""

from __future__ import annotations

import sys


def main() -> None:
    """Dispatch CLI commands or run the MCP server."""
    args = sys.argv[1:]

    from engram.cli import COMMANDS

    if args and args[0] in COMMANDS:
        from engram.cli import dispatch
        dispatch(args)
        return

    # Run the MCP server.
    # Multiple instances are safe: SQLite WAL + per-process write lock
    # handle concurrent access.
    from engram.server import mcp
    mcp.run()


if __name__ == "__main__":
    main()
