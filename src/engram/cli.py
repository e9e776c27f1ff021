"""CLI handlers for hooks and maintenance commands.

Each hook subcommand reads a JSON object from stdin, runs one verb through
a freshly built :class:`~engram.hooks.HookDispatcher`, prints the rendered
result on stdout and exits with the result's exit code (0 ok, 1 rejected or
error, 2 blocked).  A block reason is also written to stderr, where the
calling agent looks for it on exit code 2.

Usage::

    echo '{"task": "add-auth", "outcome": "success"}' | python -m engram hook post-task
    echo '{"command": "rm -rf /"}' | python -m engram hook pre-command
    python -m engram health
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any

from engram.config import get_config
from engram.hooks import HookDispatcher
from engram.results import BLOCKED, HookResult
from engram.storage import HOOK_VERBS, Storage

log = logging.getLogger(__name__)

COMMANDS: tuple[str, ...] = (
    "hook",
    "health",
    "stats",
    "consolidate",
    "backup",
    "prune-failures",
)
"""First arguments handled here rather than by the MCP server."""


def _read_stdin_json() -> Any:
    """Read and parse JSON from stdin (UTF-8)."""
    raw: str = ""
    try:
        raw = sys.stdin.read()
        if not raw or not raw.strip():
            return {}
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        log.warning(
            "Failed to parse stdin JSON (%s). Input preview: %r. "
            "Hook will proceed with empty data.",
            exc,
            raw[:200] if raw else "<unread>",
        )
        return {}


def _build_dispatcher() -> HookDispatcher:
    """Build a dispatcher over the configured store.  One per invocation."""
    cfg = get_config()
    return HookDispatcher(Storage(cfg.db_path, config=cfg), config=cfg)


# ------------------------------------------------------------------
# Hooks
# ------------------------------------------------------------------

async def _run_hook(verb: str, data: Any) -> HookResult:
    dispatcher = _build_dispatcher()
    try:
        return await dispatcher.dispatch(verb, data)
    finally:
        await dispatcher.close()


def run_hook(verb: str) -> None:
    """Run one hook verb over stdin JSON and exit with its exit code."""
    if verb not in HOOK_VERBS:
        print(
            f"Unknown hook subcommand: {verb}. Must be one of: {', '.join(HOOK_VERBS)}",
            file=sys.stderr,
        )
        sys.exit(1)

    data = _read_stdin_json()
    result = asyncio.run(_run_hook(verb, data))
    text = result.render()
    if text:
        print(text)
    if result.status == BLOCKED:
        print(text, file=sys.stderr)
    sys.exit(result.exit_code)


# ------------------------------------------------------------------
# Health and stats
# ------------------------------------------------------------------

async def _health() -> str:
    """Run health check and return formatted status."""
    dispatcher = _build_dispatcher()
    try:
        status = await dispatcher.status()
    except Exception as exc:
        return f"Health check failed: {exc}"
    finally:
        await dispatcher.close()

    lines = [
        "engram health check:",
        f"  db: {status['db_path']}",
        f"  db_size: {status['db_size_mb']:.2f} MB",
        f"  integrity: {status['integrity']}",
        f"  patterns: {status['patterns']}",
        f"  failures: {status['failures']}",
        f"  sessions: {status['sessions']}",
        f"  causal_links: {status['causal_links']}",
        f"  session: {status['session_state']}",
        f"  matcher: {status['matcher']}",
    ]
    return "\n".join(lines)


def run_health() -> None:
    """Run health check command."""
    result = asyncio.run(_health())
    print(result)


async def _stats() -> str:
    """Query hook_stats and format a human-readable summary."""
    dispatcher = _build_dispatcher()
    try:
        stats = await dispatcher.storage.hook_stats()
        counts = await dispatcher.storage.table_counts()
    except Exception as exc:
        return f"Stats failed: {exc}"
    finally:
        await dispatcher.close()

    lines = ["engram stats:", ""]
    lines.append("  Records:")
    for table, count in counts.items():
        lines.append(f"    {table:18s} {count}")
    lines.append("")

    if not stats:
        lines.append("  Hooks fired: none")
        return "\n".join(lines)

    lines.append("  Hooks fired:")
    for row in stats:
        lines.append(
            f"    {row['verb']:14s} {row['status']:9s} calls={row['calls']}"
            f"  avg={row['avg_latency_ms']:.0f}ms  max={row['max_latency_ms']}ms"
        )
    return "\n".join(lines)


def run_stats() -> None:
    """Run stats command."""
    result = asyncio.run(_stats())
    print(result)


# ------------------------------------------------------------------
# Maintenance
# ------------------------------------------------------------------

async def _consolidate(dry_run: bool) -> str:
    dispatcher = _build_dispatcher()
    try:
        result = await dispatcher.consolidate(dry_run=dry_run)
    finally:
        await dispatcher.close()

    if result["skipped"]:
        return "Consolidation already in progress; skipped"
    verb = "Would prune" if dry_run else "Pruned"
    lines = [f"{verb} {result['pruned']} patterns (last seen before {result['cutoff']})"]
    lines.extend(f"  - {key}" for key in result["pruned_keys"])
    return "\n".join(lines)


def run_consolidate(args: list[str]) -> None:
    """Run consolidation manually."""
    dry_run = "--dry-run" in args or "-n" in args
    try:
        print(asyncio.run(_consolidate(dry_run)))
    except Exception as exc:
        print(f"Consolidation failed: {exc}", file=sys.stderr)
        sys.exit(1)


async def _backup() -> str:
    dispatcher = _build_dispatcher()
    try:
        path = await dispatcher.storage.backup()
    finally:
        await dispatcher.close()
    return f"Backup created: {path}"


def run_backup() -> None:
    """Create a timestamped backup of the store."""
    try:
        print(asyncio.run(_backup()))
    except Exception as exc:
        print(f"Backup failed: {exc}", file=sys.stderr)
        sys.exit(1)


async def _prune_failures(days: int | None) -> str:
    dispatcher = _build_dispatcher()
    try:
        deleted = await dispatcher.failures.prune(days)
    finally:
        await dispatcher.close()
    return f"Pruned {deleted} failures"


def run_prune_failures(args: list[str]) -> None:
    """Delete failure records older than the retention age."""
    days: int | None = None
    if "--days" in args:
        idx = args.index("--days")
        raw = args[idx + 1] if idx + 1 < len(args) else ""
        try:
            days = int(raw)
        except ValueError:
            print(f"Error: --days must be an integer, got {raw!r}", file=sys.stderr)
            sys.exit(1)

    try:
        print(asyncio.run(_prune_failures(days)))
    except Exception as exc:
        print(f"Prune failed: {exc}", file=sys.stderr)
        sys.exit(1)


def dispatch(args: list[str]) -> None:
    """Main CLI dispatcher.

    Parameters
    ----------
    args:
        Command-line arguments after ``python -m engram``.
        e.g. ``["hook", "pre-task"]`` or ``["consolidate", "--dry-run"]``
    """
    if not args:
        return  # Fall through to MCP server.

    command = args[0]

    if command in COMMANDS:
        try:
            get_config()
        except ValueError as exc:
            print(f"[engram] invalid configuration: {exc}", file=sys.stderr)
            sys.exit(1)

    if command == "hook":
        if len(args) < 2:
            print("Usage: python -m engram hook <verb>", file=sys.stderr)
            sys.exit(1)
        run_hook(args[1])

    elif command == "health":
        run_health()
        sys.exit(0)

    elif command == "stats":
        run_stats()
        sys.exit(0)

    elif command == "consolidate":
        run_consolidate(args[1:])
        sys.exit(0)

    elif command == "backup":
        run_backup()
        sys.exit(0)

    elif command == "prune-failures":
        run_prune_failures(args[1:])
        sys.exit(0)

    # Unknown command -- don't exit, fall through to MCP server.
