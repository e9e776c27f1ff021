"""MCP server exposing the hook verbs and maintenance operations as tools.

The same :class:`~engram.hooks.HookDispatcher` that backs the CLI hooks
serves every tool here, so an agent talking MCP gets exactly the results a
shell hook would print, as structured dicts.

The ``mcp`` object is imported by :mod:`engram.__main__` and launched with
``mcp.run()`` over stdio.

Architecture notes
------------------
* A single global dispatcher is created lazily on the first tool call via
  :func:`_ensure_dispatcher`.  Its store lives at ``db_path`` relative to
  the server's working directory.
* Optional string parameters default to ``""`` because MCP lacks
  first-class optionals.  The dispatcher treats an empty string as absent,
  so an omitted ``context`` or ``error_message`` is stored as empty and a
  blank ``summary`` is generated from the session counts.
* Hook verbs report problems in their ``status`` field.  The remaining
  tools catch exceptions and return structured error dicts so the MCP
  server never crashes on a bad request.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any

from mcp.server.fastmcp import FastMCP

from engram.hooks import HookDispatcher
from engram.storage import Storage

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Server and dispatcher instances
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "engram",
    instructions=(
        "Self-learning pattern memory. Call pre_task before starting a task to "
        "see what worked before, post_task afterwards to record the outcome, "
        "and pre_command before running shell commands."
    ),
)

_dispatcher: HookDispatcher | None = None


def _ensure_dispatcher() -> HookDispatcher:
    """Create the dispatcher on the first tool call."""
    global _dispatcher  # noqa: PLW0603
    if _dispatcher is None:
        _dispatcher = HookDispatcher(Storage())
    return _dispatcher


def _error_response(err: Exception) -> dict[str, Any]:
    """Create a structured error dict for MCP tool responses.

    Instead of letting exceptions propagate and crash the MCP server,
    every tool catches broadly and returns a dict with ``error`` and
    ``detail`` keys so the calling model can understand what went wrong.
    """
    return {
        "error": type(err).__name__,
        "detail": str(err),
        "traceback": traceback.format_exception_only(type(err), err)[-1].strip(),
    }


# ===================================================================
# Hook verbs
# ===================================================================


@mcp.tool()
async def pre_task(task: str, context: str = "") -> dict[str, Any]:
    """Look up patterns that worked before for a task. Call this before starting work.

    Args:
        task: Short description of the task, e.g. "add auth middleware".
        context: Optional scope such as a project name; used as the query
            when task is empty.

    Returns:
        A dict with ``patterns`` (ranked list of pattern_key/confidence),
        and ``warning`` plus ``recent_errors`` when this task has failed
        repeatedly.  ``status`` is ``degraded`` if the store is unavailable.
    """
    result = await _ensure_dispatcher().pre_task(task, context)
    return result.to_dict()


@mcp.tool()
async def post_task(
    task: str,
    outcome: str,
    error_message: str = "",
    context: str = "",
) -> dict[str, Any]:
    """Record whether a task succeeded or failed. Updates the pattern's confidence.

    Args:
        task: The same task description passed to pre_task.
        outcome: "success" or "failure".
        error_message: What went wrong, for failures.
        context: Optional scope such as a project name.

    Returns:
        A dict with the updated ``pattern`` and its new ``confidence``.
    """
    result = await _ensure_dispatcher().post_task(task, outcome, error_message, context)
    return result.to_dict()


@mcp.tool()
async def pre_command(command: str) -> dict[str, Any]:
    """Check a shell command against the dangerous-command blocklist.

    Args:
        command: The full command line.

    Returns:
        A dict with ``allowed``; when false, ``rule`` and ``reason`` explain
        the block and the command must not be run.
    """
    result = await _ensure_dispatcher().pre_command(command)
    return result.to_dict()


@mcp.tool()
async def session_start() -> dict[str, Any]:
    """Start a session. Returns the last session summary plus proven and weak patterns."""
    result = await _ensure_dispatcher().session_start()
    return result.to_dict()


@mcp.tool()
async def session_end(summary: str = "") -> dict[str, Any]:
    """End the session: persist its summary and prune persistently weak patterns.

    Args:
        summary: Optional free-text summary; generated from the counts when empty.
    """
    result = await _ensure_dispatcher().session_end(summary or None)
    return result.to_dict()


# ===================================================================
# Maintenance and causal links
# ===================================================================


@mcp.tool()
async def status() -> dict[str, Any]:
    """Report store statistics: record counts, size, integrity and session state."""
    try:
        return await _ensure_dispatcher().status()
    except Exception as exc:
        logger.exception("status failed")
        return _error_response(exc)


@mcp.tool()
async def consolidate(dry_run: bool = True) -> dict[str, Any]:
    """Prune patterns that stay weak (confidence < 0.2, seen > 5 times, idle > 7 days).

    Args:
        dry_run: Preview which patterns would be pruned without deleting (default true).
    """
    try:
        return await _ensure_dispatcher().consolidate(dry_run=dry_run)
    except Exception as exc:
        logger.exception("consolidate failed")
        return _error_response(exc)


@mcp.tool()
async def record_causal_link(cause: str, effect: str, outcome: str = "success") -> dict[str, Any]:
    """Record evidence that one thing leads to another, e.g. "missing index" -> "slow query".

    Args:
        cause: The cause.
        effect: The observed effect.
        outcome: "success" if this observation confirms the link, "failure"
            if it contradicts it.
    """
    try:
        return await _ensure_dispatcher().record_causal_link(cause, effect, outcome)
    except Exception as exc:
        logger.exception("record_causal_link failed")
        return _error_response(exc)


@mcp.tool()
async def causal_links(
    cause: str = "",
    min_confidence: float = 0.0,
    limit: int = 20,
) -> dict[str, Any]:
    """List known causal links, strongest first.

    Args:
        cause: Case-insensitive substring of the cause to filter on; empty for all.
        min_confidence: Minimum link confidence.
        limit: Maximum number of links.
    """
    try:
        links = await _ensure_dispatcher().causal_links(cause, min_confidence, limit)
        return {"links": links, "count": len(links)}
    except Exception as exc:
        logger.exception("causal_links failed")
        return _error_response(exc)
