"""engram -- self-learning pattern memory for coding-assistant hooks.

Quick start::

    from engram import HookDispatcher, Storage

    async def main():
        dispatcher = HookDispatcher(Storage())

        await dispatcher.post_task("add-auth", "success")
        result = await dispatcher.pre_task("add")
        print(result.render())

        await dispatcher.close()

For lower-level access, import from submodules::

    from engram.confidence import update_confidence, seed_confidence
    from engram.retrieval import RetrievalEngine, RankedPattern
    from engram.safety import check, Verdict
    from engram.consolidation import ConsolidationEngine, ConsolidationResult
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from engram.errors import Corrupt, InvalidKey, StoreError, StoreUnavailable, ValidationError
from engram.hooks import HookDispatcher
from engram.records import CausalLink, Failure, Pattern, Session
from engram.storage import HOOK_VERBS, Storage

__all__ = [
    "__version__",
    "HookDispatcher",
    "Storage",
    "HOOK_VERBS",
    "Pattern",
    "Failure",
    "Session",
    "CausalLink",
    "StoreError",
    "StoreUnavailable",
    "Corrupt",
    "ValidationError",
    "InvalidKey",
]
