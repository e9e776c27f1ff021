"""Pattern retrieval for the pre-task hook.

Answers "what has worked before in this context?" by scoring stored
patterns against the task context with a :class:`~engram.matching.Matcher`,
dropping the ones that do not match, and ranking the rest.  The default
substring matcher is pushed down into SQL; other matchers score every
pattern above the confidence floor in batches of ``candidate_limit``.

Ranking is by matcher score descending; ties keep the store's order
(confidence, then occurrence count, then recency, all descending).  With
the default substring matcher every match scores ``1.0``, so the result is
simply the store order filtered by relevance.

Usage::

    from engram.retrieval import RetrievalEngine

    engine = RetrievalEngine(storage, matcher)
    for ranked in await engine.retrieve("add auth", top_n=5):
        print(ranked.rank, ranked.pattern.key, ranked.pattern.confidence)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from engram.config import RetrievalConfig, get_config
from engram.errors import ValidationError
from engram.matching import Matcher, SubstringMatcher
from engram.records import Pattern
from engram.storage import Storage

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RankedPattern:
    """A retrieved pattern with its 1-based rank and matcher score."""

    pattern: Pattern
    rank: int
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "pattern_key": self.pattern.key,
            "confidence": round(self.pattern.confidence, 6),
            "occurrence_count": self.pattern.occurrence_count,
            "context": self.pattern.context,
            "score": round(self.score, 4),
        }


class RetrievalEngine:
    """Ranks stored patterns against a task context.

    Parameters
    ----------
    storage:
        An initialised :class:`~engram.storage.Storage`.
    matcher:
        Scoring strategy; defaults to :class:`~engram.matching.SubstringMatcher`.
    config:
        Retrieval tunables; defaults to ``get_config().retrieval``.
    """

    def __init__(
        self,
        storage: Storage,
        matcher: Matcher | None = None,
        config: RetrievalConfig | None = None,
    ) -> None:
        self._storage = storage
        self._matcher = matcher or SubstringMatcher()
        self._cfg = config or get_config().retrieval

    @property
    def matcher(self) -> Matcher:
        return self._matcher

    async def retrieve(self, context: str, top_n: int | None = None) -> list[RankedPattern]:
        """Return up to *top_n* patterns relevant to *context*, best first.

        Parameters
        ----------
        context:
            The task description or context to match against.  Empty or
            blank returns the top patterns overall.
        top_n:
            Maximum number of results; defaults to ``retrieval.top_n``.
            ``0`` returns an empty list.

        Raises
        ------
        ValidationError
            *top_n* is negative.
        """
        if top_n is None:
            top_n = self._cfg.top_n
        if top_n < 0:
            raise ValidationError(f"top_n must be >= 0, got {top_n}")
        if top_n == 0:
            return []

        query = (context or "").strip()
        if not query or isinstance(self._matcher, SubstringMatcher):
            # Substring matches all score 1.0, so the store can filter and
            # rank them in SQL.
            patterns = await self._storage.search_patterns(
                query, self._cfg.min_confidence, top_n
            )
            return [
                RankedPattern(pattern=p, rank=i, score=1.0)
                for i, p in enumerate(patterns, start=1)
            ]

        candidates = await self._storage.get_patterns("", self._cfg.min_confidence)
        if not candidates:
            return []

        scored: list[tuple[Pattern, float]] = []
        batch = self._cfg.candidate_limit
        for start in range(0, len(candidates), batch):
            chunk = candidates[start:start + batch]
            scores = await self._matcher.score(query, chunk)
            scored.extend((p, s) for p, s in zip(chunk, scores) if s > 0.0)
        # sorted() is stable, so equal scores keep the store order.
        scored.sort(key=lambda item: item[1], reverse=True)

        ranked = [
            RankedPattern(pattern=p, rank=i, score=s)
            for i, (p, s) in enumerate(scored[:top_n], start=1)
        ]
        log.debug(
            "Retrieved %d/%d patterns for %r using %s matcher",
            len(ranked),
            len(candidates),
            query,
            self._matcher.name,
        )
        return ranked
