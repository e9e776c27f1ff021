"""Pluggable relevance scoring between a task context and stored patterns.

The retrieval engine asks a :class:`Matcher` for one score per candidate
pattern; a score of ``0.0`` means "not relevant" and the pattern is dropped.

Two strategies ship:

- :class:`SubstringMatcher` (default) -- case-insensitive substring test in
  both directions between the query and each pattern's key and context.
  Scores are ``1.0`` or ``0.0``, so ranking falls back entirely to the
  store's confidence ordering.
- :class:`EmbeddingMatcher` -- cosine similarity of Ollama embeddings,
  thresholded by ``retrieval.min_similarity``.  Any failure to reach the
  embedding model degrades to substring matching for that query.

Usage::

    from engram.matching import build_matcher

    matcher = build_matcher(get_config())
    scores = await matcher.score("add auth", patterns)
"""

from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from typing import Sequence

from engram.config import EngramConfig
from engram.records import Pattern

log = logging.getLogger(__name__)

_EMBED_TIMEOUT_SECONDS = 10.0
_EMBED_CACHE_MAX = 2048


def _pattern_text(pattern: Pattern) -> str:
    return f"{pattern.key} {pattern.context}".strip()


def substring_score(query: str, pattern: Pattern) -> float:
    """``1.0`` if *query* and *pattern* overlap as substrings, else ``0.0``.

    A pattern matches when the query occurs in its key or context, or when
    its (non-empty) key or context occurs in the query.  Comparison is
    case-insensitive.
    """
    needle = query.casefold().strip()
    if not needle:
        return 1.0
    for field_value in (pattern.key, pattern.context):
        hay = field_value.casefold().strip()
        if not hay:
            continue
        if needle in hay or hay in needle:
            return 1.0
    return 0.0


class Matcher(ABC):
    """Scores candidate patterns against a query."""

    name: str = "matcher"

    @abstractmethod
    async def score(self, query: str, patterns: Sequence[Pattern]) -> list[float]:
        """Return one relevance score in ``[0, 1]`` per pattern, in order."""


class SubstringMatcher(Matcher):
    """Case-insensitive bidirectional substring matching."""

    name = "substring"

    def match(self, query: str, pattern: Pattern) -> float:
        return substring_score(query, pattern)

    async def score(self, query: str, patterns: Sequence[Pattern]) -> list[float]:
        return [self.match(query, p) for p in patterns]


class EmbeddingMatcher(Matcher):
    """Semantic matching via Ollama embeddings.

    Pattern embeddings are cached in memory by text, so a long-running
    process (the MCP server) only embeds each pattern once.  Hook processes
    are short-lived and pay for one batch embed per query.

    Parameters
    ----------
    ollama_url:
        Base URL of the Ollama daemon.
    model:
        Embedding model name.
    min_similarity:
        Cosine similarity below which a pattern scores ``0.0``.
    """

    name = "embedding"

    def __init__(
        self,
        ollama_url: str,
        model: str,
        min_similarity: float = 0.6,
    ) -> None:
        self._ollama_url = ollama_url
        self._model = model
        self._min_similarity = min_similarity
        self._client = None  # lazily created in _embed()
        self._cache: dict[str, list[float]] = {}
        self._fallback = SubstringMatcher()

    async def score(self, query: str, patterns: Sequence[Pattern]) -> list[float]:
        if not patterns:
            return []
        if not query.strip():
            return [1.0] * len(patterns)
        try:
            texts = [_pattern_text(p) for p in patterns]
            missing = [t for t in dict.fromkeys(texts) if t not in self._cache]
            vectors = await self._embed([query, *missing])
            query_vec = vectors[0]
            for text, vec in zip(missing, vectors[1:]):
                self._remember(text, vec)
        except Exception as exc:
            log.warning(
                "Embedding matcher unavailable (%s); falling back to substring matching",
                exc,
            )
            return await self._fallback.score(query, patterns)

        scores: list[float] = []
        for text in texts:
            similarity = _cosine(query_vec, self._cache[text])
            scores.append(similarity if similarity >= self._min_similarity else 0.0)
        return scores

    async def _embed(self, inputs: list[str]) -> list[list[float]]:
        if self._client is None:
            import ollama

            self._client = ollama.AsyncClient(host=self._ollama_url)
        response = await asyncio.wait_for(
            self._client.embed(model=self._model, input=inputs),
            timeout=_EMBED_TIMEOUT_SECONDS,
        )
        embeddings = list(response.embeddings)
        if len(embeddings) != len(inputs):
            raise ValueError(
                f"Expected {len(inputs)} embeddings from {self._model}, got {len(embeddings)}"
            )
        return [list(vec) for vec in embeddings]

    def _remember(self, text: str, vector: list[float]) -> None:
        if len(self._cache) >= _EMBED_CACHE_MAX:
            # Drop the oldest entry; dicts preserve insertion order.
            self._cache.pop(next(iter(self._cache)))
        self._cache[text] = vector


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity clamped to ``[0, 1]``."""
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return max(0.0, min(1.0, dot / (norm_a * norm_b)))


def build_matcher(config: EngramConfig) -> Matcher:
    """Instantiate the matcher named by ``config.retrieval.matcher``."""
    name = config.retrieval.matcher.strip().lower()
    if name == SubstringMatcher.name:
        return SubstringMatcher()
    if name == EmbeddingMatcher.name:
        return EmbeddingMatcher(
            config.ollama_url,
            config.embedding_model,
            config.retrieval.min_similarity,
        )
    raise ValueError(
        f"Unknown matcher {config.retrieval.matcher!r}. "
        f"Must be one of: {SubstringMatcher.name}, {EmbeddingMatcher.name}"
    )
