"""Tests for the substring and embedding matchers."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from engram.config import EngramConfig, RetrievalConfig
from engram.matching import (
    EmbeddingMatcher,
    SubstringMatcher,
    build_matcher,
    substring_score,
)
from engram.records import Pattern


def _pattern(key: str, context: str = "") -> Pattern:
    return Pattern(
        key=key,
        context=context,
        confidence=0.5,
        last_outcome="success",
        occurrence_count=1,
        created_at="2026-01-01T00:00:00.000000+00:00",
        last_seen="2026-01-01T00:00:00.000000+00:00",
    )


class TestSubstringScore:

    @pytest.mark.parametrize(
        "query, key, context",
        [
            ("add", "add-auth", ""),
            ("ADD", "add-auth", ""),
            ("myapp", "deploy", "MyApp backend"),
            ("please add-auth now", "add-auth", ""),
            ("working on myapp today", "deploy", "myapp"),
        ],
    )
    def test_matches(self, query: str, key: str, context: str) -> None:
        assert substring_score(query, _pattern(key, context)) == 1.0

    def test_no_match(self) -> None:
        assert substring_score("frontend", _pattern("add-auth", "backend")) == 0.0

    def test_empty_context_does_not_match_everything(self) -> None:
        assert substring_score("zzz", _pattern("add-auth", "")) == 0.0

    def test_blank_query_matches_all(self) -> None:
        assert substring_score("  ", _pattern("anything")) == 1.0


class TestSubstringMatcher:

    async def test_scores_in_order(self) -> None:
        patterns = [_pattern("add-auth"), _pattern("deploy"), _pattern("add-db")]
        scores = await SubstringMatcher().score("add", patterns)
        assert scores == [1.0, 0.0, 1.0]


def _embed_response(vectors: list[list[float]]) -> SimpleNamespace:
    return SimpleNamespace(embeddings=vectors)


class TestEmbeddingMatcher:

    def _matcher(self, embed: AsyncMock, min_similarity: float = 0.6) -> EmbeddingMatcher:
        matcher = EmbeddingMatcher("http://localhost:11434", "nomic-embed-text", min_similarity)
        matcher._client = MagicMock()
        matcher._client.embed = embed
        return matcher

    async def test_scores_are_thresholded_cosine(self) -> None:
        embed = AsyncMock(
            return_value=_embed_response([[1.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
        )
        matcher = self._matcher(embed)
        scores = await matcher.score("add auth", [_pattern("login"), _pattern("paint")])
        assert scores[0] == pytest.approx(1.0)
        assert scores[1] == 0.0
        embed.assert_awaited_once()
        assert embed.await_args.kwargs["input"] == ["add auth", "login", "paint"]

    async def test_pattern_embeddings_are_cached(self) -> None:
        embed = AsyncMock(
            side_effect=[
                _embed_response([[1.0, 0.0], [0.6, 0.8]]),
                _embed_response([[0.6, 0.8]]),
            ]
        )
        matcher = self._matcher(embed)
        await matcher.score("first", [_pattern("login")])
        scores = await matcher.score("second", [_pattern("login")])
        assert embed.await_args.kwargs["input"] == ["second"]
        assert scores == [pytest.approx(1.0)]

    async def test_falls_back_to_substring_on_error(self) -> None:
        embed = AsyncMock(side_effect=ConnectionError("ollama down"))
        matcher = self._matcher(embed)
        scores = await matcher.score("add", [_pattern("add-auth"), _pattern("deploy")])
        assert scores == [1.0, 0.0]

    async def test_short_response_falls_back(self) -> None:
        embed = AsyncMock(return_value=_embed_response([[1.0, 0.0]]))
        matcher = self._matcher(embed)
        scores = await matcher.score("add", [_pattern("add-auth")])
        assert scores == [1.0]

    async def test_empty_inputs(self) -> None:
        embed = AsyncMock()
        matcher = self._matcher(embed)
        assert await matcher.score("add", []) == []
        assert await matcher.score(" ", [_pattern("x")]) == [1.0]
        embed.assert_not_awaited()


class TestBuildMatcher:

    def test_default_is_substring(self) -> None:
        assert isinstance(build_matcher(EngramConfig()), SubstringMatcher)

    def test_embedding(self) -> None:
        cfg = EngramConfig(retrieval=RetrievalConfig(matcher="Embedding", min_similarity=0.7))
        matcher = build_matcher(cfg)
        assert isinstance(matcher, EmbeddingMatcher)
        assert matcher._min_similarity == 0.7

    def test_unknown_rejected_by_config(self) -> None:
        with pytest.raises(ValueError, match="retrieval.matcher"):
            RetrievalConfig(matcher="bm25")
