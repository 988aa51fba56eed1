"""
Chunk retrieval for question answering: lexical scoring, with optional dense
fusion when hybrid search is enabled. Hybrid failures degrade to keyword mode.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Literal

from .config import (
    DENSE_WEIGHT_LONG_QUERY,
    DENSE_WEIGHT_SHORT_QUERY,
    MAX_CONTEXT_CHARS,
    SHORT_QUERY_TOKEN_COUNT,
    is_hybrid_search_enabled,
)
from .embeddings import EmbeddingCacheManager, cosine_similarity
from .llm_client import LLMClient
from .models import PaperIndex, TextChunk
from .observability import get_logger
from .tokenization import tokenize_for_retrieval, unique_tokens

logger = get_logger(__name__)

RetrievalMode = Literal["keyword", "hybrid"]


@dataclass
class RetrievalResult:
    chunks: list[TextChunk]
    mode: RetrievalMode


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------

def score_chunk(query_tokens: list[str], chunk_text: str) -> float:
    """Sum of ``1 + ln(tf)`` over matched query tokens, scaled by ``1/sqrt(len)``."""
    tokens = tokenize_for_retrieval(chunk_text)
    if not tokens or not query_tokens:
        return 0.0

    counts: dict[str, int] = {}
    for token in tokens:
        counts[token] = counts.get(token, 0) + 1

    score = 0.0
    for token in query_tokens:
        tf = counts.get(token, 0)
        if tf > 0:
            score += 1.0 + math.log(tf)
    return score / math.sqrt(len(tokens))


def normalize_scores(scores: dict[str, float]) -> dict[str, float]:
    """Min-max scaling into [0, 1]; a flat map becomes all ones."""
    if not scores:
        return {}
    values = list(scores.values())
    low, high = min(values), max(values)
    if high - low < 1e-9:
        return {key: 1.0 for key in scores}
    span = high - low
    return {key: (value - low) / span for key, value in scores.items()}


def limit_chunks_by_context(chunks: list[TextChunk], max_chars: int = MAX_CONTEXT_CHARS) -> list[TextChunk]:
    """Keeps chunks in order until the running length reaches ``max_chars``; the crossing chunk is kept."""
    selected: list[TextChunk] = []
    total = 0
    for chunk in chunks:
        if total >= max_chars:
            break
        selected.append(chunk)
        total += len(chunk.text)
    return selected


def select_summary_chunks(index: PaperIndex, max_chars: int = MAX_CONTEXT_CHARS) -> list[TextChunk]:
    return limit_chunks_by_context(list(index.chunks), max_chars)


def _top_by_score(chunks: list[TextChunk], scores: dict[str, float], top_k: int) -> list[TextChunk]:
    # sorted() is stable, so ties keep content order.
    ranked = sorted((chunk for chunk in chunks if scores.get(chunk.id, 0.0) > 0), key=lambda c: scores[c.id], reverse=True)
    return ranked[:top_k]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class RetrievalEngine:
    def __init__(
        self,
        *,
        embeddings: EmbeddingCacheManager,
        client: LLMClient,
        hybrid_enabled: Callable[[], bool] = is_hybrid_search_enabled,
        max_context_chars: int = MAX_CONTEXT_CHARS,
    ):
        self.embeddings = embeddings
        self.client = client
        self._hybrid_enabled = hybrid_enabled
        self.max_context_chars = max_context_chars

    def _keyword(self, index: PaperIndex, query_tokens: list[str], top_k: int) -> RetrievalResult:
        scores = {chunk.id: score_chunk(query_tokens, chunk.text) for chunk in index.chunks}
        ranked = _top_by_score(index.chunks, scores, top_k)
        if not ranked:
            return RetrievalResult(select_summary_chunks(index, self.max_context_chars)[:top_k], "keyword")
        return RetrievalResult(limit_chunks_by_context(ranked, self.max_context_chars), "keyword")

    async def _hybrid(self, paper_id: str, index: PaperIndex, query: str, query_tokens: list[str], top_k: int) -> list[TextChunk]:
        query_vector = await self.client.request_embedding(query)
        if not query_vector:
            return []
        vectors = await self.embeddings.get_or_create_chunk_embeddings(paper_id, index)
        if not vectors:
            return []

        dense: dict[str, float] = {}
        for chunk in index.chunks:
            vector = vectors.get(chunk.id)
            if not vector:
                continue
            similarity = cosine_similarity(query_vector, vector)
            if math.isfinite(similarity):
                dense[chunk.id] = similarity
        # Only matching chunks take part in keyword normalization.
        keyword: dict[str, float] = {}
        for chunk in index.chunks:
            score = score_chunk(query_tokens, chunk.text)
            if score > 0:
                keyword[chunk.id] = score

        dense_norm = normalize_scores(dense)
        keyword_norm = normalize_scores(keyword)
        dense_weight = DENSE_WEIGHT_SHORT_QUERY if len(query_tokens) < SHORT_QUERY_TOKEN_COUNT else DENSE_WEIGHT_LONG_QUERY
        lexical_weight = 1.0 - dense_weight

        fused = {
            chunk.id: dense_weight * dense_norm.get(chunk.id, 0.0) + lexical_weight * keyword_norm.get(chunk.id, 0.0)
            for chunk in index.chunks
        }
        ranked = _top_by_score(index.chunks, fused, top_k)
        return limit_chunks_by_context(ranked, self.max_context_chars)

    async def retrieve(self, paper_id: str, index: PaperIndex, query: str, top_k: int) -> RetrievalResult:
        top_k = max(1, int(top_k))
        query_tokens = unique_tokens(tokenize_for_retrieval(query))
        if not query_tokens:
            return RetrievalResult(select_summary_chunks(index, self.max_context_chars)[:top_k], "keyword")

        if not self._hybrid_enabled():
            return self._keyword(index, query_tokens, top_k)

        try:
            chunks = await self._hybrid(paper_id, index, query, query_tokens, top_k)
        except Exception as exc:
            logger.warning("hybrid_retrieval_failed_fallback_keyword", paper_id=paper_id, error=str(exc))
            return self._keyword(index, query_tokens, top_k)

        if not chunks:
            logger.info("hybrid_retrieval_empty_fallback_keyword", paper_id=paper_id)
            return self._keyword(index, query_tokens, top_k)

        logger.info("hybrid_retrieval", paper_id=paper_id, chunks=len(chunks), query_tokens=len(query_tokens))
        return RetrievalResult(chunks, "hybrid")
