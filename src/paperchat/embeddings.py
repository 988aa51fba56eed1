"""
Per-paper chunk embedding cache stored alongside the paper index.
"""
from __future__ import annotations

from typing import Sequence

import numpy as np

from .config import EMBEDDING_BATCH_SIZE
from .llm_client import LLMClient
from .models import PaperEmbeddings, PaperIndex, utcnow_iso
from .observability import get_logger
from .store import JsonStore
from .text_processing import hash_text

logger = get_logger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine over the common prefix of both vectors; 0.0 when either norm is zero."""
    size = min(len(a), len(b))
    if size == 0:
        return 0.0
    va = np.asarray(a[:size], dtype=float)
    vb = np.asarray(b[:size], dtype=float)
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a <= 0 or norm_b <= 0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


class EmbeddingCacheManager:
    """
    Keeps chunk vectors valid for exactly one (endpoint, model) pair.

    A pair mismatch discards the cache; chunks whose id vanished from the index
    are dropped; chunks whose text hash changed or whose vector is empty are
    re-embedded in fixed-size batches. The store is written only after a change.
    """

    def __init__(self, *, store: JsonStore, client: LLMClient, batch_size: int = EMBEDDING_BATCH_SIZE):
        self.store = store
        self.client = client
        self.batch_size = max(1, int(batch_size))

    async def get_or_create_chunk_embeddings(self, paper_id: str, index: PaperIndex) -> dict[str, list[float]]:
        document = await self.store.load()
        endpoint, model = self.client.embedding_identity()
        dirty = False

        entry = document.embeddings.get(paper_id)
        if entry is None or entry.endpoint != endpoint or entry.model != model:
            entry = PaperEmbeddings(endpoint=endpoint, model=model)
            document.embeddings[paper_id] = entry
            dirty = True

        valid_ids = {chunk.id for chunk in index.chunks}
        stale_ids = (set(entry.vectors) | set(entry.chunk_hashes)) - valid_ids
        for chunk_id in stale_ids:
            entry.vectors.pop(chunk_id, None)
            entry.chunk_hashes.pop(chunk_id, None)
            dirty = True

        missing = []
        for chunk in index.chunks:
            chunk_hash = hash_text(chunk.text)
            if entry.chunk_hashes.get(chunk.id) != chunk_hash or not entry.vectors.get(chunk.id):
                missing.append((chunk, chunk_hash))

        for offset in range(0, len(missing), self.batch_size):
            batch = missing[offset:offset + self.batch_size]
            vectors = await self.client.request_embeddings([chunk.text for chunk, _ in batch])
            for (chunk, chunk_hash), vector in zip(batch, vectors):
                entry.vectors[chunk.id] = vector
                entry.chunk_hashes[chunk.id] = chunk_hash
            dirty = True

        if dirty:
            entry.updated_at = utcnow_iso()
            await self.store.commit()
            logger.info(
                "chunk_embeddings_updated",
                paper_id=paper_id,
                model=model,
                embedded=len(missing),
                dropped=len(stale_ids),
                total=len(entry.vectors),
            )

        return {chunk_id: vector for chunk_id, vector in entry.vectors.items() if vector}
