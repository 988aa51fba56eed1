import math
import tempfile
import unittest
from pathlib import Path

from paperchat.embeddings import EmbeddingCacheManager, cosine_similarity
from paperchat.errors import UpstreamRequestError
from paperchat.models import PaperIndex, TextChunk
from paperchat.retrieval import (
    RetrievalEngine,
    limit_chunks_by_context,
    normalize_scores,
    score_chunk,
    select_summary_chunks,
)
from paperchat.store import JsonStore
from paperchat.text_processing import hash_text


def _index(texts, title="Paper"):
    chunks = [TextChunk(id=f"chunk-{i}", text=text, start=0, end=len(text)) for i, text in enumerate(texts, start=1)]
    return PaperIndex(hash=hash_text("|".join(texts)), title=title, source="pdf-cache", chunks=chunks)


class _FakeEmbeddingClient:
    """Texts mentioning 'alpha' point along x, everything else along y."""

    def __init__(self, identity=("https://embed.test/v1/embeddings", "embed-1"), fail_after_batches=None):
        self.identity = identity
        self.batches: list[list[str]] = []
        self.queries: list[str] = []
        self.fail_after_batches = fail_after_batches
        self.query_vector = None

    def embedding_identity(self):
        return self.identity

    @staticmethod
    def vector_for(text):
        return [1.0, 0.0] if "alpha" in text.lower() else [0.0, 1.0]

    async def request_embeddings(self, texts):
        if self.fail_after_batches is not None and len(self.batches) >= self.fail_after_batches:
            raise UpstreamRequestError("embedding backend down")
        self.batches.append(list(texts))
        return [self.vector_for(text) for text in texts]

    async def request_embedding(self, text):
        self.queries.append(text)
        if self.query_vector is not None:
            return self.query_vector
        return self.vector_for(text)


class _MappedEmbeddingClient(_FakeEmbeddingClient):
    def __init__(self, vectors):
        super().__init__()
        self.vectors = vectors

    def vector_for(self, text):
        return self.vectors[text]


class TestScoring(unittest.TestCase):
    def test_score_chunk_formula(self):
        # tokens: alpha alpha beta gamma -> tf(alpha)=2, n=4
        score = score_chunk(["alpha", "beta", "delta"], "Alpha alpha beta gamma")
        self.assertAlmostEqual(score, ((1 + math.log(2)) + 1) / math.sqrt(4))
        self.assertEqual(score_chunk(["zzz"], "alpha beta"), 0.0)
        self.assertEqual(score_chunk(["alpha"], ""), 0.0)

    def test_normalize_scores(self):
        self.assertEqual(normalize_scores({"a": 2.0, "b": 4.0, "c": 3.0}), {"a": 0.0, "b": 1.0, "c": 0.5})
        self.assertEqual(normalize_scores({"a": 0.3, "b": 0.3}), {"a": 1.0, "b": 1.0})
        self.assertEqual(normalize_scores({}), {})

    def test_limit_keeps_crossing_chunk(self):
        chunks = _index(["a" * 40, "b" * 40, "c" * 40]).chunks
        self.assertEqual([c.id for c in limit_chunks_by_context(chunks, 50)], ["chunk-1", "chunk-2"])
        self.assertEqual([c.id for c in limit_chunks_by_context(chunks, 40)], ["chunk-1"])
        self.assertEqual(len(select_summary_chunks(_index(["x"] * 3))), 3)

    def test_cosine_similarity(self):
        self.assertAlmostEqual(cosine_similarity([1, 0], [1, 0]), 1.0)
        self.assertAlmostEqual(cosine_similarity([1, 0, 5], [0, 1]), 0.0)
        self.assertEqual(cosine_similarity([0, 0], [1, 1]), 0.0)
        self.assertEqual(cosine_similarity([], [1]), 0.0)


class _StoreTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = JsonStore(Path(self.tmp.name) / "store.json")

    async def asyncTearDown(self):
        await self.store.close()
        self.tmp.cleanup()


class TestEmbeddingCache(_StoreTestCase):
    async def test_embeds_in_batches_and_reuses_cache(self):
        client = _FakeEmbeddingClient()
        manager = EmbeddingCacheManager(store=self.store, client=client)
        index = _index([f"chunk text {i}" for i in range(25)])

        vectors = await manager.get_or_create_chunk_embeddings("1", index)
        self.assertEqual(len(vectors), 25)
        self.assertEqual([len(batch) for batch in client.batches], [12, 12, 1])
        self.assertEqual(self.store.write_count, 1)

        again = await manager.get_or_create_chunk_embeddings("1", index)
        self.assertEqual(again, vectors)
        self.assertEqual(len(client.batches), 3)
        self.assertEqual(self.store.write_count, 1)

    async def test_changed_and_removed_chunks(self):
        client = _FakeEmbeddingClient()
        manager = EmbeddingCacheManager(store=self.store, client=client)
        await manager.get_or_create_chunk_embeddings("1", _index(["one", "two", "three"]))

        vectors = await manager.get_or_create_chunk_embeddings("1", _index(["one", "alpha two"]))
        self.assertEqual(client.batches[-1], ["alpha two"])
        self.assertEqual(set(vectors), {"chunk-1", "chunk-2"})
        self.assertEqual(vectors["chunk-2"], [1.0, 0.0])

        document = await self.store.load()
        self.assertNotIn("chunk-3", document.embeddings["1"].chunk_hashes)

    async def test_model_change_invalidates_everything(self):
        client = _FakeEmbeddingClient()
        manager = EmbeddingCacheManager(store=self.store, client=client)
        index = _index(["one", "two"])
        await manager.get_or_create_chunk_embeddings("1", index)

        client.identity = ("https://embed.test/v1/embeddings", "embed-2")
        await manager.get_or_create_chunk_embeddings("1", index)
        self.assertEqual(client.batches[-1], ["one", "two"])
        document = await self.store.load()
        self.assertEqual(document.embeddings["1"].model, "embed-2")

    async def test_batch_failure_propagates_without_writing(self):
        client = _FakeEmbeddingClient(fail_after_batches=1)
        manager = EmbeddingCacheManager(store=self.store, client=client, batch_size=2)
        with self.assertRaises(UpstreamRequestError):
            await manager.get_or_create_chunk_embeddings("1", _index(["a1", "a2", "a3"]))
        self.assertEqual(self.store.write_count, 0)

        document = await self.store.load()
        self.assertEqual(set(document.embeddings["1"].vectors), {"chunk-1", "chunk-2"})


class TestRetrievalEngine(_StoreTestCase):
    def _engine(self, client, hybrid=False):
        embeddings = EmbeddingCacheManager(store=self.store, client=client)
        return RetrievalEngine(embeddings=embeddings, client=client, hybrid_enabled=lambda: hybrid)

    def _paper(self):
        return _index([
            "The introduction motivates attention models.",
            "Attention attention attention everywhere in this section.",
            "Results table with numbers only.",
            "alpha particles are unrelated to transformers.",
        ])

    async def test_keyword_ranking_is_deterministic(self):
        engine = self._engine(_FakeEmbeddingClient())
        first = await engine.retrieve("1", self._paper(), "attention", 2)
        second = await engine.retrieve("1", self._paper(), "attention", 2)
        self.assertEqual(first.mode, "keyword")
        self.assertEqual([c.id for c in first.chunks], ["chunk-2", "chunk-1"])
        self.assertEqual([c.id for c in first.chunks], [c.id for c in second.chunks])

    async def test_query_without_tokens_uses_leading_chunks(self):
        engine = self._engine(_FakeEmbeddingClient(), hybrid=True)
        result = await engine.retrieve("1", self._paper(), "?! a", 2)
        self.assertEqual(result.mode, "keyword")
        self.assertEqual([c.id for c in result.chunks], ["chunk-1", "chunk-2"])

    async def test_no_keyword_match_uses_leading_chunks(self):
        engine = self._engine(_FakeEmbeddingClient())
        result = await engine.retrieve("1", self._paper(), "quantum chromodynamics", 3)
        self.assertEqual([c.id for c in result.chunks], ["chunk-1", "chunk-2", "chunk-3"])

    async def test_hybrid_fuses_dense_and_lexical(self):
        client = _FakeEmbeddingClient()
        engine = self._engine(client, hybrid=True)
        result = await engine.retrieve("1", self._paper(), "alpha", 1)
        self.assertEqual(result.mode, "hybrid")
        self.assertEqual([c.id for c in result.chunks], ["chunk-4"])
        self.assertEqual(client.queries, ["alpha"])

    async def test_hybrid_normalizes_keyword_scores_over_matching_chunks(self):
        client = _MappedEmbeddingClient({
            "attention attention": [0.0, 1.0],
            "attention model results here": [0.5, math.sqrt(0.75)],
            "something else entirely": [1.0, 0.0],
        })
        client.query_vector = [1.0, 0.0]
        engine = self._engine(client, hybrid=True)
        paper = _index(["attention attention", "attention model results here", "something else entirely"])

        # fused: chunk-3 0.62, chunk-1 0.38, chunk-2 0.31
        result = await engine.retrieve("1", paper, "attention", 2)
        self.assertEqual(result.mode, "hybrid")
        self.assertEqual([c.id for c in result.chunks], ["chunk-3", "chunk-1"])

    async def test_hybrid_failure_falls_back_to_keyword(self):
        client = _FakeEmbeddingClient(fail_after_batches=0)
        engine = self._engine(client, hybrid=True)
        result = await engine.retrieve("1", self._paper(), "attention", 2)
        self.assertEqual(result.mode, "keyword")
        self.assertEqual([c.id for c in result.chunks], ["chunk-2", "chunk-1"])

    async def test_empty_query_vector_falls_back_to_keyword(self):
        client = _FakeEmbeddingClient()
        client.query_vector = []
        engine = self._engine(client, hybrid=True)
        result = await engine.retrieve("1", self._paper(), "attention", 2)
        self.assertEqual(result.mode, "keyword")
        self.assertEqual(client.batches, [])


if __name__ == "__main__":
    unittest.main()
