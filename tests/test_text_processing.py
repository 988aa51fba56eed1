import unittest

from paperchat.text_processing import chunk_text, clip_text, collapse_whitespace, hash_text, normalize_text, strip_html
from paperchat.tokenization import tokenize_for_retrieval, unique_tokens


class TestNormalization(unittest.TestCase):
    def test_normalize_text_collapses_spaces_and_blank_lines(self):
        raw = "Title\r\n\tAbstract  text\x00 here\n\n\n\nBody\f"
        self.assertEqual(normalize_text(raw), "Title\n\n Abstract text here\n\nBody")

    def test_normalize_text_empty(self):
        self.assertEqual(normalize_text(None), "")
        self.assertEqual(normalize_text("   \n\n "), "")

    def test_strip_html_removes_tags(self):
        self.assertEqual(strip_html("<p>Deep <b>learning</b></p>"), "Deep learning")

    def test_collapse_whitespace(self):
        self.assertEqual(collapse_whitespace("  a\n\n b\t c \x00"), "a b c")

    def test_clip_text(self):
        self.assertEqual(clip_text("short", 10), "short")
        self.assertEqual(clip_text("abcdef ghij", 7), "abcdef...")

    def test_hash_text_is_stable_and_short(self):
        self.assertEqual(hash_text("abc"), hash_text("abc"))
        self.assertNotEqual(hash_text("abc"), hash_text("abd"))
        self.assertEqual(len(hash_text("abc")), 20)


class TestChunking(unittest.TestCase):
    def test_empty_text_has_no_chunks(self):
        self.assertEqual(chunk_text(""), [])

    def test_short_text_is_single_chunk(self):
        chunks = chunk_text("hello world", chunk_size=100, overlap=10)
        self.assertEqual(len(chunks), 1)
        self.assertEqual(chunks[0].id, "chunk-1")
        self.assertEqual((chunks[0].start, chunks[0].end), (0, 11))

    def test_windows_cover_text_with_overlap(self):
        text = "".join(chr(ord("a") + (i % 26)) for i in range(1000))
        chunks = chunk_text(text, chunk_size=300, overlap=50)

        self.assertEqual(chunks[0].start, 0)
        self.assertEqual(chunks[-1].end, len(text))
        for previous, current in zip(chunks, chunks[1:]):
            self.assertEqual(current.start, previous.end - 50)
            self.assertLessEqual(current.end - current.start, 300)
        self.assertEqual([c.id for c in chunks], [f"chunk-{i}" for i in range(1, len(chunks) + 1)])

    def test_blank_windows_are_skipped_and_ids_stay_consecutive(self):
        text = "a" * 10 + " " * 30 + "b" * 10
        chunks = chunk_text(text, chunk_size=10, overlap=0)
        self.assertEqual([c.text for c in chunks], ["a" * 10, "b" * 10])
        self.assertEqual([c.id for c in chunks], ["chunk-1", "chunk-2"])

    def test_overlap_not_smaller_than_size_still_progresses(self):
        chunks = chunk_text("abcdefghij", chunk_size=4, overlap=10)
        self.assertEqual(chunks[-1].end, 10)
        starts = [c.start for c in chunks]
        self.assertEqual(starts, sorted(set(starts)))


class TestTokenization(unittest.TestCase):
    def test_tokenizer_lowercases_and_drops_short_tokens(self):
        self.assertEqual(
            tokenize_for_retrieval("The Transformer (Vaswani, 2017) is a model."),
            ["the", "transformer", "vaswani", "2017", "is", "model"],
        )

    def test_tokenizer_keeps_cjk_and_hangul(self):
        self.assertEqual(tokenize_for_retrieval("주의 메커니즘 注意力"), ["주의", "메커니즘", "注意力"])

    def test_unique_tokens_preserves_order(self):
        self.assertEqual(unique_tokens(["b", "a", "b", "c", "a"]), ["b", "a", "c"])


if __name__ == "__main__":
    unittest.main()
