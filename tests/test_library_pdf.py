import json
import tempfile
import unittest
from pathlib import Path

import fitz

from paperchat.config import FULLTEXT_CACHE_NAME
from paperchat.library import PaperLibrary
from paperchat.metrics import MetricsCollector
from paperchat.paper_index import load_paper_text, resolve_paper
from paperchat.pdf_source import FitzPdfDocument, PypdfPdfDocument
from paperchat.section_context import SectionContextExtractor, extract_section_contexts
from paperchat.storage_provider import LocalFileStorageProvider


def _write_sample_pdf(path: Path) -> Path:
    doc = fitz.open()
    for number in range(1, 4):
        page = doc.new_page()
        page.insert_text((72, 72), f"Page {number} body")
    doc.set_toc([[1, "Introduction", 1], [1, "Method", 2], [2, "Setup", 3]])
    doc.save(str(path))
    doc.close()
    return path


class TestPaperLibrary(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.pdf_path = _write_sample_pdf(root / "sample.pdf")
        self.library = PaperLibrary(db_path=root / "library.db", storage_dir=root / "storage")

    def tearDown(self):
        self.library.close()
        self.tmp.cleanup()

    def test_papers_and_attachments(self):
        paper = self.library.add_paper("Plain record", "Abstract text.")
        attachment = self.library.add_pdf(self.pdf_path, title="Sample Paper")

        papers = self.library.list_papers()
        self.assertEqual([p.title for p in papers], ["Plain record", "Sample Paper"])
        self.assertEqual(self.library.get_item(paper.id).abstract, "Abstract text.")
        self.assertEqual(self.library.get_attachments(paper), [])

        attachments = self.library.get_attachments(papers[1])
        self.assertEqual(attachments, [attachment])
        self.assertTrue(attachment.is_pdf_attachment())
        self.assertTrue(Path(attachment.file_path).is_file())
        self.assertNotEqual(Path(attachment.file_path), self.pdf_path)
        self.assertIsNone(self.library.get_item(999))

    def test_rejects_missing_and_non_pdf_files(self):
        with self.assertRaises(FileNotFoundError):
            self.library.add_pdf(Path(self.tmp.name) / "nope.pdf")
        text_file = Path(self.tmp.name) / "notes.txt"
        text_file.write_text("hi", encoding="utf-8")
        with self.assertRaises(ValueError):
            self.library.add_pdf(text_file)

    async def test_fulltext_cache_is_written_and_reused(self):
        attachment = self.library.add_pdf(self.pdf_path)
        cache_path = self.library.fulltext_cache_path(attachment)
        self.assertEqual(cache_path.name, FULLTEXT_CACHE_NAME)
        self.assertIn("Page 2 body", cache_path.read_text(encoding="utf-8"))

        cache_path.write_text("cached text", encoding="utf-8")
        self.assertEqual(await self.library.read_attachment_text(attachment), "cached text")

        cache_path.write_text("", encoding="utf-8")
        self.assertIn("Page 1 body", await self.library.read_attachment_text(attachment))

    async def test_extractor_reads_real_pdf_bookmarks(self):
        attachment = self.library.add_pdf(self.pdf_path)
        extractor = SectionContextExtractor(attachment_text_reader=self.library.read_attachment_text)
        contexts = await extractor.extract_from_attachment(attachment)

        self.assertEqual([(c.path, c.title) for c in contexts], [("1", "Introduction"), ("2", "Method"), ("2.1", "Setup")])
        self.assertEqual(
            [(c.start_page_number, c.end_page_number) for c in contexts],
            [(1, 1), (2, 3), (3, 3)],
        )
        self.assertIn("Page 1 body", contexts[0].context_text)
        self.assertIn("Page 3 body", contexts[1].context_text)


class _RecordingStorage(LocalFileStorageProvider):
    def __init__(self, root: Path):
        super().__init__(root)
        self.reads: list[Path] = []
        self.fail_reads = False

    def read_text(self, path: Path) -> str:
        self.reads.append(Path(path))
        if self.fail_reads:
            raise OSError("permission denied")
        return super().read_text(path)


class TestFulltextCacheReads(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.pdf_path = _write_sample_pdf(root / "sample.pdf")
        self.storage = _RecordingStorage(root / "storage")
        self.library = PaperLibrary(db_path=root / "library.db", storage_provider=self.storage)

    def tearDown(self):
        self.library.close()
        self.tmp.cleanup()

    async def test_paper_text_is_read_through_storage_provider(self):
        attachment = self.library.add_pdf(self.pdf_path, title="Sample Paper")
        resolved = resolve_paper(attachment, self.library)

        text, source = await load_paper_text(resolved, self.library)
        self.assertEqual(source, "pdf-cache")
        self.assertIn("Page 2 body", text)
        self.assertEqual(self.storage.reads, [self.library.fulltext_cache_path(attachment)])

    async def test_unreadable_cache_falls_back_to_title(self):
        attachment = self.library.add_pdf(self.pdf_path, title="Sample Paper")
        self.storage.fail_reads = True
        resolved = resolve_paper(attachment, self.library)
        self.assertEqual(await load_paper_text(resolved, self.library), ("Sample Paper", "title"))


class TestPdfLoaders(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.pdf_path = _write_sample_pdf(Path(self.tmp.name) / "sample.pdf")

    def tearDown(self):
        self.tmp.cleanup()

    async def test_both_loaders_agree_on_sections(self):
        loaders = [
            FitzPdfDocument.open_path(self.pdf_path),
            PypdfPdfDocument.open_bytes(self.pdf_path.read_bytes()),
        ]
        for pdf in loaders:
            with self.subTest(loader=pdf.loader):
                try:
                    contexts = await extract_section_contexts(pdf)
                finally:
                    pdf.close()
                self.assertEqual([c.title for c in contexts], ["Introduction", "Method", "Setup"])
                self.assertEqual([c.page_number for c in contexts], [1, 2, 3])
                self.assertIn("Page 2 body", contexts[1].context_text)


class TestMetricsCollector(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.collector = MetricsCollector(log_dir=self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_summary_aggregates_requests(self):
        self.collector.record_request("chat", 120.0, True, input_tokens=1_000_000, output_tokens=0, model="gpt-4o-mini")
        self.collector.record_request("embedding", 40.0, False, model="local-embed")

        summary = self.collector.get_summary()
        self.assertEqual(summary["requests"]["total"], 2)
        self.assertEqual(summary["requests"]["by_kind"], {"chat": 1, "embedding": 1})
        self.assertEqual(summary["latency"], {"avg_ms": 80.0, "min_ms": 40.0, "max_ms": 120.0})
        self.assertAlmostEqual(summary["cost"]["total_usd"], 0.15)
        self.assertEqual(summary["errors"], {"count": 1, "rate_percent": 50.0})

        lines = (Path(self.tmp.name) / "metrics.jsonl").read_text(encoding="utf-8").splitlines()
        self.assertEqual([json.loads(line)["kind"] for line in lines], ["chat", "embedding"])

    def test_empty_summary(self):
        summary = self.collector.get_summary()
        self.assertEqual(summary["latency"]["min_ms"], 0.0)
        self.assertEqual(summary["errors"]["rate_percent"], 0.0)


if __name__ == "__main__":
    unittest.main()
