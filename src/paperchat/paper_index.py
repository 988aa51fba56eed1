"""
Paper index manager: resolves a library item to its paper, loads the best
available text and keeps one chunk index per paper, rebuilt only when the
text, its source or the title changes.
"""
from __future__ import annotations

from dataclasses import dataclass

from .errors import ContentUnavailableError
from .library import Library, LibraryItem
from .models import PaperIndex
from .observability import get_logger
from .store import JsonStore
from .text_processing import chunk_text, hash_text, normalize_text, strip_html

logger = get_logger(__name__)


@dataclass(frozen=True)
class ResolvedPaper:
    paper_id: str
    title: str
    paper_item: LibraryItem
    attachment_item: LibraryItem | None = None


def resolve_paper(item: LibraryItem, library: Library) -> ResolvedPaper:
    """Walks from an attachment to its parent record and finds the first PDF attachment."""
    paper_item = item
    if not item.is_regular_item() and item.parent_id is not None:
        parent = library.get_item(item.parent_id)
        if parent is not None:
            paper_item = parent

    attachment_item = item if item.is_pdf_attachment() else None
    if attachment_item is None and paper_item.is_regular_item():
        attachment_item = next(
            (child for child in library.get_attachments(paper_item) if child.is_pdf_attachment()),
            None,
        )

    title = paper_item.title.strip() or item.title.strip() or "Untitled"
    return ResolvedPaper(
        paper_id=str(paper_item.id),
        title=title,
        paper_item=paper_item,
        attachment_item=attachment_item,
    )


async def _read_fulltext_cache(attachment: LibraryItem, library: Library) -> str:
    try:
        return await library.read_fulltext_cache(attachment)
    except OSError as exc:
        logger.warning("fulltext_cache_read_failed", item_id=attachment.id, error=str(exc))
        return ""


async def load_paper_text(resolved: ResolvedPaper, library: Library) -> tuple[str, str]:
    """
    Returns ``(text, source)`` from the first non-empty source in priority order:
    the PDF full-text cache, the abstract, then the title. ``("", "none")`` if all are empty.
    """
    if resolved.attachment_item is not None:
        cached = normalize_text(await _read_fulltext_cache(resolved.attachment_item, library))
        if cached:
            return cached, "pdf-cache"

    abstract = strip_html(resolved.paper_item.abstract)
    if abstract:
        return abstract, "abstract"

    title = resolved.paper_item.title.strip()
    if title:
        return title, "title"

    return "", "none"


class IndexCache:
    """
    In-process paper index cache keyed by paper id.
    An entry is only served while its content hash, source and title still match.
    """

    def __init__(self):
        self._entries: dict[str, PaperIndex] = {}

    def get(self, paper_id: str) -> PaperIndex | None:
        return self._entries.get(paper_id)

    def put(self, paper_id: str, index: PaperIndex):
        self._entries[paper_id] = index

    def invalidate(self, paper_id: str):
        self._entries.pop(paper_id, None)

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def _index_matches(index: PaperIndex | None, content_hash: str, source: str, title: str) -> bool:
    return index is not None and index.hash == content_hash and index.source == source and index.title == title


class PaperIndexManager:
    def __init__(self, *, store: JsonStore, library: Library, cache: IndexCache | None = None):
        self.store = store
        self.library = library
        self.cache = cache if cache is not None else IndexCache()

    def resolve(self, item: LibraryItem) -> ResolvedPaper:
        return resolve_paper(item, self.library)

    async def ensure_index(self, resolved: ResolvedPaper) -> PaperIndex:
        text, source = await load_paper_text(resolved, self.library)
        normalized = normalize_text(text)
        content_hash = hash_text(normalized)
        paper_id = resolved.paper_id

        cached = self.cache.get(paper_id)
        if _index_matches(cached, content_hash, source, resolved.title):
            return cached

        document = await self.store.load()
        stored = document.papers.get(paper_id)
        if _index_matches(stored, content_hash, source, resolved.title):
            self.cache.put(paper_id, stored)
            return stored

        chunks = chunk_text(normalized)
        if not chunks:
            raise ContentUnavailableError(
                "No readable paper content found. Add a PDF with extractable text or an abstract."
            )

        index = PaperIndex(hash=content_hash, title=resolved.title, source=source, chunks=chunks)
        document.papers[paper_id] = index
        await self.store.commit()
        self.cache.put(paper_id, index)
        logger.info(
            "paper_index_rebuilt",
            paper_id=paper_id,
            source=source,
            chunks=len(chunks),
            chars=len(normalized),
        )
        return index
