"""
Section-context builder: turns the bookmark tree into per-section page ranges
and extracts bounded text for each section.

When no loader yields page text (scanned or oddly encoded PDFs), bookmark titles
are located inside the attachment's full text and sections are sliced between
matched headings. That fallback is a best-effort substring anchor; documents
with repeated headings can be mismatched.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Awaitable, Callable

from .config import (
    OUTLINE_MAX_CHARS_PER_SECTION,
    OUTLINE_MAX_PAGES_PER_SECTION,
    OUTLINE_PREVIEW_CHARS,
)
from .observability import get_logger
from .outline import UNTITLED, PdfOutlineNode, extract_outline, normalize_outline_title
from .pdf_source import FitzPdfDocument, PdfDocument, PypdfPdfDocument, read_pdf_bytes
from .text_processing import clip_text, collapse_whitespace

logger = get_logger(__name__)

_YIELD_EVERY_PAGES = 3
_YIELD_EVERY_SECTIONS = 50
_HEADING_PUNCT_RE = re.compile(r"[.,:;!?()\[\]{}\"'`~\-_/\\|+*=<>]")
_HEADING_STOPWORD_RE = re.compile(r"\b(section|chapter)\b", flags=re.IGNORECASE)
_WS_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class SectionContextOptions:
    max_pages_per_section: int = OUTLINE_MAX_PAGES_PER_SECTION
    max_chars_per_section: int = OUTLINE_MAX_CHARS_PER_SECTION
    preview_chars: int = OUTLINE_PREVIEW_CHARS

    def __post_init__(self):
        # Non-positive values fall back to defaults.
        if int(self.max_pages_per_section) <= 0:
            object.__setattr__(self, "max_pages_per_section", OUTLINE_MAX_PAGES_PER_SECTION)
        if int(self.max_chars_per_section) <= 0:
            object.__setattr__(self, "max_chars_per_section", OUTLINE_MAX_CHARS_PER_SECTION)
        if int(self.preview_chars) <= 0:
            object.__setattr__(self, "preview_chars", OUTLINE_PREVIEW_CHARS)


@dataclass(frozen=True)
class FlattenedOutlineNode:
    title: str
    depth: int
    path: str
    page_number: int | None = None
    url: str | None = None


@dataclass(frozen=True)
class PdfSectionContext:
    title: str
    depth: int
    path: str
    page_number: int | None = None
    start_page_number: int | None = None
    end_page_number: int | None = None
    url: str | None = None
    context_text: str = ""
    preview_text: str = ""
    truncated: bool = False


# ---------------------------------------------------------------------------
# Page ranges
# ---------------------------------------------------------------------------

def flatten_outline(nodes: list[PdfOutlineNode]) -> list[FlattenedOutlineNode]:
    """Depth-first flattening with dotted 1-based paths ("1", "1.2", "1.2.3")."""
    flattened: list[FlattenedOutlineNode] = []

    def walk(items: list[PdfOutlineNode], parent_path: str):
        for position, item in enumerate(items, start=1):
            path = f"{parent_path}.{position}" if parent_path else str(position)
            flattened.append(
                FlattenedOutlineNode(
                    title=item.title,
                    depth=item.depth,
                    path=path,
                    page_number=item.page_number,
                    url=item.url,
                )
            )
            if item.children:
                walk(item.children, path)

    walk(nodes, "")
    return flattened


def _max_bookmark_page(flattened: list[FlattenedOutlineNode]) -> int:
    pages = [int(node.page_number) for node in flattened if node.page_number and node.page_number > 0]
    return max(pages, default=0)


def resolve_document_page_count(num_pages: int | None, flattened: list[FlattenedOutlineNode]) -> int:
    if isinstance(num_pages, int) and num_pages > 0:
        return num_pages
    return _max_bookmark_page(flattened) or 1


def resolve_section_page_range(
    flattened: list[FlattenedOutlineNode],
    current_index: int,
    num_pages: int,
) -> tuple[int | None, int | None]:
    """
    Start is the entry's own page. End is one before the next later entry at the
    same or shallower depth that has a page, otherwise the last page. ``end >= start``.
    """
    current = flattened[current_index]
    if not current.page_number or current.page_number <= 0:
        return None, None

    start = max(1, int(current.page_number))
    safe_num_pages = int(num_pages) if num_pages and num_pages > 0 else start
    end = max(start, safe_num_pages)

    for following in flattened[current_index + 1:]:
        if following.depth <= current.depth and following.page_number and following.page_number > 0:
            end = int(following.page_number) - 1
            break

    return start, max(start, end)


# ---------------------------------------------------------------------------
# Page text
# ---------------------------------------------------------------------------

async def get_page_text(pdf: PdfDocument, page_number: int, cache: dict[int, str]) -> str:
    if page_number in cache:
        return cache[page_number]
    try:
        text = collapse_whitespace(await pdf.get_page_text(page_number))
    except Exception as exc:
        logger.warning("page_text_failed", loader=pdf.loader, page_number=page_number, error=str(exc))
        text = ""
    cache[page_number] = text
    return text


async def build_context_text_for_range(
    pdf: PdfDocument,
    start_page: int,
    end_page: int,
    cache: dict[int, str],
    options: SectionContextOptions,
) -> tuple[str, str, bool]:
    """Returns ``(context_text, preview_text, truncated)`` for an inclusive page range."""
    safe_start = max(1, int(start_page))
    safe_end = max(safe_start, int(end_page))
    effective_end = min(safe_end, safe_start + max(1, options.max_pages_per_section) - 1)
    truncated = effective_end < safe_end
    parts: list[str] = []
    chars = 0

    for page in range(safe_start, effective_end + 1):
        text = await get_page_text(pdf, page, cache)
        if text:
            remaining = options.max_chars_per_section - chars
            if remaining <= 0:
                truncated = True
                break
            if len(text) > remaining:
                parts.append(text[:remaining].strip())
                chars = options.max_chars_per_section
                truncated = True
                break
            parts.append(text)
            chars += len(text)
        if (page - safe_start + 1) % _YIELD_EVERY_PAGES == 0:
            await asyncio.sleep(0)

    context_text = "\n\n".join(parts).strip()
    return context_text, clip_text(context_text, options.preview_chars), truncated


async def extract_section_contexts(
    pdf: PdfDocument,
    options: SectionContextOptions | None = None,
) -> list[PdfSectionContext]:
    options = options or SectionContextOptions()
    nodes = await extract_outline(pdf)
    if not nodes:
        return []

    flattened = flatten_outline(nodes)
    doc_page_count = resolve_document_page_count(pdf.num_pages, flattened)
    cache: dict[int, str] = {}
    contexts: list[PdfSectionContext] = []
    with_range = 0
    truncated_count = 0

    for index, current in enumerate(flattened):
        start, end = resolve_section_page_range(flattened, index, doc_page_count)
        context_text, preview_text, truncated = "", "", False
        if start is not None:
            with_range += 1
            context_text, preview_text, truncated = await build_context_text_for_range(
                pdf, start, end or start, cache, options
            )
        truncated_count += int(truncated)
        contexts.append(
            PdfSectionContext(
                title=current.title,
                depth=current.depth,
                path=current.path,
                page_number=current.page_number,
                start_page_number=start,
                end_page_number=end,
                url=current.url,
                context_text=context_text,
                preview_text=preview_text,
                truncated=truncated,
            )
        )
        if index % _YIELD_EVERY_SECTIONS == 0:
            await asyncio.sleep(0)

    logger.info(
        "section_contexts_built",
        loader=pdf.loader,
        section_count=len(contexts),
        doc_page_count=doc_page_count,
        with_range=with_range,
        with_context=sum(1 for entry in contexts if entry.context_text),
        truncated_count=truncated_count,
    )
    return contexts


def should_fallback(contexts: list[PdfSectionContext]) -> bool:
    """True when sections have page ranges but not one of them produced text."""
    with_range = [entry for entry in contexts if entry.start_page_number is not None]
    if not with_range:
        return False
    return not any(entry.context_text.strip() for entry in with_range)


def build_empty_section_contexts(nodes: list[PdfOutlineNode]) -> list[PdfSectionContext]:
    flattened = flatten_outline(nodes)
    page_count = max(1, _max_bookmark_page(flattened))
    contexts = []
    for index, entry in enumerate(flattened):
        start, end = resolve_section_page_range(flattened, index, page_count)
        contexts.append(
            PdfSectionContext(
                title=entry.title,
                depth=entry.depth,
                path=entry.path,
                page_number=entry.page_number,
                start_page_number=start,
                end_page_number=end,
                url=entry.url,
            )
        )
    return contexts


# ---------------------------------------------------------------------------
# Title matching against full text
# ---------------------------------------------------------------------------

def build_heading_candidates(title: str) -> list[str]:
    source = str(title or "").strip()
    if not source or source == UNTITLED:
        return []
    normalized = _WS_RE.sub(" ", source).strip().lower()
    no_punct = _WS_RE.sub(" ", _HEADING_PUNCT_RE.sub(" ", normalized)).strip()
    no_stopwords = _WS_RE.sub(" ", _HEADING_STOPWORD_RE.sub("", no_punct)).strip()
    candidates = [entry for entry in (normalized, no_punct, no_stopwords) if len(entry) >= 3]
    return list(dict.fromkeys(candidates))


def find_heading_like_index(lowered_text: str, title: str, cursor: int) -> int:
    """Earliest candidate at or after ``cursor``; otherwise the earliest anywhere; -1 if absent."""
    candidates = build_heading_candidates(title)
    after_cursor = [idx for idx in (lowered_text.find(c, cursor) for c in candidates) if idx >= 0]
    if after_cursor:
        return min(after_cursor)
    anywhere = [idx for idx in (lowered_text.find(c) for c in candidates) if idx >= 0]
    return min(anywhere) if anywhere else -1


def find_section_starts_by_title(contexts: list[PdfSectionContext], text: str) -> list[int]:
    lowered = text.lower()
    starts = [-1] * len(contexts)
    cursor = 0
    for index, entry in enumerate(contexts):
        title = normalize_outline_title(entry.title)
        found = find_heading_like_index(lowered, title, cursor)
        starts[index] = found
        if found >= 0:
            cursor = min(len(lowered), found + max(1, min(len(title), 120)))
    return starts


def find_section_end_index(
    contexts: list[PdfSectionContext],
    starts: list[int],
    current_index: int,
    fallback_end: int,
) -> int:
    current_depth = contexts[current_index].depth
    for index in range(current_index + 1, len(contexts)):
        if contexts[index].depth <= current_depth and starts[index] >= 0:
            return starts[index]
    for index in range(current_index + 1, len(contexts)):
        if starts[index] >= 0:
            return starts[index]
    return fallback_end


def enrich_contexts_with_text(
    contexts: list[PdfSectionContext],
    full_text: str,
    options: SectionContextOptions | None = None,
) -> list[PdfSectionContext]:
    """Fills sections that have no text with slices of ``full_text`` between matched headings."""
    options = options or SectionContextOptions()
    if not full_text.strip():
        return contexts

    starts = find_section_starts_by_title(contexts, full_text)
    enriched: list[PdfSectionContext] = []
    for index, entry in enumerate(contexts):
        start = starts[index]
        if entry.context_text.strip() or start < 0:
            enriched.append(entry)
            continue
        end = find_section_end_index(contexts, starts, index, len(full_text))
        normalized = collapse_whitespace(full_text[start:end])
        if not normalized:
            enriched.append(entry)
            continue
        max_chars = max(1, options.max_chars_per_section)
        truncated = len(normalized) > max_chars
        context_text = normalized[:max_chars].strip() if truncated else normalized
        enriched.append(
            replace(
                entry,
                context_text=context_text,
                preview_text=clip_text(context_text, options.preview_chars),
                truncated=truncated,
            )
        )
    return enriched


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

AttachmentTextReader = Callable[[Any], Awaitable[str]]


class SectionContextExtractor:
    """
    Builds section contexts for a PDF attachment with two fallbacks:
    re-open the raw bytes with the alternate loader, then match bookmark
    titles inside the attachment's full text.
    """

    def __init__(
        self,
        *,
        attachment_text_reader: AttachmentTextReader,
        options: SectionContextOptions | None = None,
        open_primary: Callable[[Path], PdfDocument] = FitzPdfDocument.open_path,
        open_bytes: Callable[[bytes], PdfDocument] = PypdfPdfDocument.open_bytes,
        read_bytes: Callable[[Path], bytes] = read_pdf_bytes,
    ):
        self.options = options or SectionContextOptions()
        self._attachment_text_reader = attachment_text_reader
        self._open_primary = open_primary
        self._open_bytes = open_bytes
        self._read_bytes = read_bytes

    async def _open_alternate(self, path: Path) -> PdfDocument:
        data = await asyncio.to_thread(self._read_bytes, path)
        return self._open_bytes(data)

    async def _contexts_with(self, pdf: PdfDocument) -> list[PdfSectionContext]:
        try:
            return await extract_section_contexts(pdf, self.options)
        finally:
            pdf.close()

    async def _outline_with_any_loader(self, path: Path) -> list[PdfOutlineNode]:
        last_error: Exception | None = None
        for opener in (self._open_primary_async, self._open_alternate):
            try:
                pdf = await opener(path)
            except Exception as exc:
                last_error = exc
                continue
            try:
                return await extract_outline(pdf)
            except Exception as exc:
                last_error = exc
            finally:
                pdf.close()
        raise RuntimeError(f"Could not read the PDF outline of {path}") from last_error

    async def _open_primary_async(self, path: Path) -> PdfDocument:
        return self._open_primary(path)

    async def _read_attachment_text(self, attachment: Any) -> str:
        try:
            return str(await self._attachment_text_reader(attachment) or "")
        except Exception as exc:
            logger.warning("attachment_text_failed", item_id=getattr(attachment, "id", None), error=str(exc))
            return ""

    async def extract_from_attachment(self, attachment: Any) -> list[PdfSectionContext]:
        file_path = getattr(attachment, "file_path", None)
        if not file_path:
            raise ValueError(f"Attachment {getattr(attachment, 'id', '?')} has no file path.")
        path = Path(file_path)
        contexts: list[PdfSectionContext] | None = None
        pdf_error: Exception | None = None

        try:
            contexts = await self._contexts_with(await self._open_primary_async(path))
            if not should_fallback(contexts):
                return contexts
            logger.info("section_context_fallback", item_id=attachment.id, reason="ranges_without_text", loader="pymupdf")
        except Exception as exc:
            pdf_error = exc
            logger.warning("section_context_loader_failed", item_id=attachment.id, loader="pymupdf", error=str(exc))

        try:
            byte_contexts = await self._contexts_with(await self._open_alternate(path))
            contexts = byte_contexts
            if not should_fallback(byte_contexts):
                return byte_contexts
        except Exception as exc:
            pdf_error = exc
            logger.warning("section_context_loader_failed", item_id=attachment.id, loader="pypdf", error=str(exc))

        base = contexts
        if base is None:
            nodes = await self._outline_with_any_loader(path)
            if not nodes:
                return []
            base = build_empty_section_contexts(nodes)

        attachment_text = await self._read_attachment_text(attachment)
        enriched = enrich_contexts_with_text(base, attachment_text, self.options)
        with_context = sum(1 for entry in enriched if entry.context_text)
        logger.info(
            "section_context_attachment_text",
            item_id=attachment.id,
            has_attachment_text=bool(attachment_text),
            context_count=len(enriched),
            with_context=with_context,
            recovered=with_context > 0,
            prior_pdf_error=str(pdf_error) if pdf_error else None,
        )
        return enriched
