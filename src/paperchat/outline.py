"""
Bookmark (outline) extraction from a PDF document.
"""
from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field

from .observability import get_logger
from .pdf_source import PdfDocument, RawOutlineItem

logger = get_logger(__name__)

UNTITLED = "(untitled)"
_YIELD_EVERY_NODES = 100


@dataclass
class PdfOutlineNode:
    title: str
    depth: int
    page_number: int | None = None
    url: str | None = None
    children: list["PdfOutlineNode"] = field(default_factory=list)


@dataclass
class DestStats:
    string: int = 0
    array: int = 0
    null: int = 0
    resolved_page: int = 0
    failed_resolve: int = 0


def normalize_outline_title(title: object) -> str:
    text = str(title or "").strip()
    return text or UNTITLED


async def _resolve_page_number(pdf: PdfDocument, dest: object, stats: DestStats) -> int | None:
    dest_array = None
    if isinstance(dest, str):
        stats.string += 1
        try:
            dest_array = await pdf.get_destination(dest)
        except Exception as exc:
            stats.failed_resolve += 1
            logger.warning("outline_dest_resolve_failed", loader=pdf.loader, reason="named_destination", error=str(exc))
    elif isinstance(dest, (list, tuple)):
        stats.array += 1
        dest_array = dest
    else:
        stats.null += 1

    if not dest_array:
        return None

    try:
        page_index = await pdf.get_page_index(dest_array[0])
    except Exception as exc:
        stats.failed_resolve += 1
        logger.warning("outline_dest_resolve_failed", loader=pdf.loader, reason="page_index", error=str(exc))
        return None

    if isinstance(page_index, int) and page_index >= 0:
        stats.resolved_page += 1
        return page_index + 1
    return None


async def extract_outline(pdf: PdfDocument, stats: DestStats | None = None) -> list[PdfOutlineNode]:
    """
    Walks the bookmark tree depth-first, preserving source order and depth.

    A document without bookmarks yields ``[]``. Destinations that fail to resolve
    leave ``page_number`` unset and are counted in ``stats.failed_resolve``.
    """
    stats = stats if stats is not None else DestStats()
    outline = await pdf.get_outline()
    if not outline:
        logger.info("outline_result", loader=pdf.loader, outline_empty=True, dest_stats=asdict(stats))
        return []

    visited = 0

    async def parse_items(items: list[RawOutlineItem], depth: int) -> list[PdfOutlineNode]:
        nonlocal visited
        nodes: list[PdfOutlineNode] = []
        for item in items:
            visited += 1
            if visited % _YIELD_EVERY_NODES == 0:
                await asyncio.sleep(0)

            page_number = await _resolve_page_number(pdf, item.dest, stats)
            url = item.url.strip() if isinstance(item.url, str) and item.url.strip() else None
            children = await parse_items(list(item.items or []), depth + 1)
            nodes.append(
                PdfOutlineNode(
                    title=normalize_outline_title(item.title),
                    depth=depth,
                    page_number=page_number,
                    url=url,
                    children=children,
                )
            )
        return nodes

    nodes = await parse_items(outline, 0)
    logger.info(
        "outline_result",
        loader=pdf.loader,
        outline_empty=False,
        root_count=len(outline),
        visited=visited,
        dest_stats=asdict(stats),
    )
    return nodes
