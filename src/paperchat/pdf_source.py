"""
PDF document capability used by the outline and section-context builders.

Two loaders implement it: PyMuPDF (primary, opens from a path) and pypdf
(alternate, opens from raw bytes). Both expose the bookmark tree with
unresolved destinations so that resolution statistics are comparable.
"""
from __future__ import annotations

import io
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, Sequence

import fitz
from pypdf import PdfReader


@dataclass
class RawOutlineItem:
    """One bookmark as stored in the PDF; ``dest`` is a named destination or an explicit array."""

    title: str = ""
    dest: str | Sequence[Any] | None = None
    url: str | None = None
    items: list["RawOutlineItem"] = field(default_factory=list)


class PdfDocument(Protocol):
    loader: str

    @property
    def num_pages(self) -> int:
        ...

    async def get_outline(self) -> list[RawOutlineItem] | None:
        ...

    async def get_destination(self, name: str) -> Sequence[Any] | None:
        ...

    async def get_page_index(self, ref: Any) -> int:
        ...

    async def get_page_text(self, page_number: int) -> str:
        """Text of a 1-based page."""
        ...

    def close(self):
        ...


# ---------------------------------------------------------------------------
# PyMuPDF
# ---------------------------------------------------------------------------

class FitzPdfDocument:
    loader = "pymupdf"

    def __init__(self, doc: fitz.Document):
        self._doc = doc
        self._named: dict[str, Any] | None = None

    @classmethod
    def open_path(cls, path: str | Path) -> "FitzPdfDocument":
        return cls(fitz.open(str(path)))

    @property
    def num_pages(self) -> int:
        return int(self._doc.page_count)

    async def get_outline(self) -> list[RawOutlineItem] | None:
        toc = self._doc.get_toc(simple=False)  # [[level, title, page, dest_dict], ...]
        if not toc:
            return None

        roots: list[RawOutlineItem] = []
        stack: list[tuple[int, RawOutlineItem]] = []
        for entry in toc:
            level = int(entry[0])
            item = self._toc_entry_to_item(entry)
            while stack and stack[-1][0] >= level:
                stack.pop()
            if stack:
                stack[-1][1].items.append(item)
            else:
                roots.append(item)
            stack.append((level, item))
        return roots

    @staticmethod
    def _toc_entry_to_item(entry: list[Any]) -> RawOutlineItem:
        title = str(entry[1] or "")
        page = int(entry[2]) if len(entry) > 2 and entry[2] is not None else -1
        dest_info = entry[3] if len(entry) > 3 and isinstance(entry[3], dict) else {}
        kind = dest_info.get("kind")

        if kind == fitz.LINK_URI:
            return RawOutlineItem(title=title, url=str(dest_info.get("uri") or "") or None)
        if kind == fitz.LINK_NAMED:
            name = dest_info.get("nameddest") or dest_info.get("name")
            if name:
                return RawOutlineItem(title=title, dest=str(name))
        if kind == fitz.LINK_GOTO and int(dest_info.get("page", -1)) >= 0:
            return RawOutlineItem(title=title, dest=[int(dest_info["page"])])
        if page > 0:
            return RawOutlineItem(title=title, dest=[page - 1])
        return RawOutlineItem(title=title)

    async def get_destination(self, name: str) -> Sequence[Any] | None:
        if self._named is None:
            resolver = getattr(self._doc, "resolve_names", None)
            self._named = resolver() if callable(resolver) else {}
        target = self._named.get(name)
        if not isinstance(target, dict) or "page" not in target:
            return None
        return [int(target["page"])]

    async def get_page_index(self, ref: Any) -> int:
        index = int(ref)
        if not 0 <= index < self._doc.page_count:
            raise ValueError(f"page reference {ref!r} outside document")
        return index

    async def get_page_text(self, page_number: int) -> str:
        return self._doc.load_page(int(page_number) - 1).get_text("text") or ""

    def close(self):
        self._doc.close()


# ---------------------------------------------------------------------------
# pypdf
# ---------------------------------------------------------------------------

class PypdfPdfDocument:
    loader = "pypdf"

    def __init__(self, reader: PdfReader):
        self._reader = reader

    @classmethod
    def open_bytes(cls, data: bytes) -> "PypdfPdfDocument":
        return cls(PdfReader(io.BytesIO(data)))

    @property
    def num_pages(self) -> int:
        return len(self._reader.pages)

    async def get_outline(self) -> list[RawOutlineItem] | None:
        outline = self._reader.outline
        if not outline:
            return None
        return self._convert(outline)

    def _convert(self, entries: list[Any]) -> list[RawOutlineItem]:
        # pypdf nests children as a list that directly follows their parent.
        items: list[RawOutlineItem] = []
        for entry in entries:
            if isinstance(entry, list):
                children = self._convert(entry)
                if items:
                    items[-1].items.extend(children)
                else:
                    items.extend(children)
                continue
            items.append(
                RawOutlineItem(
                    title=str(getattr(entry, "title", "") or ""),
                    dest=[entry],
                    url=self._action_uri(entry),
                )
            )
        return items

    @staticmethod
    def _action_uri(entry: Any) -> str | None:
        node = getattr(entry, "node", None)
        if node is None:
            return None
        action = node.get("/A")
        if action is None:
            return None
        uri = action.get_object().get("/URI")
        return str(uri) if uri else None

    async def get_destination(self, name: str) -> Sequence[Any] | None:
        target = self._reader.named_destinations.get(name)
        return [target] if target is not None else None

    async def get_page_index(self, ref: Any) -> int:
        index = self._reader.get_destination_page_number(ref)
        return -1 if index is None else int(index)

    async def get_page_text(self, page_number: int) -> str:
        return self._reader.pages[int(page_number) - 1].extract_text() or ""

    def close(self):
        self._reader.stream.close()


def read_pdf_bytes(path: str | Path) -> bytes:
    return Path(path).read_bytes()
