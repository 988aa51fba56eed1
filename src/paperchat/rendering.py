"""
Links the markdown headings of a summary answer back to PDF pages using the
section links stored with the message.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

from .models import ChatMessage, ChatSectionLink

_HEADING_RE = re.compile(r"^\s{0,3}#{2,6}\s+(.+?)\s*$")
_HASH_PREFIX_RE = re.compile(r"^#+\s*")
_NUMBER_PREFIX_RE = re.compile(r"^\d+(?:\.\d+)*[).]?\s+")
_ROMAN_PREFIX_RE = re.compile(r"^[ivxlcdm]+[).]?\s+", flags=re.IGNORECASE)
_EMPHASIS_RE = re.compile(r"[*_`~]")
_WHITESPACE_RE = re.compile(r"\s+")
_TRAILING_PUNCT_RE = re.compile(r"[.:;,\-]+$")


@dataclass(frozen=True)
class RenderedLine:
    text: str
    page_number: int | None = None
    attachment_item_id: int | None = None

    @property
    def is_link(self) -> bool:
        return self.page_number is not None and self.attachment_item_id is not None


def parse_markdown_heading(line: str) -> str | None:
    match = _HEADING_RE.match(str(line or ""))
    return match.group(1) if match else None


def normalize_heading_key(value: str) -> str:
    text = str(value or "").strip()
    text = _HASH_PREFIX_RE.sub("", text)
    text = _NUMBER_PREFIX_RE.sub("", text)
    text = _ROMAN_PREFIX_RE.sub("", text)
    text = _EMPHASIS_RE.sub("", text)
    text = _WHITESPACE_RE.sub(" ", text)
    text = _TRAILING_PUNCT_RE.sub("", text)
    return text.lower()


def build_section_link_lookup(links: list[ChatSectionLink]) -> dict[str, list[ChatSectionLink]]:
    """Queues links per normalized title so repeated headings map to successive links."""
    lookup: dict[str, list[ChatSectionLink]] = {}
    for link in links:
        key = normalize_heading_key(link.title)
        if key:
            lookup.setdefault(key, []).append(link)
    return lookup


def consume_section_link(lookup: dict[str, list[ChatSectionLink]], heading_title: str) -> ChatSectionLink | None:
    key = normalize_heading_key(heading_title)
    if not key:
        return None

    exact = lookup.get(key)
    if exact:
        return exact.pop(0)

    for candidate_key, queue in lookup.items():
        if queue and (key in candidate_key or candidate_key in key):
            return queue.pop(0)
    return None


def link_message_lines(message: ChatMessage, fallback_attachment_id: int | None = None) -> list[RenderedLine]:
    content = str(message.content or "").replace("\r\n", "\n")
    lines = content.split("\n")
    if message.role != "assistant" or not message.section_links:
        return [RenderedLine(line) for line in lines]

    lookup = build_section_link_lookup(message.section_links)
    rendered = []
    for line in lines:
        title = parse_markdown_heading(line)
        link = consume_section_link(lookup, title) if title is not None else None
        page = int(link.page_number) if link is not None and link.page_number is not None else 0
        attachment_id = int((link.attachment_item_id if link is not None else None) or fallback_attachment_id or 0)
        if page > 0 and attachment_id > 0:
            rendered.append(RenderedLine(line, page_number=page, attachment_item_id=attachment_id))
        else:
            rendered.append(RenderedLine(line))
    return rendered


def render_with_page_refs(message: ChatMessage, fallback_attachment_id: int | None = None) -> str:
    """Markdown with ``(p.N)`` appended to every heading that resolves to a PDF page."""
    out = []
    for line in link_message_lines(message, fallback_attachment_id):
        out.append(f"{line.text} _(p.{line.page_number})_" if line.is_link else line.text)
    return "\n".join(out)
