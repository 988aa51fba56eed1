"""
Persisted data model for the paper chat store.
Field names are snake_case in Python and camelCase in the JSON document.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

STORE_VERSION = 2

IndexSource = Literal["pdf-cache", "abstract", "title"]
ChatRole = Literal["user", "assistant"]


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class _StoreModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TextChunk(_StoreModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    text: str
    start: int
    end: int


class PaperIndex(_StoreModel):
    hash: str
    title: str
    source: IndexSource
    chunks: list[TextChunk] = Field(default_factory=list)
    updated_at: str = Field(default_factory=utcnow_iso)


class ChatSectionLink(_StoreModel):
    title: str
    path: str | None = None
    page_number: int | None = None
    attachment_item_id: int | None = None


class ChatMessage(_StoreModel):
    role: ChatRole
    content: str
    created_at: str = Field(default_factory=utcnow_iso)
    section_links: list[ChatSectionLink] | None = None


class ConversationMemory(_StoreModel):
    summary: str
    updated_at: str = Field(default_factory=utcnow_iso)
    turn_count: int = 0


class PaperEmbeddings(_StoreModel):
    endpoint: str
    model: str
    chunk_hashes: dict[str, str] = Field(default_factory=dict)
    vectors: dict[str, list[float]] = Field(default_factory=dict)
    updated_at: str = Field(default_factory=utcnow_iso)


class PaperStore(_StoreModel):
    version: int = STORE_VERSION
    papers: dict[str, PaperIndex] = Field(default_factory=dict)
    conversations: dict[str, list[ChatMessage]] = Field(default_factory=dict)
    memories: dict[str, ConversationMemory] = Field(default_factory=dict)
    embeddings: dict[str, PaperEmbeddings] = Field(default_factory=dict)


class SummaryResult(_StoreModel):
    answer: str
    used_chunks: int
    section_links: list[ChatSectionLink] = Field(default_factory=list)


class AskResult(_StoreModel):
    answer: str
    used_chunks: int
    retrieval_mode: Literal["keyword", "hybrid"]
