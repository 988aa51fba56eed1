"""
Per-paper conversation history, long-term memory compression and the
citation check applied to Q&A answers.
"""
from __future__ import annotations

import re

from .config import (
    EVIDENCE_SNIPPET_CHARS,
    EVIDENCE_SNIPPET_COUNT,
    MAX_STORED_MESSAGES,
    MEMORY_MIN_MESSAGES,
    MEMORY_REFRESH_MIN_NEW_TURNS,
    MEMORY_SOURCE_WINDOW,
)
from .llm_client import LLMClient
from .models import ChatMessage, ConversationMemory, TextChunk
from .observability import get_logger
from .prompts import PromptConfigLoader, render_prompt_template
from .store import JsonStore
from .text_processing import clip_text

logger = get_logger(__name__)

_CITATION_RE = re.compile(r"\[C\d+\]")

EVIDENCE_DISCLAIMER = "Citation markers are missing, so this answer's reliability cannot be guaranteed."


def build_context_block(chunks: list[TextChunk], include_labels: bool = True) -> str:
    if include_labels:
        return "\n\n".join(f"[C{i}] {chunk.text}" for i, chunk in enumerate(chunks, start=1))
    return "\n\n".join(chunk.text for chunk in chunks)


def enforce_evidence(answer: str, chunks: list[TextChunk], required: bool = True) -> str:
    """
    Appends a disclaimer and the top context snippets when an answer carries no
    ``[C#]`` citation although evidence was available.
    """
    clean = str(answer or "").strip()
    if not required or not chunks or _CITATION_RE.search(clean):
        return clean

    snippets = [
        f"[C{i}] {clip_text(chunk.text, EVIDENCE_SNIPPET_CHARS)}"
        for i, chunk in enumerate(chunks[:EVIDENCE_SNIPPET_COUNT], start=1)
    ]
    return "\n".join([EVIDENCE_DISCLAIMER, clean, "", "Context for review:", *snippets])


def build_transcript(messages: list[ChatMessage]) -> str:
    lines = []
    for message in messages:
        speaker = "User" if message.role == "user" else "Assistant"
        lines.append(f"{speaker}: {message.content}")
    return "\n".join(lines)


class ConversationService:
    def __init__(self, *, store: JsonStore, client: LLMClient, prompts: PromptConfigLoader):
        self.store = store
        self.client = client
        self.prompts = prompts

    async def get_conversation(self, paper_id: str) -> list[ChatMessage]:
        document = await self.store.load()
        return list(document.conversations.get(paper_id, []))

    async def get_memory(self, paper_id: str) -> ConversationMemory | None:
        document = await self.store.load()
        return document.memories.get(paper_id)

    async def append_conversation(self, paper_id: str, messages: list[ChatMessage]):
        document = await self.store.load()
        merged = [*document.conversations.get(paper_id, []), *messages]
        dropped = max(0, len(merged) - MAX_STORED_MESSAGES)
        if dropped:
            merged = merged[dropped:]
            memory = document.memories.get(paper_id)
            if memory is not None:
                # turn_count indexes into the stored list; shift it with the trim.
                memory.turn_count = max(0, memory.turn_count - dropped)
        document.conversations[paper_id] = merged
        await self.store.commit()

    async def clear_conversation(self, paper_id: str):
        document = await self.store.load()
        document.conversations.pop(paper_id, None)
        document.memories.pop(paper_id, None)
        await self.store.commit()
        logger.info("conversation_cleared", paper_id=paper_id)

    def needs_memory_refresh(self, conversation: list[ChatMessage], memory: ConversationMemory | None) -> bool:
        if len(conversation) < MEMORY_MIN_MESSAGES:
            return False
        seen = memory.turn_count if memory is not None else 0
        new_exchanges = max(0, len(conversation) - seen) // 2
        return new_exchanges >= MEMORY_REFRESH_MIN_NEW_TURNS

    async def refresh_memory_if_needed(self, paper_id: str, title: str) -> bool:
        """Compresses recent turns into long-term memory. Never raises; returns True when memory changed."""
        try:
            conversation = await self.get_conversation(paper_id)
            memory = await self.get_memory(paper_id)
            if not self.needs_memory_refresh(conversation, memory):
                return False

            prompts = self.prompts.get()
            transcript = build_transcript(conversation[-MEMORY_SOURCE_WINDOW:])
            values = {"title": title, "transcript": transcript}
            summary = await self.client.request_chat([
                {"role": "system", "content": render_prompt_template(prompts.memory_system, values)},
                {"role": "user", "content": render_prompt_template(prompts.memory_user, values)},
            ])
            summary = summary.strip()
            if not summary:
                return False

            document = await self.store.load()
            document.memories[paper_id] = ConversationMemory(summary=summary, turn_count=len(conversation))
            await self.store.commit()
            logger.info("memory_refreshed", paper_id=paper_id, turn_count=len(conversation), chars=len(summary))
            return True
        except Exception as exc:
            logger.warning("memory_refresh_failed", paper_id=paper_id, error=str(exc))
            return False
