"""
User-facing paper chat operations: summarize, ask, clear and read history.

Wires the index manager, retrieval, summarizer and conversation services over
one shared store and LLM client. Memory refresh runs as a tracked background
task after every answer.
"""
from __future__ import annotations

import asyncio
from typing import Coroutine

from .config import MAX_HISTORY_MESSAGES, RETRIEVAL_TOP_K, is_evidence_required
from .conversation import ConversationService, build_context_block, enforce_evidence
from .embeddings import EmbeddingCacheManager
from .library import LibraryItem, PaperLibrary
from .llm_client import LLMClient
from .models import AskResult, ChatMessage, SummaryResult
from .observability import get_logger
from .paper_index import PaperIndexManager
from .prompts import PromptConfigLoader, render_prompt_template
from .retrieval import RetrievalEngine
from .section_context import SectionContextExtractor
from .store import JsonStore
from .summarizer import ProgressCallback, SummarizationPlanner

logger = get_logger(__name__)

MEMORY_BLOCK_HEADER = "Long-term conversation memory (reference):"


class ChatService:
    def __init__(
        self,
        *,
        library: PaperLibrary,
        store: JsonStore | None = None,
        client: LLMClient | None = None,
        prompts: PromptConfigLoader | None = None,
        extractor: SectionContextExtractor | None = None,
        retrieval: RetrievalEngine | None = None,
    ):
        self.library = library
        self.store = store or JsonStore()
        self.client = client or LLMClient()
        self.prompts = prompts or PromptConfigLoader()
        self.index_manager = PaperIndexManager(store=self.store, library=library)
        self.embeddings = EmbeddingCacheManager(store=self.store, client=self.client)
        self.retrieval = retrieval or RetrievalEngine(embeddings=self.embeddings, client=self.client)
        self.conversations = ConversationService(store=self.store, client=self.client, prompts=self.prompts)
        self.extractor = extractor or SectionContextExtractor(attachment_text_reader=library.read_attachment_text)
        self.summarizer = SummarizationPlanner(
            index_manager=self.index_manager,
            extractor=self.extractor,
            conversations=self.conversations,
            client=self.client,
            prompts=self.prompts,
        )
        self._background_tasks: set[asyncio.Task] = set()
        # At most one memory refresh in flight per paper.
        self._memory_refreshes: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------
    def _spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def drain_background_tasks(self):
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    def _schedule_memory_refresh(self, paper_id: str, title: str):
        pending = self._memory_refreshes.get(paper_id)
        if pending is not None and not pending.done():
            logger.debug("memory_refresh_already_running", paper_id=paper_id)
            return

        task = self._spawn(self.conversations.refresh_memory_if_needed(paper_id, title), name=f"memory-refresh-{paper_id}")
        self._memory_refreshes[paper_id] = task

        def _forget(done: asyncio.Task):
            if self._memory_refreshes.get(paper_id) is done:
                del self._memory_refreshes[paper_id]

        task.add_done_callback(_forget)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def summarize_paper(self, item: LibraryItem, on_progress: ProgressCallback | None = None) -> SummaryResult:
        resolved = self.index_manager.resolve(item)
        result = await self.summarizer.summarize(resolved, on_progress)
        self._schedule_memory_refresh(resolved.paper_id, resolved.title)
        return result

    async def ask_paper_question(self, item: LibraryItem, question: str) -> AskResult:
        question = str(question or "").strip()
        if not question:
            raise ValueError("Question must not be empty.")

        prompts = self.prompts.get()
        resolved = self.index_manager.resolve(item)
        index = await self.index_manager.ensure_index(resolved)
        conversation = await self.conversations.get_conversation(resolved.paper_id)
        memory = await self.conversations.get_memory(resolved.paper_id)

        retrieval = await self.retrieval.retrieve(resolved.paper_id, index, question, RETRIEVAL_TOP_K)
        history = [
            {"role": message.role, "content": message.content}
            for message in (conversation[-MAX_HISTORY_MESSAGES:] if MAX_HISTORY_MESSAGES > 0 else [])
        ]
        memory_summary = memory.summary if memory is not None and memory.summary else "(none)"
        values = {
            "title": index.title,
            "memory_block": f"{MEMORY_BLOCK_HEADER}\n{memory_summary}",
            "context": build_context_block(retrieval.chunks),
            "question": question,
        }
        messages = [
            {"role": "system", "content": render_prompt_template(prompts.qa_system, values)},
            *history,
            {"role": "user", "content": render_prompt_template(prompts.qa_user, values)},
        ]

        raw_answer = await self.client.request_chat(messages)
        answer = enforce_evidence(raw_answer, retrieval.chunks, required=is_evidence_required())

        await self.conversations.append_conversation(resolved.paper_id, [
            ChatMessage(role="user", content=question),
            ChatMessage(role="assistant", content=answer),
        ])
        self._schedule_memory_refresh(resolved.paper_id, index.title)

        logger.info(
            "question_answered",
            paper_id=resolved.paper_id,
            retrieval_mode=retrieval.mode,
            used_chunks=len(retrieval.chunks),
            history=len(history),
        )
        return AskResult(answer=answer, used_chunks=len(retrieval.chunks), retrieval_mode=retrieval.mode)

    async def clear_chat(self, item: LibraryItem):
        resolved = self.index_manager.resolve(item)
        await self.conversations.clear_conversation(resolved.paper_id)

    async def get_conversation(self, item: LibraryItem) -> list[ChatMessage]:
        resolved = self.index_manager.resolve(item)
        return await self.conversations.get_conversation(resolved.paper_id)

    async def aclose(self):
        await self.drain_background_tasks()
        await self.store.close()
        await self.client.aclose()
