"""Per-paper chat session state for interactive surfaces."""
from __future__ import annotations

from .chat_service import ChatService
from .library import LibraryItem
from .models import AskResult, ChatMessage, SummaryResult
from .observability import get_logger
from .summarizer import ProgressCallback

logger = get_logger(__name__)


class GenerationCounter:
    """
    Monotonic token source. A flow grabs a token with ``begin()`` and checks
    ``is_current(token)`` before publishing; any later ``begin()`` or
    ``invalidate()`` makes the older token stale.
    """

    def __init__(self):
        self._value = 0

    @property
    def value(self) -> int:
        return self._value

    def begin(self) -> int:
        self._value += 1
        return self._value

    def invalidate(self):
        self._value += 1

    def is_current(self, token: int) -> bool:
        return token == self._value


class ChatSession:
    """
    Holds the selected paper for one surface and drops results that finished
    after the user moved on (another paper, a newer request, or a clear).
    """

    def __init__(self, *, service: ChatService, item: LibraryItem | None = None):
        self.service = service
        self.item = item
        self.generation = GenerationCounter()

    def select(self, item: LibraryItem):
        self.item = item
        self.generation.invalidate()

    def _require_item(self) -> LibraryItem:
        if self.item is None:
            raise ValueError("Select a paper first.")
        return self.item

    async def summarize(self, on_progress: ProgressCallback | None = None) -> SummaryResult | None:
        item = self._require_item()
        token = self.generation.begin()

        def _progress(percent: int, stage: str):
            if on_progress is not None and self.generation.is_current(token):
                on_progress(percent, stage)

        result = await self.service.summarize_paper(item, _progress)
        if not self.generation.is_current(token):
            logger.info("stale_result_discarded", item_id=item.id, operation="summarize")
            return None
        return result

    async def ask(self, question: str) -> AskResult | None:
        item = self._require_item()
        token = self.generation.begin()
        result = await self.service.ask_paper_question(item, question)
        if not self.generation.is_current(token):
            logger.info("stale_result_discarded", item_id=item.id, operation="ask")
            return None
        return result

    async def clear(self):
        item = self._require_item()
        self.generation.invalidate()
        await self.service.clear_chat(item)

    async def history(self) -> list[ChatMessage]:
        return await self.service.get_conversation(self._require_item())
