"""
Conversation store: one JSON document holding paper indexes, chat history,
long-term memories and embedding caches for every paper.

The in-memory document is authoritative after the first load. Writes go through
a single writer task so they reach disk in the order ``commit()`` was called,
each one carrying the document as it was at that call.
"""
from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .config import STORE_PATH
from .db_migrations import DocumentMigration, apply_document_migrations
from .models import STORE_VERSION, PaperStore
from .observability import get_logger
from .storage_provider import FileStorageProvider, LocalFileStorageProvider

logger = get_logger(__name__)


def _upgrade_v1_to_v2(document: dict[str, Any]) -> dict[str, Any]:
    # v1 only knew papers and conversations.
    document.setdefault("papers", {})
    document.setdefault("conversations", {})
    document.setdefault("memories", {})
    document.setdefault("embeddings", {})
    return document


STORE_MIGRATIONS = [
    DocumentMigration(version=2, name="add_memories_and_embeddings", upgrade=_upgrade_v1_to_v2),
]


class JsonStore:
    """Lazy-loading JSON document store with an ordered single-writer queue."""

    def __init__(self, path: Path | None = None, storage: FileStorageProvider | None = None):
        self.path = Path(path) if path else STORE_PATH
        self.storage: FileStorageProvider = storage or LocalFileStorageProvider(self.path.parent)
        self._document: PaperStore | None = None
        self._load_lock = asyncio.Lock()
        self._queue: asyncio.Queue[tuple[str, asyncio.Future] | None] | None = None
        self._writer: asyncio.Task | None = None
        self.write_count = 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def load(self) -> PaperStore:
        if self._document is not None:
            return self._document
        async with self._load_lock:
            if self._document is None:
                self._document = await self._read_from_disk()
        return self._document

    async def _read_from_disk(self) -> PaperStore:
        try:
            raw = await asyncio.to_thread(self.storage.read_text, self.path)
        except OSError as exc:
            logger.error("store_read_failed", path=str(self.path), error=str(exc))
            return PaperStore()

        if not raw.strip():
            return PaperStore()

        try:
            payload = json.loads(raw)
            if not isinstance(payload, dict):
                raise ValueError("store root is not an object")
            payload, migrated = apply_document_migrations(payload, component="paper_store", migrations=STORE_MIGRATIONS)
            document = PaperStore.model_validate(payload)
        except (ValueError, ValidationError) as exc:
            # Includes json.JSONDecodeError. A broken file is replaced on the next commit.
            logger.error("store_load_failed_reset", path=str(self.path), error=str(exc))
            return PaperStore()

        logger.info(
            "store_loaded",
            path=str(self.path),
            papers=len(document.papers),
            conversations=len(document.conversations),
            migrated=migrated,
        )
        return document

    def invalidate(self):
        """Drops the cached document; the next ``load()`` re-reads the file."""
        self._document = None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def _snapshot(self) -> str:
        document = self._document or PaperStore()
        document.version = STORE_VERSION
        return json.dumps(document.to_json_dict(), ensure_ascii=False, indent=2)

    def _ensure_writer(self):
        if self._writer is None or self._writer.done():
            self._queue = asyncio.Queue()
            self._writer = asyncio.get_running_loop().create_task(self._writer_loop(self._queue))

    async def _writer_loop(self, queue: asyncio.Queue):
        while True:
            item = await queue.get()
            if item is None:
                queue.task_done()
                return
            snapshot, done = item
            try:
                await asyncio.to_thread(self.storage.write_text_atomic, self.path, snapshot)
                self.write_count += 1
                if not done.done():
                    done.set_result(None)
            except OSError as exc:
                logger.error("store_write_failed", path=str(self.path), error=str(exc))
                if not done.done():
                    done.set_exception(exc)
            finally:
                queue.task_done()

    def commit(self) -> asyncio.Future:
        """
        Serializes the in-memory document now and queues it for writing.
        The returned future resolves once that snapshot is on disk.
        """
        if self._document is None:
            raise RuntimeError("JsonStore.load() must complete before commit().")
        snapshot = self._snapshot()
        self._ensure_writer()
        done: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((snapshot, done))
        return done

    async def flush(self):
        if self._queue is not None and self._writer is not None and not self._writer.done():
            await self._queue.join()

    async def close(self):
        if self._writer is None or self._writer.done():
            return
        self._queue.put_nowait(None)
        await self._writer
        self._writer = None
