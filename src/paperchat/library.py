# /paperchat/library.py
"""
Local paper library: bibliographic records with PDF attachments.
Each attachment lives in its own storage folder next to its full-text cache file.
"""
import asyncio
import sqlite3
import threading
import uuid
from contextlib import closing, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import fitz
from rich.panel import Panel
from rich.table import Table, box

from .config import FULLTEXT_CACHE_NAME, LIBRARY_DB_PATH, LIBRARY_DIR, console
from .db_migrations import SqliteMigration, apply_sqlite_migrations
from .models import utcnow_iso
from .observability import get_logger
from .storage_provider import FileStorageProvider, LocalFileStorageProvider

logger = get_logger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
ITEM_TYPE_PAPER = "paper"
ITEM_TYPE_ATTACHMENT = "attachment"


@dataclass(frozen=True)
class LibraryItem:
    id: int
    item_type: str
    title: str = ""
    abstract: str = ""
    parent_id: int | None = None
    file_path: str | None = None
    content_type: str | None = None

    def is_regular_item(self) -> bool:
        return self.item_type == ITEM_TYPE_PAPER

    def is_pdf_attachment(self) -> bool:
        return self.item_type == ITEM_TYPE_ATTACHMENT and self.content_type == PDF_CONTENT_TYPE


class Library(Protocol):
    def get_item(self, item_id: int) -> LibraryItem | None:
        ...

    def get_attachments(self, item: LibraryItem) -> list[LibraryItem]:
        ...

    async def read_fulltext_cache(self, attachment: LibraryItem) -> str:
        ...


def extract_pdf_text(path: Path) -> str:
    with closing(fitz.open(str(path))) as pdf_doc:
        return "\n\n".join(page.get_text("text") or "" for page in pdf_doc)


class PaperLibrary:
    """SQLite-backed catalog of papers and their PDF attachments."""

    def __init__(
        self,
        db_path: Path | None = None,
        storage_dir: Path = LIBRARY_DIR / "storage",
        storage_provider: FileStorageProvider | None = None,
    ):
        self.storage: FileStorageProvider = storage_provider or LocalFileStorageProvider(Path(storage_dir))
        self.storage.ensure_ready()
        self.db_path = Path(db_path) if db_path else LIBRARY_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect()
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise RuntimeError("library connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None

    def _ensure_schema(self):
        migrations = [
            SqliteMigration(
                version=1,
                name="create_library_items_table",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS library_items (
                        item_id INTEGER PRIMARY KEY AUTOINCREMENT,
                        item_type TEXT NOT NULL,
                        title TEXT NOT NULL DEFAULT '',
                        abstract TEXT NOT NULL DEFAULT '',
                        parent_id INTEGER REFERENCES library_items(item_id),
                        file_path TEXT,
                        content_type TEXT,
                        added_at TEXT NOT NULL
                    )
                    """,
                ),
            ),
            SqliteMigration(
                version=2,
                name="index_library_items_parent",
                statements=(
                    "CREATE INDEX IF NOT EXISTS idx_library_items_parent ON library_items(parent_id)",
                ),
            ),
        ]
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component="library_items", migrations=migrations)

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> LibraryItem:
        return LibraryItem(
            id=int(row["item_id"]),
            item_type=str(row["item_type"]),
            title=str(row["title"] or ""),
            abstract=str(row["abstract"] or ""),
            parent_id=int(row["parent_id"]) if row["parent_id"] is not None else None,
            file_path=str(row["file_path"]) if row["file_path"] else None,
            content_type=str(row["content_type"]) if row["content_type"] else None,
        )

    def _insert(self, **fields) -> LibraryItem:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO library_items (item_type, title, abstract, parent_id, file_path, content_type, added_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    fields["item_type"],
                    str(fields.get("title") or ""),
                    str(fields.get("abstract") or ""),
                    fields.get("parent_id"),
                    fields.get("file_path"),
                    fields.get("content_type"),
                    utcnow_iso(),
                ),
            )
            item_id = int(cursor.lastrowid)
        return self.get_item(item_id)

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------
    def add_paper(self, title: str, abstract: str = "") -> LibraryItem:
        item = self._insert(item_type=ITEM_TYPE_PAPER, title=title, abstract=abstract)
        logger.info("library_paper_added", item_id=item.id, title=item.title)
        return item

    def add_pdf(
        self,
        file_path: str | Path,
        *,
        parent_id: int | None = None,
        title: str | None = None,
        abstract: str = "",
        index_fulltext: bool = True,
    ) -> LibraryItem:
        """Copies a PDF into storage; creates a parent record when ``parent_id`` is None."""
        source_path = Path(file_path)
        if not source_path.is_file():
            raise FileNotFoundError(f"PDF not found at {source_path}")
        if source_path.suffix.lower() != ".pdf":
            raise ValueError(f"Not a PDF file: {source_path}")

        if parent_id is None:
            parent_id = self.add_paper(title or source_path.stem, abstract).id

        storage_key = uuid.uuid4().hex[:8].upper()
        stored_path = self.storage.save_file(source_path, f"{storage_key}/{source_path.name}")
        attachment = self._insert(
            item_type=ITEM_TYPE_ATTACHMENT,
            title=source_path.name,
            parent_id=parent_id,
            file_path=str(stored_path),
            content_type=PDF_CONTENT_TYPE,
        )
        logger.info(
            "library_pdf_added",
            item_id=attachment.id,
            parent_id=parent_id,
            bytes=int(source_path.stat().st_size),
            stored_file=str(stored_path),
        )
        if index_fulltext:
            self.index_fulltext(attachment)
        return attachment

    def get_item(self, item_id: int) -> LibraryItem | None:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM library_items WHERE item_id = ?", (int(item_id),)).fetchone()
        return self._row_to_item(row) if row else None

    def get_attachments(self, item: LibraryItem) -> list[LibraryItem]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM library_items WHERE parent_id = ? ORDER BY item_id ASC",
                (int(item.id),),
            ).fetchall()
        return [self._row_to_item(row) for row in rows]

    def list_papers(self) -> list[LibraryItem]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM library_items WHERE item_type = ? ORDER BY item_id ASC",
                (ITEM_TYPE_PAPER,),
            ).fetchall()
        return [self._row_to_item(row) for row in rows]

    # ------------------------------------------------------------------
    # Full text
    # ------------------------------------------------------------------
    def fulltext_cache_path(self, attachment: LibraryItem) -> Path | None:
        if not attachment.file_path:
            return None
        return Path(attachment.file_path).parent / FULLTEXT_CACHE_NAME

    def index_fulltext(self, attachment: LibraryItem) -> str:
        """Extracts the PDF text and writes it to the attachment's full-text cache file."""
        cache_path = self.fulltext_cache_path(attachment)
        if cache_path is None:
            return ""
        text = extract_pdf_text(Path(attachment.file_path))
        self.storage.write_text_atomic(cache_path, text)
        logger.info("library_fulltext_indexed", item_id=attachment.id, chars=len(text))
        return text

    async def read_fulltext_cache(self, attachment: LibraryItem) -> str:
        """Returns the cached full text, or "" when the attachment has never been indexed."""
        cache_path = self.fulltext_cache_path(attachment)
        if cache_path is None:
            return ""
        return await asyncio.to_thread(self.storage.read_text, cache_path)

    async def read_attachment_text(self, attachment: LibraryItem) -> str:
        cached = await self.read_fulltext_cache(attachment)
        if cached.strip():
            return cached
        return await asyncio.to_thread(self.index_fulltext, attachment)

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------
    def print_papers(self):
        papers = self.list_papers()
        if not papers:
            console.print("[yellow]No papers in the library yet.[/yellow]")
            return

        table = Table(title="Library", border_style="blue", header_style="bold", box=box.SQUARE)
        table.add_column("ID", style="cyan")
        table.add_column("Title", style="magenta")
        table.add_column("PDF", style="white")
        for paper in papers:
            has_pdf = any(child.is_pdf_attachment() for child in self.get_attachments(paper))
            table.add_row(str(paper.id), paper.title, "[green]yes[/green]" if has_pdf else "[red]no[/red]")
        console.print(table)

    def print_added(self, attachment: LibraryItem):
        parent = self.get_item(attachment.parent_id) if attachment.parent_id else None
        console.print(
            Panel(
                f"[green]OK PDF added: [bold]{attachment.title}[/bold]\n"
                f"       Paper ID: {parent.id if parent else attachment.id}\n"
                f"       Title: {parent.title if parent else attachment.title}",
                title="Library",
                border_style="green",
            )
        )
