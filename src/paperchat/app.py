"""
Interactive CLI: manage the local paper library and chat with one paper at a time.
"""
import asyncio
import os
import sys
from pathlib import Path

from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table, box

from .chat_service import ChatService
from .chat_session import ChatSession
from .config import console, is_evidence_required, is_hybrid_search_enabled, is_local_mode
from .errors import describe_error
from .library import LibraryItem, PaperLibrary
from .metrics import metrics_collector
from .models import ChatMessage
from .observability import get_logger
from .rendering import render_with_page_refs

logger = get_logger(__name__)


# --- UI & Formatting Functions ---

def display_welcome_banner():
    console.print(Panel(
        "[bold magenta]PaperChat - Research Paper Q&A CLI[/bold magenta]",
        subtitle="[cyan]Bookmark-aware summaries & grounded answers[/cyan]",
        expand=False
    ))
    mode = "Local" if is_local_mode() else "Cloud"
    retrieval = "Hybrid" if is_hybrid_search_enabled() else "Keyword"
    console.print(f"[green]LLM mode: {mode} | Retrieval: {retrieval} | Evidence required: {is_evidence_required()}[/green]")


async def ask_input(prompt: str, **kwargs) -> str:
    # Prompt.ask blocks; keep the event loop free for background memory refreshes.
    return await asyncio.to_thread(Prompt.ask, prompt, **kwargs)


def print_error(exc: BaseException):
    console.print(f"[bold red]Error: {describe_error(exc)}[/bold red]")


def print_message(message: ChatMessage, fallback_attachment_id: int | None = None):
    if message.role == "user":
        console.print(f"[bold cyan]You:[/bold cyan] {message.content}")
        return
    console.print(Panel(
        Markdown(render_with_page_refs(message, fallback_attachment_id)),
        title="Answer",
        border_style="blue",
    ))


def _resolve_upload_path(raw_input: str) -> tuple[Path | None, str | None]:
    """Normalizes and validates user-provided upload path."""
    cleaned = str(raw_input or "").strip().strip('"').strip("'")
    if not cleaned:
        return None, "Error: Empty path provided."
    try:
        resolved = Path(cleaned).expanduser().resolve(strict=True)
    except FileNotFoundError:
        return None, f"Error: File not found at '{cleaned}'"
    except OSError as exc:
        return None, f"Error: Invalid path '{cleaned}' ({exc})"

    if os.name == "nt":
        is_reserved_fn = getattr(os.path, "isreserved", None)
        if callable(is_reserved_fn) and is_reserved_fn(str(resolved)):
            return None, f"Error: Reserved path is not allowed: '{resolved}'"
    if not resolved.is_file():
        return None, f"Error: Path is not a regular file: '{resolved}'"
    if resolved.suffix.lower() != ".pdf":
        return None, f"Error: Not a PDF file: '{resolved}'"
    return resolved, None


# --- Library Flows ---

async def handle_pdf_upload(library: PaperLibrary):
    file_path_str = await ask_input("Enter the full path to the PDF")
    file_path, error_message = _resolve_upload_path(file_path_str)
    if file_path is None:
        console.print(f"[bold red]{error_message}[/bold red]")
        return
    title = await ask_input("Enter the paper title (optional)", default=file_path.stem)
    try:
        with console.status("[bold cyan]Copying PDF and extracting full text...[/bold cyan]", spinner="dots"):
            attachment = await asyncio.to_thread(library.add_pdf, file_path, title=title)
    except (OSError, ValueError, RuntimeError) as exc:
        print_error(exc)
        return
    library.print_added(attachment)


async def handle_paper_record(library: PaperLibrary):
    title = (await ask_input("Paper title")).strip()
    if not title:
        console.print("[bold red]Error: A title is required.[/bold red]")
        return
    abstract = await ask_input("Abstract (optional)", default="")
    item = library.add_paper(title, abstract)
    console.print(f"[green]Paper record added with ID {item.id}.[/green]")


async def choose_paper(library: PaperLibrary) -> LibraryItem | None:
    papers = library.list_papers()
    if not papers:
        console.print("[yellow]No papers in the library yet.[/yellow]")
        return None
    library.print_papers()
    choice = await ask_input("Paper ID", choices=[str(paper.id) for paper in papers])
    return library.get_item(int(choice))


# --- Chat Flow ---

async def run_summary(session: ChatSession, fallback_attachment_id: int | None):
    with console.status("[bold cyan]Summarizing...[/bold cyan]", spinner="dots") as status:
        def on_progress(percent: int, stage: str):
            status.update(f"[bold cyan]{percent:3d}% {stage}[/bold cyan]")

        result = await session.summarize(on_progress)
    if result is None:
        return
    print_message(
        ChatMessage(role="assistant", content=result.answer, section_links=result.section_links or None),
        fallback_attachment_id,
    )
    console.print(f"[dim]Chunks used: {result.used_chunks}[/dim]")


async def run_question(session: ChatSession, question: str):
    with console.status("[bold cyan]Thinking...[/bold cyan]", spinner="dots"):
        result = await session.ask(question)
    if result is None:
        return
    console.print(Panel(Markdown(result.answer), title="Answer", border_style="blue"))
    console.print(f"[dim]Retrieval: {result.retrieval_mode} | Chunks used: {result.used_chunks}[/dim]")


async def handle_chat_session(service: ChatService, library: PaperLibrary):
    item = await choose_paper(library)
    if item is None:
        return
    resolved = service.index_manager.resolve(item)
    fallback_attachment_id = resolved.attachment_item.id if resolved.attachment_item else None
    session = ChatSession(service=service, item=item)

    console.print(f"\n[bold green]Chatting with:[/bold green] {resolved.title}")
    console.print("[italic]Commands: /summary, /history, /clear, back[/italic]")
    while True:
        query = (await ask_input("[bold cyan]Ask a question[/bold cyan]")).strip()
        if not query:
            continue
        if query.lower() == "back":
            break
        try:
            if query == "/summary":
                await run_summary(session, fallback_attachment_id)
            elif query == "/history":
                messages = await session.history()
                if not messages:
                    console.print("[yellow]No conversation yet.[/yellow]")
                for message in messages:
                    print_message(message, fallback_attachment_id)
            elif query == "/clear":
                await session.clear()
                console.print("[green]Conversation and memory cleared.[/green]")
            else:
                await run_question(session, query)
        except Exception as exc:
            logger.error("chat_operation_failed", item_id=item.id, error=describe_error(exc))
            print_error(exc)


def print_metrics():
    summary = metrics_collector.get_summary()
    table = Table(title="LLM Metrics", border_style="blue", header_style="bold", box=box.SQUARE)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Requests", str(summary["requests"]["total"]))
    for kind, count in summary["requests"]["by_kind"].items():
        table.add_row(f"  {kind}", str(count))
    table.add_row("Avg latency (ms)", str(summary["latency"]["avg_ms"]))
    table.add_row("Errors", f"{summary['errors']['count']} ({summary['errors']['rate_percent']}%)")
    table.add_row("Tokens in/out", f"{summary['cost']['total_input_tokens']}/{summary['cost']['total_output_tokens']}")
    table.add_row("Estimated cost (USD)", str(summary["cost"]["total_usd"]))
    table.add_row("RSS (MB)", str(summary["memory"]["rss_mb"]))
    console.print(table)


async def run_app():
    display_welcome_banner()
    library = PaperLibrary()
    service = ChatService(library=library)

    try:
        while True:
            try:
                console.print("\n[bold]Main Menu:[/bold]")
                console.print("[green]1. Add PDF[/green]")
                console.print("[green]2. Add Paper Record (title/abstract)[/green]")
                console.print("[cyan]3. List Papers[/cyan]")
                console.print("[blue]4. Chat With a Paper[/blue]")
                console.print("[magenta]5. Show Metrics[/magenta]")
                console.print("[red]6. Exit[/red]")

                choice = await ask_input("Choose an option", choices=["1", "2", "3", "4", "5", "6"])

                if choice == "1":
                    await handle_pdf_upload(library)
                elif choice == "2":
                    await handle_paper_record(library)
                elif choice == "3":
                    library.print_papers()
                elif choice == "4":
                    await handle_chat_session(service, library)
                elif choice == "5":
                    print_metrics()
                elif choice == "6":
                    break
            except KeyboardInterrupt:
                break
    finally:
        await service.aclose()
        library.close()

    console.print("\n[bold magenta]Goodbye! Happy reading.[/bold magenta]")


def main():
    """Main application entry point."""
    try:
        asyncio.run(run_app())
    except KeyboardInterrupt:
        pass
    sys.exit(0)


if __name__ == "__main__":
    main()
