"""
FastAPI service layer for PaperChat.

Exposes the paper chat operations (summarize, ask, history, clear) over HTTP
plus GET /metrics.

Run with:
    uvicorn paperchat.api_server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .chat_service import ChatService
from .errors import ConfigurationMissingError, ContentUnavailableError, UpstreamRequestError, describe_error
from .library import LibraryItem, PaperLibrary
from .metrics import metrics_collector
from .models import ChatSectionLink
from .observability import get_logger

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class PaperCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, description="Paper title")
    abstract: str = Field(default="", description="Abstract used when no PDF text is available")


class PaperResponse(BaseModel):
    id: int
    title: str
    has_pdf: bool


class AskRequest(BaseModel):
    question: str = Field(..., min_length=1, description="Question about the paper")


class AskResponse(BaseModel):
    answer: str
    used_chunks: int
    retrieval_mode: Literal["keyword", "hybrid"]


class SummaryResponse(BaseModel):
    answer: str
    used_chunks: int
    section_links: list[ChatSectionLink] = Field(default_factory=list)


class MessageResponse(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    created_at: str
    section_links: list[ChatSectionLink] | None = None


# ---------------------------------------------------------------------------
# Application state populated at startup
# ---------------------------------------------------------------------------

_state: dict[str, Any] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the library and chat service once at startup; clean up on shutdown."""
    library = PaperLibrary()
    service = ChatService(library=library)
    _state["library"] = library
    _state["service"] = service

    yield  # Application is running.

    await service.aclose()
    library.close()
    _state.clear()


app = FastAPI(
    title="PaperChat API",
    description="Research paper summaries and grounded Q&A",
    version="1.0.0",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _library() -> PaperLibrary:
    library = _state.get("library")
    if library is None:
        raise HTTPException(status_code=503, detail="Service is not initialized.")
    return library


def _service() -> ChatService:
    service = _state.get("service")
    if service is None:
        raise HTTPException(status_code=503, detail="Service is not initialized.")
    return service


def _get_item(item_id: int) -> LibraryItem:
    item = _library().get_item(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Library item {item_id} not found.")
    return item


def _http_error(exc: Exception) -> HTTPException:
    """Maps pipeline errors onto HTTP status codes."""
    if isinstance(exc, ContentUnavailableError):
        status = 422
    elif isinstance(exc, (ConfigurationMissingError, ValueError)):
        status = 400
    elif isinstance(exc, UpstreamRequestError):
        status = 502
    else:
        status = 500
    return HTTPException(status_code=status, detail=describe_error(exc))


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/papers", response_model=list[PaperResponse])
async def list_papers():
    library = _library()
    return [
        PaperResponse(
            id=paper.id,
            title=paper.title,
            has_pdf=any(child.is_pdf_attachment() for child in library.get_attachments(paper)),
        )
        for paper in library.list_papers()
    ]


@app.post("/papers", response_model=PaperResponse, status_code=201)
async def create_paper(request: PaperCreateRequest):
    item = _library().add_paper(request.title, request.abstract)
    return PaperResponse(id=item.id, title=item.title, has_pdf=False)


@app.post("/papers/{item_id}/summary", response_model=SummaryResponse)
async def summarize_paper(item_id: int):
    item = _get_item(item_id)
    try:
        result = await _service().summarize_paper(item)
    except Exception as exc:
        logger.error("api_summarize_failed", item_id=item_id, error=describe_error(exc))
        raise _http_error(exc) from exc
    return SummaryResponse(answer=result.answer, used_chunks=result.used_chunks, section_links=result.section_links)


@app.post("/papers/{item_id}/ask", response_model=AskResponse)
async def ask_question(item_id: int, request: AskRequest):
    item = _get_item(item_id)
    try:
        result = await _service().ask_paper_question(item, request.question)
    except Exception as exc:
        logger.error("api_ask_failed", item_id=item_id, error=describe_error(exc))
        raise _http_error(exc) from exc
    return AskResponse(answer=result.answer, used_chunks=result.used_chunks, retrieval_mode=result.retrieval_mode)


@app.get("/papers/{item_id}/conversation", response_model=list[MessageResponse])
async def get_conversation(item_id: int):
    item = _get_item(item_id)
    messages = await _service().get_conversation(item)
    return [
        MessageResponse(
            role=message.role,
            content=message.content,
            created_at=message.created_at,
            section_links=message.section_links,
        )
        for message in messages
    ]


@app.delete("/papers/{item_id}/conversation", status_code=204)
async def clear_conversation(item_id: int):
    item = _get_item(item_id)
    await _service().clear_chat(item)


@app.get("/metrics")
async def metrics_endpoint():
    """Return aggregated LLM request metrics."""
    return metrics_collector.get_summary()
