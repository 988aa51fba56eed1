"""
Paper summarization.

With a PDF attachment the summary is drafted section by section from the
bookmark outline: every outline entry becomes a plan section whose page-range
text is its only evidence. Without usable bookmarks the whole paper is
summarized in a single LLM call over the leading chunks.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable

from .config import MAX_CONTEXT_CHARS
from .conversation import ConversationService, build_context_block
from .llm_client import LLMClient
from .models import ChatMessage, ChatSectionLink, PaperIndex, SummaryResult, TextChunk
from .observability import get_logger
from .paper_index import PaperIndexManager, ResolvedPaper
from .prompts import PromptConfigLoader, render_prompt_template
from .retrieval import select_summary_chunks
from .section_context import PdfSectionContext, SectionContextExtractor

logger = get_logger(__name__)

SUMMARY_REQUEST_TEXT = "Summarize this paper."
MISSING_DRAFT_TEXT = "Insufficient evidence."
_UNCERTAIN_RE = re.compile(r"insufficient evidence|insufficient information|unclear", flags=re.IGNORECASE)

ProgressCallback = Callable[[int, str], None]


@dataclass
class SummaryPlanSection:
    id: str
    title: str
    objective: str
    retrieval_queries: list[str] = field(default_factory=list)
    heading_level: int = 2


@dataclass
class SummaryPlan:
    sections: list[SummaryPlanSection]
    reasoning: str = ""


@dataclass
class SectionDraft:
    section: SummaryPlanSection
    evidence: list[TextChunk]
    draft: str
    retrieval_mode: str = "keyword"


class ProgressReporter:
    """Forwards progress as a non-decreasing percentage in [0, 100]."""

    def __init__(self, callback: ProgressCallback | None = None):
        self._callback = callback
        self.percent = 0

    def report(self, percent: float, stage: str):
        value = max(0, min(100, int(round(percent))))
        self.percent = max(self.percent, value)
        if self._callback is not None:
            self._callback(self.percent, stage)


# ---------------------------------------------------------------------------
# Plan and composition
# ---------------------------------------------------------------------------

def _page_range_text(context: PdfSectionContext) -> str | None:
    start = context.start_page_number
    if start is None:
        return None
    end = context.end_page_number
    if end is not None and end >= start:
        return f"p.{start}-{end}"
    return f"p.{start}"


def prepare_bookmark_plan(contexts: list[PdfSectionContext]) -> tuple[SummaryPlan, dict[str, PdfSectionContext]]:
    sections: list[SummaryPlanSection] = []
    context_by_id: dict[str, PdfSectionContext] = {}
    selected = [entry for entry in contexts if str(entry.title or "").strip()]

    for position, entry in enumerate(selected, start=1):
        section_id = f"toc-{entry.path or position}"
        objective = f"Summarize the key claims, methods, results and limitations of {entry.title}"
        range_text = _page_range_text(entry)
        if range_text:
            objective += f" (range {range_text})"
        sections.append(SummaryPlanSection(
            id=section_id,
            title=entry.title,
            objective=objective,
            retrieval_queries=[entry.title],
            heading_level=entry.depth + 1,
        ))
        context_by_id[section_id] = entry

    return SummaryPlan(sections=sections, reasoning="pdf-bookmark-context"), context_by_id


def build_context_chunk(context: PdfSectionContext, max_chars: int = MAX_CONTEXT_CHARS) -> TextChunk:
    raw = str(context.context_text or "").strip()
    text = f"{raw[:max_chars].strip()}..." if len(raw) > max_chars else raw
    return TextChunk(id=f"toc:{context.path or context.title}", text=text, start=0, end=len(text))


def compose_sectioned_summary(title: str, plan: SummaryPlan, drafts: list[SectionDraft]) -> str:
    draft_by_id = {draft.section.id: draft for draft in drafts}

    blocks = []
    uncertain = []
    for section in plan.sections:
        match = draft_by_id.get(section.id)
        text = match.draft.strip() if match else ""
        blocks.append(f"### {section.title}\n{text or MISSING_DRAFT_TEXT}")
        if text and _UNCERTAIN_RE.search(text):
            uncertain.append(f"- {section.title}")

    return "\n".join([
        f"TL;DR: Detailed section-by-section summary of {title}.",
        "",
        "## Section summaries",
        "\n\n".join(blocks) or "No bookmark sections found.",
        "",
        "## Items needing verification",
        "\n".join(uncertain) if uncertain else "- None",
    ])


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------

class SummarizationPlanner:
    def __init__(
        self,
        *,
        index_manager: PaperIndexManager,
        extractor: SectionContextExtractor,
        conversations: ConversationService,
        client: LLMClient,
        prompts: PromptConfigLoader,
    ):
        self.index_manager = index_manager
        self.extractor = extractor
        self.conversations = conversations
        self.client = client
        self.prompts = prompts

    async def summarize(self, resolved: ResolvedPaper, on_progress: ProgressCallback | None = None) -> SummaryResult:
        """Builds the summary and appends the request/answer pair to the paper's conversation."""
        progress = ProgressReporter(on_progress)
        progress.report(3, "loading paper")
        progress.report(8, "preparing text index")
        index = await self.index_manager.ensure_index(resolved)

        result: SummaryResult | None = None
        if resolved.attachment_item is not None:
            try:
                result = await self._summarize_with_bookmarks(resolved, index, progress)
            except Exception as exc:
                logger.warning("bookmark_summary_failed_fallback", paper_id=resolved.paper_id, error=str(exc))

        if result is None or not result.answer.strip():
            progress.report(45, "running fallback summary")
            result = await self._summarize_single_pass(index, progress)
        progress.report(100, "summary complete")

        await self.conversations.append_conversation(resolved.paper_id, [
            ChatMessage(role="user", content=SUMMARY_REQUEST_TEXT),
            ChatMessage(role="assistant", content=result.answer, section_links=result.section_links or None),
        ])
        logger.info(
            "paper_summarized",
            paper_id=resolved.paper_id,
            used_chunks=result.used_chunks,
            sections=len(result.section_links),
        )
        return result

    async def _summarize_with_bookmarks(
        self, resolved: ResolvedPaper, index: PaperIndex, progress: ProgressReporter
    ) -> SummaryResult:
        attachment = resolved.attachment_item
        if attachment is None:
            raise ValueError("A PDF attachment is required for a bookmark summary.")

        progress.report(12, "extracting PDF outline context")
        contexts = await self.extractor.extract_from_attachment(attachment)
        plan, context_by_id = prepare_bookmark_plan(contexts)
        if not plan.sections:
            raise ValueError("No bookmark sections available for summary.")

        drafts: list[SectionDraft] = []
        total_steps = max(1, len(plan.sections) + 1)
        step = 0
        for section in plan.sections:
            step += 1
            progress.report(24 + 72 * step / total_steps, f"Section summary: {section.title}")

            context = context_by_id.get(section.id)
            if context is None or not context.context_text.strip():
                continue
            chunk = build_context_chunk(context)
            try:
                text = await self._draft_section(index, section, [chunk])
            except Exception as exc:
                logger.warning("section_draft_failed", section_id=section.id, title=section.title, error=str(exc))
                continue
            drafts.append(SectionDraft(section=section, evidence=[chunk], draft=text))

        step += 1
        progress.report(24 + 72 * step / total_steps, "composing final summary")

        answer = compose_sectioned_summary(index.title, plan, drafts)
        evidence_ids = {chunk.id for draft in drafts for chunk in draft.evidence}
        links = [
            ChatSectionLink(
                title=section.title,
                path=context.path,
                page_number=context.start_page_number if context.start_page_number is not None else context.page_number,
                attachment_item_id=attachment.id or None,
            )
            for section in plan.sections
            if (context := context_by_id.get(section.id)) is not None
        ]
        logger.info(
            "bookmark_summary_composed",
            paper_id=resolved.paper_id,
            sections=len(plan.sections),
            drafted=len(drafts),
        )
        return SummaryResult(answer=answer.strip(), used_chunks=len(evidence_ids), section_links=links)

    async def _draft_section(self, index: PaperIndex, section: SummaryPlanSection, evidence: list[TextChunk]) -> str:
        prompts = self.prompts.get()
        values = {
            "title": index.title,
            "section_title": section.title,
            "section_objective": section.objective,
            "context": build_context_block(evidence, include_labels=False),
        }
        draft = await self.client.request_chat([
            {"role": "system", "content": render_prompt_template(prompts.summary_section_system, values)},
            {"role": "user", "content": render_prompt_template(prompts.summary_section_user, values)},
        ])
        return draft.strip()

    async def _summarize_single_pass(self, index: PaperIndex, progress: ProgressReporter) -> SummaryResult:
        progress.report(55, "building single-pass context")
        prompts = self.prompts.get()
        chunks = select_summary_chunks(index)
        values = {"title": index.title, "context": build_context_block(chunks, include_labels=False)}

        progress.report(75, "generating single-pass summary")
        answer = await self.client.request_chat([
            {"role": "system", "content": render_prompt_template(prompts.summary_single_pass_system, values)},
            {"role": "user", "content": render_prompt_template(prompts.summary_single_pass_user, values)},
        ])
        return SummaryResult(answer=answer.strip(), used_chunks=len(chunks))
