"""
Prompt templates for summarization, Q&A and memory compression.

Defaults are built in; a JSON file at ``PROMPTS_PATH`` may override any key with
a string or a list of lines. The file is re-read at most once per TTL window.
"""
from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from .config import PROMPT_CONFIG_CACHE_TTL_S, PROMPTS_PATH
from .observability import get_logger

logger = get_logger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([a-zA-Z0-9_]+)\s*\}\}")


@dataclass(frozen=True)
class PromptConfig:
    summary_single_pass_system: str
    summary_single_pass_user: str
    summary_section_system: str
    summary_section_user: str
    qa_system: str
    qa_user: str
    memory_system: str
    memory_user: str


DEFAULT_PROMPT_CONFIG = PromptConfig(
    summary_single_pass_system=" ".join([
        "You are a research paper summarization assistant.",
        "Keep proper nouns and technical terms in their original form.",
        "Do not state facts that are not in the given context.",
    ]),
    summary_single_pass_user="\n".join([
        "Paper title: {{title}}",
        "",
        "Summarize the following paper.",
        "Where possible keep the original subsection headings (e.g. 2.1, 3.2.1) and write per section.",
        "For each section cover the key claims, methods, results and limitations in detail.",
        "If something is not in the context, do not guess; write 'Insufficient evidence'.",
        "",
        "Paper context:",
        "{{context}}",
    ]),
    summary_section_system=" ".join([
        "You write one section of a paper summary.",
        "Use only facts from the given context.",
    ]),
    summary_section_user="\n".join([
        "Paper title: {{title}}",
        "Section title: {{section_title}}",
        "Section objective: {{section_objective}}",
        "",
        "Requirements:",
        "- Do not repeat the section title, write the body only",
        "- Write 8 to 12 detailed lines",
        "- Order: key claims, method, experimental evidence, quantitative results, limitations",
        "- Write 'Insufficient evidence' wherever support is missing",
        "- Do not guess beyond the context",
        "",
        "Context:",
        "{{context}}",
    ]),
    qa_system=" ".join([
        "You are a Q&A assistant for a research paper.",
        "Use only information from the paper context and the conversation so far.",
        "Do not guess; if information is missing, say what is needed.",
        "End every key claim sentence with a [C#] citation.",
    ]),
    qa_user="\n".join([
        "Paper title: {{title}}",
        "",
        "{{memory_block}}",
        "",
        "Context:",
        "{{context}}",
        "",
        "Question: {{question}}",
    ]),
    memory_system=" ".join([
        "You compress conversation history into long-term memory.",
        "Summarize briefly and factually, separating open questions from user intent.",
        "Do not speculate.",
    ]),
    memory_user="\n".join([
        "Paper title: {{title}}",
        "",
        "Summarize the conversation below in at most 8 lines as memory for later turns.",
        "- The user's main interests",
        "- Facts already established",
        "- Questions not yet answered",
        "- Preferred answer style (language, format)",
        "",
        "{{transcript}}",
    ]),
)

# JSON key -> dataclass field
_JSON_KEYS = {
    "summarySinglePassSystem": "summary_single_pass_system",
    "summarySinglePassUser": "summary_single_pass_user",
    "summarySectionSystem": "summary_section_system",
    "summarySectionUser": "summary_section_user",
    "qaSystem": "qa_system",
    "qaUser": "qa_user",
    "memorySystem": "memory_system",
    "memoryUser": "memory_user",
}


def to_prompt_text(value: Any, fallback: str) -> str:
    """Accepts a string or a list of lines; blank values use ``fallback``."""
    if isinstance(value, str):
        return value.strip() or fallback
    if isinstance(value, list):
        joined = "\n".join("" if line is None else str(line) for line in value).strip()
        return joined or fallback
    return fallback


def render_prompt_template(template: str, values: Mapping[str, Any]) -> str:
    """Substitutes ``{{ name }}`` placeholders verbatim; unknown names render as ""."""

    def _sub(match: re.Match) -> str:
        value = values.get(match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER_RE.sub(_sub, template)


def build_prompt_config(raw: Mapping[str, Any] | None) -> PromptConfig:
    raw = raw or {}
    resolved = {}
    for json_key, field_name in _JSON_KEYS.items():
        default = getattr(DEFAULT_PROMPT_CONFIG, field_name)
        resolved[field_name] = to_prompt_text(raw.get(json_key, raw.get(field_name)), default)
    return PromptConfig(**resolved)


class PromptConfigLoader:
    """TTL-cached loader; a failed load is logged once and defaults are used."""

    def __init__(self, path: Path | None = None, ttl_s: float = PROMPT_CONFIG_CACHE_TTL_S, clock=time.monotonic):
        self.path = Path(path) if path else PROMPTS_PATH
        self.ttl_s = float(ttl_s)
        self._clock = clock
        self._cached: PromptConfig | None = None
        self._loaded_at = 0.0
        self._load_failed = False

    def get(self) -> PromptConfig:
        now = self._clock()
        if self._cached is not None and now - self._loaded_at < self.ttl_s:
            return self._cached

        if not self.path.exists():
            self._cached = DEFAULT_PROMPT_CONFIG
            self._loaded_at = now
            return self._cached

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("prompt config root must be an object")
            self._cached = build_prompt_config(raw)
            self._load_failed = False
        except (OSError, ValueError) as exc:
            if not self._load_failed:
                logger.warning("prompt_config_load_failed", path=str(self.path), error=str(exc))
            self._load_failed = True
            self._cached = DEFAULT_PROMPT_CONFIG
        self._loaded_at = now
        return self._cached

    def invalidate(self):
        self._cached = None

