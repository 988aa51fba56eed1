"""
Client for OpenAI-compatible chat-completion and embedding endpoints.
Works against hosted APIs and local servers (e.g. Ollama) alike.
"""
from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from .config import LLM_TEMPERATURE, LLM_TIMEOUT_S, get_embedding_settings, get_llm_settings, is_local_mode
from .errors import ConfigurationMissingError, UpstreamRequestError
from .metrics import MetricsCollector, metrics_collector
from .observability import get_logger

logger = get_logger(__name__)

_CHAT_SUFFIX_RE = re.compile(r"/chat/completions/?$", flags=re.IGNORECASE)
_EMBEDDINGS_SUFFIX_RE = re.compile(r"/embeddings/?$", flags=re.IGNORECASE)
_V1_SUFFIX_RE = re.compile(r"/v1/?$", flags=re.IGNORECASE)
_BARE_HOST_RE = re.compile(r"^https?://[^/]+$", flags=re.IGNORECASE)


@dataclass(frozen=True)
class EndpointConfig:
    endpoint: str
    api_key: str
    model: str
    local_mode: bool = False


# ---------------------------------------------------------------------------
# Endpoint normalization
# ---------------------------------------------------------------------------

def _strip_endpoint(endpoint: str) -> str:
    trimmed = str(endpoint or "").strip()
    return trimmed[:-1] if trimmed.endswith("/") else trimmed


def normalize_chat_endpoint(endpoint: str) -> str:
    """Maps a base URL or embeddings URL onto the chat-completions URL."""
    trimmed = _strip_endpoint(endpoint)
    if not trimmed:
        return ""
    if _CHAT_SUFFIX_RE.search(trimmed):
        return trimmed
    if _EMBEDDINGS_SUFFIX_RE.search(trimmed):
        return _EMBEDDINGS_SUFFIX_RE.sub("/chat/completions", trimmed)
    if _V1_SUFFIX_RE.search(trimmed):
        return f"{trimmed}/chat/completions"
    if _BARE_HOST_RE.match(trimmed):
        return f"{trimmed}/v1/chat/completions"
    return trimmed


def normalize_embedding_endpoint(endpoint: str) -> str:
    trimmed = _strip_endpoint(endpoint)
    if not trimmed:
        return ""
    if _EMBEDDINGS_SUFFIX_RE.search(trimmed):
        return trimmed
    if _CHAT_SUFFIX_RE.search(trimmed):
        return _CHAT_SUFFIX_RE.sub("/embeddings", trimmed)
    if _V1_SUFFIX_RE.search(trimmed):
        return f"{trimmed}/embeddings"
    if _BARE_HOST_RE.match(trimmed):
        return f"{trimmed}/v1/embeddings"
    return trimmed


def _resolve_config(settings: dict[str, str], normalize: Callable[[str], str]) -> EndpointConfig:
    local_endpoint = normalize(settings["local_base_url"])
    if is_local_mode() and local_endpoint:
        return EndpointConfig(
            endpoint=local_endpoint,
            api_key="",
            model=settings["local_model"] or settings["model"],
            local_mode=True,
        )
    return EndpointConfig(
        endpoint=normalize(settings["base_url"]),
        api_key=settings["api_key"],
        model=settings["model"],
    )


def get_llm_config() -> EndpointConfig:
    return _resolve_config(get_llm_settings(), normalize_chat_endpoint)


def get_embedding_config() -> EndpointConfig:
    return _resolve_config(get_embedding_settings(), normalize_embedding_endpoint)


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def extract_chat_content(payload: Any) -> str:
    try:
        content = payload["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return ""

    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
            else:
                parts.append("")
        return "\n".join(parts).strip()
    return ""


def extract_embedding_vectors(payload: Any) -> list[list[float]]:
    rows = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(rows, list):
        return []
    ordered = sorted(
        (row for row in rows if isinstance(row, dict) and isinstance(row.get("embedding"), list)),
        key=lambda row: row["index"] if isinstance(row.get("index"), (int, float)) else 0,
    )
    return [[float(value or 0) for value in row["embedding"]] for row in ordered]


def _usage_tokens(payload: dict) -> tuple[int, int]:
    usage = payload.get("usage") if isinstance(payload, dict) else None
    if not isinstance(usage, dict):
        return 0, 0
    return int(usage.get("prompt_tokens") or 0), int(usage.get("completion_tokens") or 0)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class LLMClient:
    """Async chat and embedding requests with bearer auth and metrics."""

    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_s: float = LLM_TIMEOUT_S,
        metrics: MetricsCollector | None = None,
        llm_config: Callable[[], EndpointConfig] = get_llm_config,
        embedding_config: Callable[[], EndpointConfig] = get_embedding_config,
    ):
        self._transport = transport
        self._timeout_s = float(timeout_s)
        self._metrics = metrics if metrics is not None else metrics_collector
        self._llm_config = llm_config
        self._embedding_config = embedding_config
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(transport=self._transport, timeout=self._timeout_s)
        return self._client

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _headers(api_key: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def _post_json(self, endpoint: str, headers: dict[str, str], payload: dict) -> dict:
        try:
            response = await self._get_client().post(endpoint, headers=headers, json=payload)
        except httpx.HTTPError as exc:
            raise UpstreamRequestError(f"Request to {endpoint} failed: {exc}") from exc

        text = response.text
        try:
            parsed = response.json() if text else {}
        except ValueError:
            parsed = {"raw": text}

        if response.is_error:
            error = parsed.get("error") if isinstance(parsed, dict) else None
            message = error.get("message") if isinstance(error, dict) else None
            raise UpstreamRequestError(
                f"HTTP {response.status_code}: {message if isinstance(message, str) else text}",
                status_code=response.status_code,
                response_text=text,
            )
        if not isinstance(parsed, dict):
            raise UpstreamRequestError("Unexpected response payload.", status_code=response.status_code, response_text=text)
        return parsed

    async def request_chat(self, messages: list[dict[str, str]]) -> str:
        config = self._llm_config()
        if not config.endpoint:
            raise ConfigurationMissingError("Set the LLM endpoint (LLM_BASE_URL) first.")
        if not config.model:
            raise ConfigurationMissingError("Set the LLM model (LLM_MODEL) first.")

        payload = {"model": config.model, "messages": messages, "temperature": LLM_TEMPERATURE}
        start = time.perf_counter()
        try:
            response = await self._post_json(config.endpoint, self._headers(config.api_key), payload)
            content = extract_chat_content(response)
            if not content:
                raise UpstreamRequestError("LLM returned an empty response.", response_text="")
        except UpstreamRequestError as exc:
            self._metrics.record_request("chat", (time.perf_counter() - start) * 1000.0, False, model=config.model)
            logger.error("llm_request_failed", endpoint=config.endpoint, model=config.model, error=exc.args[0])
            raise UpstreamRequestError(
                f"LLM request failed. {exc.args[0]}",
                status_code=exc.status_code,
                response_text=exc.response_text,
            ) from exc

        input_tokens, output_tokens = _usage_tokens(response)
        self._metrics.record_request(
            "chat",
            (time.perf_counter() - start) * 1000.0,
            True,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=config.model,
        )
        return content

    async def request_embeddings(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        config = self._embedding_config()
        if not config.endpoint or not config.model:
            raise ConfigurationMissingError(
                "Set the embedding endpoint/model (EMBEDDING_BASE_URL, EMBEDDING_MODEL) before hybrid search."
            )

        payload = {"model": config.model, "input": list(texts)}
        start = time.perf_counter()
        try:
            response = await self._post_json(config.endpoint, self._headers(config.api_key), payload)
            vectors = extract_embedding_vectors(response)
            if len(vectors) != len(texts):
                raise UpstreamRequestError(
                    f"Embedding response size mismatch: requested {len(texts)}, got {len(vectors)}."
                )
        except UpstreamRequestError:
            self._metrics.record_request("embedding", (time.perf_counter() - start) * 1000.0, False, model=config.model)
            raise

        input_tokens, _ = _usage_tokens(response)
        self._metrics.record_request(
            "embedding",
            (time.perf_counter() - start) * 1000.0,
            True,
            input_tokens=input_tokens,
            model=config.model,
        )
        return vectors

    async def request_embedding(self, text: str) -> list[float]:
        vectors = await self.request_embeddings([text])
        return vectors[0] if vectors else []

    def embedding_identity(self) -> tuple[str, str]:
        """(endpoint, model) pair that embedding caches are keyed by."""
        config = self._embedding_config()
        return config.endpoint, config.model
