# /paperchat/config.py
"""
Centralized configuration for the paper chat pipeline.
Includes endpoint defaults, retrieval tuning, paths and feature toggles.
"""
import os
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name) or default).strip()


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Endpoint Defaults ---
DEFAULT_CHAT_ENDPOINT = "https://api.openai.com/v1/chat/completions"
DEFAULT_CHAT_MODEL = "gpt-4o-mini"
DEFAULT_EMBEDDING_ENDPOINT = "https://api.openai.com/v1/embeddings"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_LOCAL_BASE_URL = "http://127.0.0.1:11434/v1"    # Ollama's OpenAI-compatible API
DEFAULT_LOCAL_CHAT_MODEL = "qwen2.5:7b-instruct"
DEFAULT_LOCAL_EMBEDDING_MODEL = "nomic-embed-text"

LLM_TEMPERATURE = _env_float("LLM_TEMPERATURE", 0.2, minimum=0.0)
LLM_TIMEOUT_S = _env_float("LLM_TIMEOUT_S", 120.0, minimum=1.0)

# --- Chunking Configuration ---
CHUNK_SIZE = _env_int("CHUNK_SIZE", 1600, minimum=128)
CHUNK_OVERLAP = _env_int("CHUNK_OVERLAP", 260, minimum=0)
if CHUNK_OVERLAP >= CHUNK_SIZE:
    CHUNK_OVERLAP = max(0, CHUNK_SIZE // 4)

# --- Retrieval Tuning ---
MAX_CONTEXT_CHARS = _env_int("MAX_CONTEXT_CHARS", 12000, minimum=500)
RETRIEVAL_TOP_K = _env_int("RETRIEVAL_TOP_K", 6, minimum=1)
EMBEDDING_BATCH_SIZE = _env_int("EMBEDDING_BATCH_SIZE", 12, minimum=1)
DENSE_WEIGHT_SHORT_QUERY = 0.62      # fewer than 4 distinct query tokens
DENSE_WEIGHT_LONG_QUERY = 0.55
SHORT_QUERY_TOKEN_COUNT = 4

# --- Conversation & Memory Tuning ---
MAX_HISTORY_MESSAGES = _env_int("MAX_HISTORY_MESSAGES", 12, minimum=0)
MAX_STORED_MESSAGES = _env_int("MAX_STORED_MESSAGES", 60, minimum=2)
MEMORY_MIN_MESSAGES = _env_int("MEMORY_MIN_MESSAGES", 4, minimum=2)
# Counted in user/assistant exchanges (message pairs) since the last refresh.
MEMORY_REFRESH_MIN_NEW_TURNS = _env_int("MEMORY_REFRESH_MIN_NEW_TURNS", 6, minimum=1)
MEMORY_SOURCE_WINDOW = _env_int("MEMORY_SOURCE_WINDOW", 18, minimum=2)
EVIDENCE_SNIPPET_COUNT = 3
EVIDENCE_SNIPPET_CHARS = 220

# --- Bookmark Context Tuning ---
OUTLINE_MAX_PAGES_PER_SECTION = _env_int("OUTLINE_MAX_PAGES_PER_SECTION", 8, minimum=1)
OUTLINE_MAX_CHARS_PER_SECTION = _env_int("OUTLINE_MAX_CHARS_PER_SECTION", 12000, minimum=200)
OUTLINE_PREVIEW_CHARS = _env_int("OUTLINE_PREVIEW_CHARS", 280, minimum=20)

# --- Prompt Templates ---
PROMPT_CONFIG_CACHE_TTL_S = _env_float("PROMPT_CONFIG_CACHE_TTL_S", 2.0, minimum=0.0)

# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/paperchat/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
_DATA_DIR = Path(os.getenv("PAPERCHAT_DATA_DIR", str(_BASE_DIR / "data")))

STORE_DIR = _DATA_DIR / "paper-chat"
STORE_FILE_NAME = "paper-chat-store-v1.json"
STORE_PATH = Path(os.getenv("STORE_PATH", str(STORE_DIR / STORE_FILE_NAME)))
PROMPTS_PATH = Path(os.getenv("PROMPTS_PATH", str(STORE_DIR / "prompts.json")))
LIBRARY_DIR = Path(os.getenv("LIBRARY_DIR", str(_DATA_DIR / "library")))
LIBRARY_DB_PATH = Path(os.getenv("LIBRARY_DB_PATH", str(LIBRARY_DIR / "library.sqlite")))
# Same file name Zotero uses, so a Zotero storage folder can be pointed at directly.
FULLTEXT_CACHE_NAME = _env_str("FULLTEXT_CACHE_NAME", ".zotero-ft-cache")
METRICS_DIR = Path(os.getenv("METRICS_DIR", str(_DATA_DIR / "logs")))

# --- Create necessary directories ---
STORE_DIR.mkdir(parents=True, exist_ok=True)
LIBRARY_DIR.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(os.getenv("LOG_PATH", str(_DATA_DIR / "logs" / "paperchat.log")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
configure_logging(LOG_PATH)


# ==============================================================================
# RUNTIME TOGGLES
# ==============================================================================
# Read on every call so a changed .env or exported variable applies without restart.
def is_local_mode() -> bool:
    return _env_bool("PAPERCHAT_LOCAL_MODE", False)


def is_hybrid_search_enabled() -> bool:
    return _env_bool("PAPERCHAT_HYBRID_SEARCH", False)


def is_evidence_required() -> bool:
    return _env_bool("PAPERCHAT_REQUIRE_EVIDENCE", True)


def get_llm_settings() -> dict[str, str]:
    """Raw chat settings; endpoint normalization happens in llm_client."""
    return {
        "api_key": _env_str("LLM_API_KEY"),
        "base_url": _env_str("LLM_BASE_URL", DEFAULT_CHAT_ENDPOINT),
        "model": _env_str("LLM_MODEL", DEFAULT_CHAT_MODEL),
        "local_base_url": _env_str("LOCAL_BASE_URL", DEFAULT_LOCAL_BASE_URL),
        "local_model": _env_str("LOCAL_CHAT_MODEL", DEFAULT_LOCAL_CHAT_MODEL),
    }


def get_embedding_settings() -> dict[str, str]:
    return {
        "api_key": _env_str("LLM_API_KEY"),
        "base_url": _env_str("EMBEDDING_BASE_URL", DEFAULT_EMBEDDING_ENDPOINT),
        "model": _env_str("EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL),
        "local_base_url": _env_str("LOCAL_BASE_URL", DEFAULT_LOCAL_BASE_URL),
        "local_model": _env_str("LOCAL_EMBEDDING_MODEL", DEFAULT_LOCAL_EMBEDDING_MODEL),
    }
