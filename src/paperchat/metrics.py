"""
Request metrics for the chat and embedding backends.

Every LLM call is recorded with its kind ("chat" or "embedding"), model,
latency, token usage and an estimated cost, appended to
<METRICS_DIR>/metrics.jsonl and aggregated per kind for the CLI table and
GET /metrics.
"""
from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path

import psutil

from .config import METRICS_DIR


# ---------------------------------------------------------------------------
# Price per million tokens (USD). Unknown and local models count as free.
# ---------------------------------------------------------------------------
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
    "gpt-4.1-mini": (0.40, 1.60),
    "text-embedding-3-small": (0.02, 0.0),
    "text-embedding-3-large": (0.13, 0.0),
}


def estimate_cost_usd(model: str, input_tokens: int, output_tokens: int) -> float:
    input_price, output_price = MODEL_PRICING.get(model, (0.0, 0.0))
    return (input_tokens * input_price + output_tokens * output_price) / 1_000_000


@dataclass
class _KindStats:
    requests: int = 0
    errors: int = 0
    latency_total_ms: float = 0.0
    latency_min_ms: float = float("inf")
    latency_max_ms: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    def add(self, latency_ms: float, success: bool, input_tokens: int, output_tokens: int, cost_usd: float):
        self.requests += 1
        if not success:
            self.errors += 1
        self.latency_total_ms += latency_ms
        self.latency_min_ms = min(self.latency_min_ms, latency_ms)
        self.latency_max_ms = max(self.latency_max_ms, latency_ms)
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.cost_usd += cost_usd


class MetricsCollector:
    """Thread-safe per-kind request metrics with a JSONL request log."""

    def __init__(self, log_dir: str | Path = METRICS_DIR):
        self._lock = threading.Lock()
        self._started_at = time.time()
        self._stats: dict[str, _KindStats] = {}

        self._log_path = Path(log_dir) / "metrics.jsonl"
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._process = psutil.Process(os.getpid())

    def record_request(
        self,
        kind: str,
        latency_ms: float,
        success: bool,
        input_tokens: int = 0,
        output_tokens: int = 0,
        model: str = "",
    ) -> None:
        cost_usd = estimate_cost_usd(model, input_tokens, output_tokens)
        with self._lock:
            self._stats.setdefault(kind, _KindStats()).add(latency_ms, success, input_tokens, output_tokens, cost_usd)

        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "kind": kind,
            "model": model,
            "latency_ms": round(latency_ms, 2),
            "success": success,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "cost_usd": round(cost_usd, 8),
        }
        # The request log is best effort; counters above are authoritative.
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError:
            pass

    def get_summary(self) -> dict:
        with self._lock:
            totals = _KindStats()
            by_kind: dict[str, int] = {}
            for kind, stats in self._stats.items():
                by_kind[kind] = stats.requests
                totals.requests += stats.requests
                totals.errors += stats.errors
                totals.latency_total_ms += stats.latency_total_ms
                totals.latency_min_ms = min(totals.latency_min_ms, stats.latency_min_ms)
                totals.latency_max_ms = max(totals.latency_max_ms, stats.latency_max_ms)
                totals.input_tokens += stats.input_tokens
                totals.output_tokens += stats.output_tokens
                totals.cost_usd += stats.cost_usd

        count = totals.requests
        return {
            "latency": {
                "avg_ms": round(totals.latency_total_ms / count, 2) if count else 0.0,
                "min_ms": round(totals.latency_min_ms, 2) if count else 0.0,
                "max_ms": round(totals.latency_max_ms, 2) if count else 0.0,
            },
            "requests": {
                "total": count,
                "by_kind": by_kind,
                "uptime_seconds": round(time.time() - self._started_at, 1),
            },
            "memory": {
                "rss_mb": round(self._process.memory_info().rss / (1024 * 1024), 1),
            },
            "cost": {
                "total_usd": round(totals.cost_usd, 6),
                "total_input_tokens": totals.input_tokens,
                "total_output_tokens": totals.output_tokens,
            },
            "errors": {
                "count": totals.errors,
                "rate_percent": round(totals.errors / count * 100, 2) if count else 0.0,
            },
        }


# Shared by the LLM client, the CLI metrics table and GET /metrics.
metrics_collector = MetricsCollector()
