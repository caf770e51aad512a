"""
Chat turn metrics for the exam tutor service.

Tracks: latency, outcome mix, optimized vs full-document requests, image savings,
memory usage. Logs one JSON line per turn to <METRICS_DIR>/metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import threading
import time
from collections import Counter
from pathlib import Path

import psutil

from .config import METRICS_DIR
from .observability import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """Thread-safe turn metrics tracker with JSONL file logging."""

    def __init__(self, log_dir: str | Path = METRICS_DIR):
        self._lock = threading.Lock()
        self._start_time: float = time.time()

        # Counters.
        self._total_turns: int = 0
        self._ai_calls: int = 0
        self._total_ai_latency_ms: float = 0.0
        self._min_latency_ms: float = float("inf")
        self._max_latency_ms: float = 0.0
        self._outcomes: Counter[str] = Counter()

        # Payload tracking.
        self._optimized_requests: int = 0
        self._fallback_requests: int = 0
        self._images_sent: int = 0
        self._images_available: int = 0

        # Logging.
        self._log_dir = Path(log_dir)
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._log_path = self._log_dir / "metrics.jsonl"

        # Process handle for memory tracking.
        self._process = psutil.Process(os.getpid())

    def record_turn(
        self,
        outcome: str,
        latency_ms: float = 0.0,
        *,
        ai_called: bool = False,
        optimized_mode: bool | None = None,
        images_sent: int = 0,
        images_available: int = 0,
    ) -> None:
        """Records one submitted message and appends it to the JSONL log."""
        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "outcome": outcome,
            "latency_ms": round(latency_ms, 2),
            "ai_called": ai_called,
            "optimized_mode": optimized_mode,
            "images_sent": images_sent,
            "images_available": images_available,
        }

        with self._lock:
            self._total_turns += 1
            self._outcomes[outcome] += 1
            if ai_called:
                self._ai_calls += 1
                self._total_ai_latency_ms += latency_ms
                self._min_latency_ms = min(self._min_latency_ms, latency_ms)
                self._max_latency_ms = max(self._max_latency_ms, latency_ms)
                if optimized_mode:
                    self._optimized_requests += 1
                else:
                    self._fallback_requests += 1
                self._images_sent += images_sent
                self._images_available += max(images_available, images_sent)

        # Append to JSONL file outside the lock.
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError as exc:
            logger.warning("metrics_write_failed", path=str(self._log_path), error=str(exc))

    def get_summary(self) -> dict:
        """Returns comprehensive metrics snapshot."""
        with self._lock:
            total = self._total_turns
            calls = self._ai_calls
            avg_lat = (self._total_ai_latency_ms / calls) if calls > 0 else 0.0
            min_lat = self._min_latency_ms if calls > 0 else 0.0
            max_lat = self._max_latency_ms if calls > 0 else 0.0
            outcomes = dict(self._outcomes)
            optimized = self._optimized_requests
            fallback = self._fallback_requests
            sent = self._images_sent
            available = self._images_available

        uptime_s = time.time() - self._start_time
        mem_info = self._process.memory_info()
        saved = max(0, available - sent)

        return {
            "latency": {
                "avg_ms": round(avg_lat, 2),
                "min_ms": round(min_lat, 2),
                "max_ms": round(max_lat, 2),
            },
            "turns": {
                "total": total,
                "ai_calls": calls,
                "outcomes": outcomes,
                "uptime_seconds": round(uptime_s, 1),
            },
            "payload": {
                "optimized_requests": optimized,
                "fallback_requests": fallback,
                "images_sent": sent,
                "images_saved": saved,
                "savings_percent": round((saved / available * 100) if available > 0 else 0.0, 2),
            },
            "memory": {
                "rss_mb": round(mem_info.rss / (1024 * 1024), 1),
                "vms_mb": round(mem_info.vms / (1024 * 1024), 1),
            },
        }


# Module-level singleton used by the API server.
metrics_collector = MetricsCollector()
