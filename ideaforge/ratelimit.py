from __future__ import annotations
import os
import threading
import time
from typing import Dict, Tuple

WINDOW_SECONDS: int = int(os.getenv("RATE_WINDOW_SECONDS", "3600"))
MAX_REQUESTS: int = int(os.getenv("RATE_MAX_REQUESTS", "20"))

_store: Dict[Tuple[str, str], Dict[str, int]] = {}
_lock = threading.Lock()


def _now() -> int:
    return int(time.time())


def check_and_increment(bucket: str, key: str) -> Tuple[bool, int, int]:
    """
    Fixed-window limiter shared by the AI endpoints.
    Returns (allowed, remaining, reset_ts).
    """
    k = (bucket or "default", key or "anon")
    now = _now()
    with _lock:
        entry = _store.get(k)
        if entry is None or now >= entry["reset_ts"]:
            entry = {"count": 0, "reset_ts": now + WINDOW_SECONDS}
            _store[k] = entry
        if entry["count"] < MAX_REQUESTS:
            entry["count"] += 1
            return True, max(0, MAX_REQUESTS - entry["count"]), entry["reset_ts"]
        return False, 0, entry["reset_ts"]


def _reset() -> None:
    """Used by tests to clear state."""
    with _lock:
        _store.clear()
