"""Running total of ideas analyzed, shown on the landing page and /metrics/total.

Redis holds the shared total when REDIS_URL is set. The JSON file keeps the
last known value so a restart or a Redis outage does not reset the number.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional

import redis

log = logging.getLogger(__name__)

COUNTER_FILE = Path(os.getenv("COUNTER_FILE", "cache/counter.json"))
REDIS_KEY = os.getenv("REDIS_COUNTER_KEY", "ideaforge:metrics:analyses")
_REDIS_TIMEOUT = float(os.getenv("REDIS_COUNTER_TIMEOUT", "0.35") or 0.35)
_LOCK = threading.Lock()


def _connect() -> Optional["redis.Redis"]:
    url = os.getenv("REDIS_URL", "").strip()
    if not url or os.getenv("PYTEST_CURRENT_TEST"):
        return None
    try:
        return redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=_REDIS_TIMEOUT,
            socket_connect_timeout=_REDIS_TIMEOUT,
        )
    except (ValueError, redis.RedisError) as exc:
        log.warning("counter: failed to initialize Redis client: %s", exc)
        return None


_redis = _connect()


def _read_file() -> int:
    if not COUNTER_FILE.exists():
        return 0
    try:
        data = json.loads(COUNTER_FILE.read_text(encoding="utf-8") or "{}")
        return max(0, int(data.get("total", 0))) if isinstance(data, dict) else 0
    except (OSError, ValueError, TypeError):
        log.warning("counter: unreadable %s; treating total as 0", COUNTER_FILE)
        return 0


def _write_file(total: int) -> None:
    COUNTER_FILE.parent.mkdir(parents=True, exist_ok=True)
    tmp = COUNTER_FILE.with_suffix(".tmp")
    tmp.write_text(json.dumps({"total": total}), encoding="utf-8")
    tmp.replace(COUNTER_FILE)


def get_total() -> int:
    if _redis is not None:
        try:
            raw = _redis.get(REDIS_KEY)
            if raw is not None:
                return max(0, int(raw))
        except (redis.RedisError, ValueError) as exc:
            log.warning("counter: Redis get failed, reading file: %s", exc)
    with _LOCK:
        return _read_file()


def record_analysis(analysis: Dict[str, Any]) -> int:
    """Count one served analysis and return the new total.

    Fallback analyses stand in for an unreadable model reply and are not counted.
    """
    if not analysis or analysis.get("fallback"):
        return get_total()
    with _LOCK:
        total = None
        if _redis is not None:
            try:
                # A fresh Redis starts from the mirrored total, not from zero
                _redis.setnx(REDIS_KEY, _read_file())
                total = max(0, int(_redis.incr(REDIS_KEY)))
            except (redis.RedisError, ValueError) as exc:
                log.warning("counter: Redis increment failed, using file: %s", exc)
        if total is None:
            total = _read_file() + 1
        _write_file(total)
        return total
