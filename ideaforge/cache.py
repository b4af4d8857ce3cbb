from __future__ import annotations

import hashlib
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

import redis

log = logging.getLogger(__name__)

CACHE_DIR = Path(os.getenv("CACHE_DIR", "cache/results"))
CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", "0"))  # 0 = never expire
CACHE_ENABLED = os.getenv("CACHE_ENABLED", "1").lower() in {"1", "true", "yes", "on"}
SCHEMA_VERSION = "v1"

_REDIS_URL = os.getenv("REDIS_URL", "").strip()
_redis = None
if _REDIS_URL and not os.getenv("PYTEST_CURRENT_TEST"):
    try:
        _redis = redis.from_url(_REDIS_URL, decode_responses=True, socket_timeout=0.5)
    except (ValueError, redis.RedisError) as exc:
        log.warning("cache: failed to initialize Redis client: %s", exc)
        _redis = None


def _key(kind: str, text: str, model: Optional[str]) -> str:
    h = hashlib.sha256()
    h.update((kind or "").encode("utf-8"))
    h.update(("\n" + " ".join((text or "").lower().split())).encode("utf-8"))
    h.update(("\n" + (model or "")).encode("utf-8"))
    h.update(("\n" + SCHEMA_VERSION).encode("utf-8"))
    return h.hexdigest()


def get(kind: str, text: str, model: Optional[str]) -> Optional[Dict[str, Any]]:
    if not CACHE_ENABLED:
        return None
    k = _key(kind, text, model)
    if _redis is not None:
        try:
            raw = _redis.get(f"result:{k}")
            return json.loads(raw) if raw else None
        except redis.RedisError as exc:
            log.warning("cache: Redis get failed, falling back to file: %s", exc)
    path = CACHE_DIR / f"{k}.json"
    if not path.exists():
        return None
    if CACHE_TTL_SECONDS > 0 and time.time() - path.stat().st_mtime > CACHE_TTL_SECONDS:
        path.unlink(missing_ok=True)
        return None
    try:
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError):
        log.warning("cache: dropping unreadable entry %s", path.name)
        path.unlink(missing_ok=True)
        return None


def set(kind: str, text: str, model: Optional[str], result: Dict[str, Any]) -> None:
    # Fallback objects describe a parse failure, not the idea
    if not CACHE_ENABLED or result.get("fallback"):
        return
    k = _key(kind, text, model)
    raw = json.dumps(result, ensure_ascii=False, separators=(",", ":"))
    if _redis is not None:
        try:
            if CACHE_TTL_SECONDS > 0:
                _redis.setex(f"result:{k}", CACHE_TTL_SECONDS, raw)
            else:
                _redis.set(f"result:{k}", raw)
            return
        except redis.RedisError as exc:
            log.warning("cache: Redis set failed, falling back to file: %s", exc)
    CACHE_DIR.mkdir(parents=True, exist_ok=True)
    path = CACHE_DIR / f"{k}.json"
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(raw, encoding="utf-8")
    tmp.replace(path)
