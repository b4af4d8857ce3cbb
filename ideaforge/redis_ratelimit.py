import os
import time
from typing import Optional, Tuple

import redis

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
WINDOW_SECONDS = int(os.getenv("RATE_WINDOW_SECONDS", "3600"))
MAX_REQUESTS = int(os.getenv("RATE_MAX_REQUESTS", "20"))


class RedisRateLimiter:
    """
    Fixed-window Redis rate limiter with the same contract as ideaforge.ratelimit,
    so several app workers share one budget per client.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        window_seconds: Optional[int] = None,
        max_requests: Optional[int] = None,
        client: Optional["redis.Redis"] = None,
    ) -> None:
        self.redis_url = (redis_url or REDIS_URL).strip() or REDIS_URL
        self.window_seconds = int(window_seconds or WINDOW_SECONDS)
        self.max_requests = int(max_requests or MAX_REQUESTS)
        # Lazy connection: no network traffic until the first command
        self._client = client or redis.from_url(self.redis_url, decode_responses=True)

    def _bucket_key(self, prefix: str, key: str, now: int) -> str:
        bucket = (prefix or "default").strip() or "default"
        client_key = (key or "anon").strip() or "anon"
        window_start = now - (now % self.window_seconds)
        return f"rl:{bucket}:{client_key}:{window_start}"

    def check_and_increment(self, prefix: str, key: str, now: Optional[int] = None) -> Tuple[bool, int, int]:
        current_ts = now or int(time.time())
        bucket_key = self._bucket_key(prefix, key, current_ts)
        pipe = self._client.pipeline()
        pipe.incr(bucket_key, 1)
        pipe.expire(bucket_key, self.window_seconds)
        count, _ = pipe.execute()
        used = int(count)
        remaining = max(0, self.max_requests - used)
        reset_ts = current_ts - (current_ts % self.window_seconds) + self.window_seconds
        return (used <= self.max_requests, remaining, reset_ts)
