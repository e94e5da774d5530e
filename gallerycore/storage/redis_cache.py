from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from redis import Redis

# Review flags outlive any single refresh-token lifetime
_REVIEW_FLAG_TTL_SECONDS = 30 * 24 * 3600


def ttl_until(expires_at: datetime, now: Optional[datetime] = None) -> int:
    """Seconds from ``now`` until ``expires_at``, clamped to at least 1.

    Redis rejects zero or negative TTLs; naive timestamps are treated as UTC.
    """
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max(1, int((expires_at - current).total_seconds()))


class RedisCache:
    """Thin Redis wrapper for cross-process flags and one-shot claims."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        self.client.ping()

    def claim_once(self, key: str, ttl_seconds: int) -> bool:
        """Return True for exactly one caller per key until it expires."""
        return bool(self.client.set(f"claim:{key}", "1", nx=True, ex=max(1, ttl_seconds)))

    def flag_user_for_review(self, user_id: str, reason: str) -> None:
        self.client.set(f"review:user:{user_id}", reason, ex=_REVIEW_FLAG_TTL_SECONDS)

    def get_review_flag(self, user_id: str) -> Optional[str]:
        return self.client.get(f"review:user:{user_id}")

    def close(self) -> None:
        self.client.close()


class MemoryCache:
    """In-process stand-in used when Redis is unavailable (tests, local dev).

    State is per process, so one-shot claims are only unique within it.
    """

    def __init__(self) -> None:
        self._claims: Dict[str, float] = {}
        self._flags: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def claim_once(self, key: str, ttl_seconds: int) -> bool:
        now = time.monotonic()
        with self._lock:
            expiry = self._claims.get(key)
            if expiry is not None and expiry > now:
                return False
            self._claims[key] = now + max(1, ttl_seconds)
            return True

    def flag_user_for_review(self, user_id: str, reason: str) -> None:
        with self._lock:
            self._flags[user_id] = (reason, time.monotonic() + _REVIEW_FLAG_TTL_SECONDS)

    def get_review_flag(self, user_id: str) -> Optional[str]:
        with self._lock:
            entry = self._flags.get(user_id)
            if not entry:
                return None
            reason, expiry = entry
            if expiry <= time.monotonic():
                self._flags.pop(user_id, None)
                return None
            return reason

    def close(self) -> None:
        return None
