"""
Fixed-window rate limiting.

Counters live behind a small store interface so the in-process store can be
swapped for the shared MongoDB one without touching the endpoints.
"""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from fastapi import Depends, Request
from pymongo import ReturnDocument

from auth import get_current_user, user_id_of
from config import RATE_LIMIT_MAX, RATE_LIMIT_WINDOW_SECONDS
from errors import RateLimitError

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 5 * 60


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float


class CounterStore:
    """get/increment/expire over fixed windows. Times are epoch seconds."""

    def get(self, key: str) -> Optional[Tuple[int, float]]:
        raise NotImplementedError

    def increment(self, key: str, window_seconds: int, now: float) -> Tuple[int, float]:
        """Count one hit and return (count, reset_at) for the current window."""
        raise NotImplementedError

    def expire(self, now: float) -> int:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemoryCounterStore(CounterStore):
    """Process-local counters. Finished windows are swept every `sweep_interval` seconds."""

    def __init__(self, sweep_interval: int = SWEEP_INTERVAL_SECONDS):
        self._entries: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()
        self.sweep_interval = sweep_interval
        self._next_sweep = 0.0

    def __len__(self):
        return len(self._entries)

    def get(self, key):
        return self._entries.get(key)

    def increment(self, key, window_seconds, now):
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
                self._next_sweep = now + self.sweep_interval
            count, reset_at = self._entries.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._entries[key] = (count, reset_at)
            return count, reset_at

    def _sweep(self, now):
        stale = [k for k, (_, reset_at) in self._entries.items() if now >= reset_at]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def expire(self, now):
        with self._lock:
            return self._sweep(now)

    def clear(self):
        with self._lock:
            self._entries.clear()


class MongoCounterStore(CounterStore):
    """Shared counters in the `ratelimit` collection.

    `expires` mirrors `reset_at` as a datetime so a TTL index can drop
    finished windows.
    """

    def __init__(self, collection):
        self.collection = collection

    def get(self, key):
        doc = self.collection.find_one({"key": key})
        if not doc:
            return None
        return doc["count"], doc["reset_at"]

    def increment(self, key, window_seconds, now):
        reset_at = now + window_seconds
        expires = datetime.fromtimestamp(reset_at, timezone.utc)
        # Start a fresh window if the stored one has elapsed
        self.collection.update_one(
            {"key": key, "reset_at": {"$lte": now}},
            {"$set": {"count": 0, "reset_at": reset_at, "expires": expires}},
        )
        doc = self.collection.find_one_and_update(
            {"key": key},
            {
                "$inc": {"count": 1},
                "$setOnInsert": {"reset_at": reset_at, "expires": expires},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return doc["count"], doc["reset_at"]

    def expire(self, now):
        return self.collection.delete_many({"reset_at": {"$lte": now}}).deleted_count

    def clear(self):
        self.collection.delete_many({})


class RateLimiter:
    def __init__(self, store: CounterStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    def check(self, key: str, max_requests: int = RATE_LIMIT_MAX, window_seconds: int = RATE_LIMIT_WINDOW_SECONDS) -> RateLimitResult:
        now = self.clock()
        count, reset_at = self.store.increment(key, window_seconds, now)
        return RateLimitResult(allowed=count <= max_requests, remaining=max(0, max_requests - count), reset_at=reset_at)

    def hit(self, key: str, max_requests: int = RATE_LIMIT_MAX, window_seconds: int = RATE_LIMIT_WINDOW_SECONDS, message: Optional[str] = None) -> RateLimitResult:
        result = self.check(key, max_requests, window_seconds)
        if not result.allowed:
            retry_after = max(0, int(round(result.reset_at - self.clock())))
            logger.debug("Rate limit exceeded for %s, retry in %ss", key, retry_after)
            raise RateLimitError(retry_after, message)
        return result


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client:
        return request.client.host
    return "unknown"


def limit_by_ip(limiter: RateLimiter, scope: str, max_requests: int = RATE_LIMIT_MAX, window_seconds: int = RATE_LIMIT_WINDOW_SECONDS, message: Optional[str] = None):
    def dependency(request: Request) -> None:
        limiter.hit(f"{scope}:{client_ip(request)}", max_requests, window_seconds, message)
    return dependency


def limit_by_user(limiter: RateLimiter, scope: str, max_requests: int = RATE_LIMIT_MAX, window_seconds: int = RATE_LIMIT_WINDOW_SECONDS, message: Optional[str] = None):
    def dependency(user=Depends(get_current_user)) -> None:
        limiter.hit(f"{scope}:{user_id_of(user)}", max_requests, window_seconds, message)
    return dependency
