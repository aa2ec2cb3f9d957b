"""
Keyed TTL stores for verification rate-limit state.

Each store offers an atomic read-modify-write (`update`) so that concurrent
verification attempts for the same key can never lose a failure or read a
stale lockout.

- InMemoryRateLimitStore: single process, guarded by a lock
- RedisRateLimitStore: shared across processes, WATCH/MULTI transaction
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Callable, Dict, Optional, Tuple

import redis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitState:
    """Failure counter for one (identity, action) key. Times are unix seconds."""
    window_start: float
    failure_count: int = 0
    locked_until: Optional[float] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "RateLimitState":
        data = json.loads(raw)
        return cls(
            window_start=float(data["window_start"]),
            failure_count=int(data["failure_count"]),
            locked_until=data.get("locked_until"),
        )


# Receives the current state (None if absent), returns the new state (None deletes the key)
StateUpdate = Callable[[Optional[RateLimitState]], Optional[RateLimitState]]


class RateLimitStore(ABC):
    """Atomic keyed store for RateLimitState"""

    @abstractmethod
    def get(self, key: str) -> Optional[RateLimitState]:
        """Read the current state, None if absent or expired"""

    @abstractmethod
    def update(self, key: str, fn: StateUpdate, ttl_seconds: int) -> Optional[RateLimitState]:
        """Apply fn to the current state atomically and persist the result with a TTL"""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the key"""


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local store for development, single-worker deployments and tests"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[RateLimitState, float]] = {}

    def _read(self, key: str) -> Optional[RateLimitState]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        state, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return state

    def get(self, key: str) -> Optional[RateLimitState]:
        with self._lock:
            return self._read(key)

    def update(self, key: str, fn: StateUpdate, ttl_seconds: int) -> Optional[RateLimitState]:
        with self._lock:
            new_state = fn(self._read(key))
            if new_state is None:
                self._entries.pop(key, None)
            else:
                self._entries[key] = (new_state, self._clock() + ttl_seconds)
            return new_state

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def purge_expired(self) -> int:
        """Drop expired entries, returns how many were removed"""
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Purged {len(expired)} expired rate-limit entries")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisRateLimitStore(RateLimitStore):
    """Redis-backed store shared by every worker"""

    KEY_PREFIX = "twofactor:ratelimit:"

    def __init__(self, client: "redis.Redis"):
        self.client = client

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisRateLimitStore":
        client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        logger.info(f"Rate-limit store using Redis: {redis_url}")
        return cls(client)

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    def get(self, key: str) -> Optional[RateLimitState]:
        raw = self.client.get(self._key(key))
        return RateLimitState.from_json(raw) if raw else None

    def update(self, key: str, fn: StateUpdate, ttl_seconds: int) -> Optional[RateLimitState]:
        redis_key = self._key(key)

        def _apply(pipe):
            raw = pipe.get(redis_key)
            current = RateLimitState.from_json(raw) if raw else None
            new_state = fn(current)
            pipe.multi()
            if new_state is None:
                pipe.delete(redis_key)
            else:
                pipe.set(redis_key, new_state.to_json(), ex=max(1, int(ttl_seconds)))
            return new_state

        # transaction() retries _apply whenever the watched key changes underneath it
        return self.client.transaction(_apply, redis_key, value_from_callable=True)

    def delete(self, key: str) -> None:
        self.client.delete(self._key(key))
