"""In-memory rate limiting, TTL caching and shared per-process instances."""

import time
from collections import OrderedDict, defaultdict
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

from app.core.logging import get_logger

logger = get_logger(__name__)

V = TypeVar("V")


class RateLimiter:
    """
    Token bucket rate limiter.

    Tracks requests per key (e.g., tenant_id) and refills continuously.
    Uses in-memory storage - state is per process.
    """

    def __init__(
        self,
        max_tokens: int = 100,
        refill_per_minute: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize rate limiter.

        Args:
            max_tokens: Bucket capacity (maximum burst)
            refill_per_minute: Sustained rate
            clock: Time source in seconds
        """
        self.max_tokens = max_tokens
        self.refill_per_minute = refill_per_minute
        self.refill_rate = refill_per_minute / 60.0  # tokens per second
        self._clock = clock

        # Storage: key -> (tokens, last_refill_time)
        self._buckets: Dict[str, Tuple[float, float]] = {}

        # Track request counts for stats
        self._request_counts: Dict[str, int] = defaultdict(int)

    def _refill_bucket(self, key: str) -> None:
        now = self._clock()
        if key not in self._buckets:
            self._buckets[key] = (float(self.max_tokens), now)
            return

        current_tokens, last_refill = self._buckets[key]
        elapsed = now - last_refill
        new_tokens = min(self.max_tokens, current_tokens + elapsed * self.refill_rate)
        self._buckets[key] = (new_tokens, now)

    def check_limit(self, key: str, cost: float = 1.0) -> bool:
        """
        Consume `cost` tokens for a key if available.

        Returns:
            True if allowed, False if rate limited
        """
        self._refill_bucket(key)
        current_tokens, last_refill = self._buckets[key]

        if current_tokens >= cost:
            self._buckets[key] = (current_tokens - cost, last_refill)
            self._request_counts[key] += 1
            return True

        logger.warning(
            f"Rate limit exceeded for key: {key}, "
            f"tokens: {current_tokens:.2f}/{self.max_tokens}"
        )
        return False

    def get_stats(self, key: str) -> Dict[str, Any]:
        self._refill_bucket(key)
        current_tokens, _ = self._buckets[key]

        return {
            "tokens_remaining": int(current_tokens),
            "max_tokens": self.max_tokens,
            "refill_per_minute": self.refill_per_minute,
            "total_requests": self._request_counts.get(key, 0),
        }

    def reset(self, key: str) -> None:
        self._buckets.pop(key, None)
        self._request_counts.pop(key, None)
        logger.info(f"Rate limit reset for key: {key}")

    def reset_all(self) -> None:
        self._buckets.clear()
        self._request_counts.clear()


class TTLCache(Generic[V]):
    """Insertion-ordered cache with per-entry TTL; evicts the oldest entry when full."""

    def __init__(
        self,
        default_ttl: float = 300,
        max_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[V, float]]" = OrderedDict()

    def get(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        value, expires_at = entry
        if self._clock() > expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: V, ttl: Optional[float] = None) -> None:
        if key not in self._entries and len(self._entries) >= self.max_size:
            self._entries.popitem(last=False)

        expires_at = self._clock() + (ttl if ttl is not None else self.default_ttl)
        self._entries[key] = (value, expires_at)

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def cleanup(self) -> None:
        """Drop all expired entries."""
        now = self._clock()
        for key in [k for k, (_, exp) in self._entries.items() if now > exp]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class SharedInstances(Generic[V]):
    """
    One long-lived instance per owner object, keyed by identity.

    Holds a reference to each owner so its id cannot be reused while the
    entry lives; evicts the least recently used owner when full.
    """

    def __init__(self, max_size: int = 8):
        self.max_size = max_size
        self._entries: "OrderedDict[int, Tuple[Any, V]]" = OrderedDict()

    def get_or_create(self, owner: Any, factory: Callable[[], V]) -> V:
        key = id(owner)
        entry = self._entries.get(key)
        if entry is not None and entry[0] is owner:
            self._entries.move_to_end(key)
            return entry[1]

        instance = factory()
        self._entries[key] = (owner, instance)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)
        return instance

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def normalize_query(query: str) -> str:
    """Lowercase, trim and collapse whitespace."""
    return " ".join(query.lower().split())


def build_cache_key(query: str, n: int) -> str:
    return f"{normalize_query(query)}:{n}"
