from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class CustomerCacheEntry:
    customer: Any
    timestamp: float
    last_accessed: float


class CustomerCache:
    def __init__(self, ttl: float = 600.0, max_size: int = 1000, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: dict[str, CustomerCacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, email: str) -> Any | None:
        key = normalize_email(email)
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        if now - entry.timestamp > self.ttl:
            del self._entries[key]
            return None
        entry.last_accessed = now
        return entry.customer

    def set(self, email: str, customer: Any) -> None:
        self._clean_expired()
        self._evict_oldest_if_full()
        now = self._clock()
        self._entries[normalize_email(email)] = CustomerCacheEntry(customer, now, now)

    def invalidate(self, email: str) -> None:
        self._entries.pop(normalize_email(email), None)

    def _clean_expired(self) -> None:
        now = self._clock()
        for key in [k for k, e in self._entries.items() if now - e.timestamp > self.ttl]:
            del self._entries[key]

    def _evict_oldest_if_full(self) -> None:
        if len(self._entries) < self.max_size:
            return
        # drop the oldest 10%
        count = max(1, self.max_size // 10)
        oldest = sorted(self._entries.items(), key=lambda kv: kv[1].timestamp)[:count]
        for key, _ in oldest:
            del self._entries[key]

    def stats(self) -> dict[str, Any]:
        return {"size": len(self._entries), "max_size": self.max_size, "ttl_seconds": self.ttl}
