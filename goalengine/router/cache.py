"""
Response cache keyed by request fingerprint

Entries are immutable: an unexpired entry is never overwritten, an expired
one is replaced by the next successful response.
"""
from typing import Callable, Optional
from collections import OrderedDict
from dataclasses import dataclass
import time

from goalengine.router.base import LLMResponse


@dataclass(frozen=True)
class CacheEntry:
    fingerprint: str
    response: LLMResponse
    expires_at: float


class ResponseCache:
    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 512,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, fingerprint: str) -> Optional[CacheEntry]:
        entry = self._entries.get(fingerprint)
        if entry is None:
            self.misses += 1
            return None
        if entry.expires_at <= self._clock():
            del self._entries[fingerprint]
            self.misses += 1
            return None
        self.hits += 1
        return entry

    def put(self, fingerprint: str, response: LLMResponse) -> CacheEntry:
        current = self._entries.get(fingerprint)
        if current is not None and current.expires_at > self._clock():
            return current
        if self.ttl_seconds <= 0:
            return CacheEntry(fingerprint, response, self._clock())
        entry = CacheEntry(
            fingerprint=fingerprint,
            response=response,
            expires_at=self._clock() + self.ttl_seconds,
        )
        if len(self._entries) >= self.max_entries:
            self.purge_expired()
        self._entries[fingerprint] = entry
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return entry

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [fp for fp, e in self._entries.items() if e.expires_at <= now]
        for fp in expired:
            del self._entries[fp]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
