"""
Short-lived cache of normalized token details.

Market data goes stale quickly, so entries expire after a small TTL (60 seconds by default).
The cache exists to keep repeated questions about the same token inside one conversation from
spending provider call budget.
"""

import time
from typing import Callable, Dict, Optional, Tuple

from monitoring.metrics import TOKEN_CACHE_EVENTS
from shared.models import TokenDetails


class TokenCache:
    def __init__(self, ttl_s: float = 60.0, clock: Callable[[], float] = time.time):
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: Dict[str, Tuple[float, TokenDetails]] = {}

    def get(self, token: str) -> Optional[TokenDetails]:
        entry = self._entries.get(token)
        if entry is None:
            TOKEN_CACHE_EVENTS.labels(event="miss").inc()
            return None
        stored_at, details = entry
        if self._clock() - stored_at > self.ttl_s:
            del self._entries[token]
            TOKEN_CACHE_EVENTS.labels(event="miss").inc()
            return None
        TOKEN_CACHE_EVENTS.labels(event="hit").inc()
        return details

    def set(self, token: str, details: TokenDetails) -> None:
        self._entries[token] = (self._clock(), details)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
