"""
Provider-agnostic interface for market-data sources.

This module defines the contract that every price-data provider must fulfill so the
DataAggregator can walk a fallback chain without knowing which vendor it is talking to. The
design follows the adapter pattern: HTTP details, authentication headers and response shapes
stay inside each concrete provider, and everything that leaves a provider is normalized into
the shared `TokenDetails` model.

Resolution is a two-step **search-then-fetch**: `search_token` maps a user-facing name or
symbol to the provider-side identifier, then `get_token_details` fetches the full record for
that identifier. Each provider also owns a `CallBudget` that tracks calls made in the current
rate-limit window, so the aggregator can skip a provider instead of earning a 429.

Key concepts and abbreviations:
- ABC: Abstract Base Class, used here to declare the methods each provider implements.
- Rank: market-cap rank, where 1 is the largest asset; lower is better when breaking ties.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, Optional

import aiohttp

from core.errors import RateLimitError
from provider_api.http import fetch_json
from shared.models import TokenDetails, TokenMatch


class CallBudget:
    """
    Fixed-window call counter.

    `calls` is the number of calls recorded so far in the current window. The window restarts
    lazily on the first check after it has elapsed.
    """

    def __init__(self, limit: int, window_s: float = 60.0, clock: Callable[[], float] = time.time):
        self.limit = limit
        self.window_s = window_s
        self._clock = clock
        self._window_start = clock()
        self.calls = 0

    def _roll(self) -> None:
        now = self._clock()
        if now - self._window_start >= self.window_s:
            self._window_start = now
            self.calls = 0

    def can_call(self) -> bool:
        self._roll()
        return self.calls < self.limit

    def record_call(self) -> None:
        self._roll()
        self.calls += 1

    def seconds_until_reset(self) -> float:
        return max(0.0, self.window_s - (self._clock() - self._window_start))


def pick_best_match(query: str, candidates: Iterable[TokenMatch]) -> Optional[TokenMatch]:
    """
    Choose the best search candidate for `query`.

    Preference order: exact symbol match, then exact name (or identifier) match, then the
    candidate with the lowest market-cap rank. Unranked candidates sort last.
    """
    candidates = list(candidates)
    if not candidates:
        return None
    needle = query.strip().lower()
    for candidate in candidates:
        if candidate.symbol.lower() == needle:
            return candidate
    for candidate in candidates:
        if candidate.name.lower() == needle or candidate.id.lower() == needle:
            return candidate
    return min(
        candidates,
        key=lambda c: c.market_cap_rank if c.market_cap_rank is not None else float("inf"),
    )


class MarketDataProvider(ABC):
    """
    Abstract market-data provider.

    Subclasses set `name` and implement `search_token` and `get_token_details`; they should call
    `_get` for every HTTP request so budget accounting and error tagging stay uniform.
    """

    name: str = "provider"

    def __init__(self, base_url: str, budget: CallBudget, api_key: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.budget = budget
        self.api_key = api_key

    def auth_headers(self) -> Dict[str, str]:
        return {}

    async def _get(
        self,
        session: aiohttp.ClientSession,
        path: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if not self.budget.can_call():
            raise RateLimitError(
                f"{self.name} call budget exhausted for this window "
                f"({self.budget.seconds_until_reset():.0f}s until reset)",
                source=self.name,
            )
        self.budget.record_call()
        return await fetch_json(
            session,
            f"{self.base_url}{path}",
            provider=self.name,
            endpoint=endpoint,
            params=params,
            headers=self.auth_headers(),
        )

    @abstractmethod
    async def search_token(self, session: aiohttp.ClientSession, query: str) -> Optional[TokenMatch]:
        """
        Resolve a canonical identifier or symbol to this provider's best-matching token.

        Args:
            session (aiohttp.ClientSession): Shared HTTP session.
            query (str): Canonical identifier such as "bitcoin", or a symbol.

        Returns:
            Optional[TokenMatch]: The best match, or None when the provider knows no such token.
        """
        raise NotImplementedError

    @abstractmethod
    async def get_token_details(self, session: aiohttp.ClientSession, match: TokenMatch) -> Optional[TokenDetails]:
        """
        Fetch and normalize full details for a previously resolved token.

        Returns:
            Optional[TokenDetails]: Normalized record, or None if the provider returned no data.
        """
        raise NotImplementedError
