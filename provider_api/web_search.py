"""
Web search client used for news, regulatory and security questions.

Talks to a Brave-compatible search endpoint (`GET ?q=&count=` with an `X-Subscription-Token`
header) and returns a flat list of `SearchHit`s. The client shares the CallBudget mechanism with
the market-data providers.
"""

import logging
from typing import List

import aiohttp

from core.errors import RateLimitError
from provider_api.base import CallBudget
from provider_api.http import fetch_json
from shared.models import SearchHit

logger = logging.getLogger(__name__)


class WebSearchClient:
    name = "web_search"

    def __init__(self, base_url: str, api_key: str, budget: CallBudget, max_results: int = 5):
        self.base_url = base_url
        self.api_key = api_key
        self.budget = budget
        self.max_results = max_results

    async def search(self, session: aiohttp.ClientSession, query: str) -> List[SearchHit]:
        """
        Run one search query.

        Raises:
            RateLimitError: When the local budget is exhausted or the API answers 429.
            ProviderError, RequestTimeoutError, NetworkConnectionError: see `fetch_json`.
        """
        if not self.budget.can_call():
            raise RateLimitError("web search call budget exhausted for this window", source=self.name)
        self.budget.record_call()
        payload = await fetch_json(
            session,
            self.base_url,
            provider=self.name,
            endpoint="search",
            params={"q": query, "count": self.max_results},
            headers={"X-Subscription-Token": self.api_key},
        )
        results = payload.get("web", {}).get("results", []) if isinstance(payload, dict) else []
        hits = [
            SearchHit(title=item.get("title", ""), url=item["url"], description=item.get("description", ""))
            for item in results[: self.max_results]
            if item.get("url")
        ]
        logger.debug("[WebSearch] '%s' -> %d results", query, len(hits))
        return hits
