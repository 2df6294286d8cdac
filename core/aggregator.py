"""
core/aggregator.py

External data aggregation for a classified query.

`DataAggregator.plan` is a pure function of the Analysis: it decides whether market data and/or
web search are needed and for which tokens or queries. `DataAggregator.execute` carries the plan
out. Market data for each token is resolved through the provider fallback chain: the first
provider that returns usable details wins; HTTP errors, rate limits, exhausted call budgets and
empty results all move on to the next provider. A token that no provider can resolve is simply
absent from the result. Partial data is a successful outcome, and callers check `has_data`
rather than expecting completeness.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from core.errors import AssistantError
from core.schema import Analysis
from monitoring.metrics import PROVIDER_FALLBACKS
from provider_api.base import MarketDataProvider
from provider_api.web_search import WebSearchClient
from services.token_cache import TokenCache
from shared.models import Intent, SearchHit, TokenDetails

logger = logging.getLogger(__name__)

WEB_SEARCH_INTENTS = frozenset({Intent.NEWS_EVENTS, Intent.REGULATORY, Intent.SECURITY, Intent.HYBRID})


@dataclass(frozen=True)
class MarketDataRequest:
    tokens: Tuple[str, ...]
    providers: Tuple[str, ...]
    timeframe: Optional[str] = None


@dataclass(frozen=True)
class WebSearchRequest:
    queries: Tuple[str, ...]
    content_type: str


@dataclass(frozen=True)
class AggregatorSpec:
    market_data: Optional[MarketDataRequest] = None
    web_search: Optional[WebSearchRequest] = None

    @property
    def is_empty(self) -> bool:
        return self.market_data is None and self.web_search is None


@dataclass
class AggregatorResult:
    """
    Outcome of one aggregation run.

    `primary` holds token details served by the first provider of the chain (or the cache),
    `fallback` holds details that only a later provider could supply.
    """
    primary: Dict[str, TokenDetails] = field(default_factory=dict)
    fallback: Dict[str, TokenDetails] = field(default_factory=dict)
    web_results: List[SearchHit] = field(default_factory=list)
    missing_tokens: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def token_details(self) -> Dict[str, TokenDetails]:
        return {**self.primary, **self.fallback}

    @property
    def has_data(self) -> bool:
        return bool(self.primary or self.fallback or self.web_results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary": {token: d.model_dump() for token, d in self.primary.items()},
            "fallback": {token: d.model_dump() for token, d in self.fallback.items()},
            "webResults": [hit.model_dump() for hit in self.web_results],
            "missingTokens": list(self.missing_tokens),
            "errors": dict(self.errors),
        }


class DataAggregator:
    """
    Plans and executes data fetches over a provider fallback chain.

    Args:
        providers (list): Market-data providers in fallback order.
        web_search (WebSearchClient, optional): Search client; None disables web search.
        cache (TokenCache, optional): TTL cache for token details.
        request_timeout_s (float): Total timeout applied to each HTTP request.
    """

    def __init__(
        self,
        providers: List[MarketDataProvider],
        web_search: Optional[WebSearchClient] = None,
        cache: Optional[TokenCache] = None,
        request_timeout_s: float = 10.0,
    ):
        self.providers = providers
        self.web_search = web_search
        self.cache = cache if cache is not None else TokenCache()
        self.request_timeout_s = request_timeout_s

    def plan(self, analysis: Analysis) -> AggregatorSpec:
        classification = analysis.classification
        if not (classification.needs_api_call or classification.requires_web_search):
            return AggregatorSpec()

        intent = classification.primary_intent
        market_request = None
        tokens = analysis.detected_tokens
        if classification.needs_api_call and tokens:
            market_request = MarketDataRequest(
                tokens=tuple(tokens),
                providers=tuple(p.name for p in self.providers),
                timeframe=analysis.data_requirements.market_data.timeframe or analysis.query_analysis.time_context,
            )

        search_request = None
        if classification.requires_web_search and intent in WEB_SEARCH_INTENTS:
            context = analysis.query_analysis.web_search_context
            queries = context.suggested_queries or (analysis.query_analysis.sanitized_query,)
            search_request = WebSearchRequest(queries=tuple(queries[:3]), content_type=intent.value)

        return AggregatorSpec(market_data=market_request, web_search=search_request)

    async def execute(self, spec: AggregatorSpec) -> AggregatorResult:
        result = AggregatorResult()
        if spec.is_empty:
            return result

        timeout = aiohttp.ClientTimeout(total=self.request_timeout_s)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            jobs = []
            if spec.market_data is not None:
                jobs.append(self._collect_market_data(session, spec.market_data, result))
            if spec.web_search is not None:
                jobs.append(self._collect_web_results(session, spec.web_search, result))
            await asyncio.gather(*jobs)

        logger.info(
            "[DataAggregator] Fetched %d primary, %d fallback, %d web results; missing=%s",
            len(result.primary), len(result.fallback), len(result.web_results), result.missing_tokens,
        )
        return result

    async def _collect_market_data(
        self, session: aiohttp.ClientSession, request: MarketDataRequest, result: AggregatorResult
    ) -> None:
        resolved = await asyncio.gather(*(self._resolve_token(session, token) for token in request.tokens))
        for token, (provider_index, details, errors) in zip(request.tokens, resolved):
            result.errors.update({f"{token}:{name}": message for name, message in errors.items()})
            if details is None:
                result.missing_tokens.append(token)
            elif provider_index == 0:
                result.primary[token] = details
            else:
                result.fallback[token] = details

    async def _resolve_token(
        self, session: aiohttp.ClientSession, token: str
    ) -> Tuple[int, Optional[TokenDetails], Dict[str, str]]:
        cached = self.cache.get(token)
        if cached is not None:
            return 0, cached, {}

        errors: Dict[str, str] = {}
        for index, provider in enumerate(self.providers):
            if not provider.budget.can_call():
                logger.info("[DataAggregator] Skipping %s for '%s': call budget exhausted", provider.name, token)
                errors[provider.name] = "budget exhausted"
                PROVIDER_FALLBACKS.labels(provider=provider.name).inc()
                continue
            try:
                match = await provider.search_token(session, token)
                details = await provider.get_token_details(session, match) if match else None
            except AssistantError as exc:
                logger.warning("[DataAggregator] %s failed for '%s': %s", provider.name, token, exc)
                errors[provider.name] = exc.kind.value
                PROVIDER_FALLBACKS.labels(provider=provider.name).inc()
                continue
            if details is None:
                errors[provider.name] = "no result"
                PROVIDER_FALLBACKS.labels(provider=provider.name).inc()
                continue
            self.cache.set(token, details)
            return index, details, errors
        return -1, None, errors

    async def _collect_web_results(
        self, session: aiohttp.ClientSession, request: WebSearchRequest, result: AggregatorResult
    ) -> None:
        if self.web_search is None:
            result.errors["web_search"] = "not configured"
            return
        seen = set()
        for query in request.queries:
            try:
                hits = await self.web_search.search(session, query)
            except AssistantError as exc:
                logger.warning("[DataAggregator] Web search failed for '%s': %s", query, exc)
                result.errors[f"web_search:{query}"] = exc.kind.value
                continue
            for hit in hits:
                if hit.url not in seen:
                    seen.add(hit.url)
                    result.web_results.append(hit)
