"""
provider_api package: market-data and web-search integrations.

This package contains the abstractions and concrete clients that let the DataAggregator fetch
external data through a consistent interface. Orchestration code only sees `MarketDataProvider`,
`WebSearchClient` and the normalized models in `shared.models`; vendor details stay here.

Included modules:
- base: the `MarketDataProvider` ABC, the `CallBudget` rate-limit window and match selection.
- http: the aiohttp JSON helper that tags transport failures.
- coingecko / coinmarketcap: concrete price-data providers.
- web_search: search client for news, regulatory and security questions.

The factory functions below build the configured fallback chain. A provider whose key is
required but missing is left out with a warning; that degrades answers instead of failing them.
"""

import logging
from typing import Any, Dict, List, Optional

from config import get_api_key
from .base import CallBudget, MarketDataProvider, pick_best_match
from .coingecko import CoinGeckoProvider
from .coinmarketcap import CoinMarketCapProvider
from .web_search import WebSearchClient

logger = logging.getLogger(__name__)

PROVIDER_CLASSES = {
    "coingecko": CoinGeckoProvider,
    "coinmarketcap": CoinMarketCapProvider,
}

# Providers that refuse unauthenticated requests.
KEY_REQUIRED = {"coinmarketcap"}


def build_market_providers(config: Dict[str, Any]) -> List[MarketDataProvider]:
    """
    Build market-data providers in fallback order from `config["market_data"]`.

    Raises:
        ValueError: If an unknown provider name is configured.
    """
    market_cfg = config.get("market_data", {})
    providers: List[MarketDataProvider] = []
    for name in market_cfg.get("providers", []):
        provider_cls = PROVIDER_CLASSES.get(name)
        if provider_cls is None:
            raise ValueError(f"Unsupported market data provider: {name}")
        api_key = get_api_key(name)
        if api_key is None and name in KEY_REQUIRED:
            logger.warning("[provider_api] %s API key not configured; provider disabled", name)
            continue
        if api_key is None:
            logger.warning("[provider_api] %s API key not configured; using public rate limits", name)
        provider_cfg = market_cfg.get(name, {})
        providers.append(
            provider_cls(
                base_url=provider_cfg["base_url"],
                budget=CallBudget(int(provider_cfg.get("rate_limit", 30)), float(provider_cfg.get("window_s", 60))),
                api_key=api_key,
            )
        )
    logger.info("[provider_api] Market data fallback chain: %s", [p.name for p in providers])
    return providers


def build_web_search(config: Dict[str, Any]) -> Optional[WebSearchClient]:
    search_cfg = config.get("web_search")
    if not search_cfg:
        return None
    api_key = get_api_key("web_search")
    if api_key is None:
        logger.warning("[provider_api] Web search API key not configured; web search disabled")
        return None
    return WebSearchClient(
        base_url=search_cfg["base_url"],
        api_key=api_key,
        budget=CallBudget(int(search_cfg.get("rate_limit", 20)), float(search_cfg.get("window_s", 60))),
        max_results=int(search_cfg.get("max_results", 5)),
    )


__all__ = [
    "CallBudget",
    "MarketDataProvider",
    "CoinGeckoProvider",
    "CoinMarketCapProvider",
    "WebSearchClient",
    "build_market_providers",
    "build_web_search",
    "pick_best_match",
]
