"""
CoinGecko market-data provider (primary source).

Search uses `/search?query=`, details use `/coins/{id}` with the heavy sections (tickers,
community and developer data) switched off. The public API works without a key; a pro key is
sent in the `x-cg-pro-api-key` header when configured.
"""

import logging
from typing import Any, Dict, Optional

import aiohttp

from provider_api.base import MarketDataProvider, pick_best_match
from shared.models import TokenDetails, TokenMatch

logger = logging.getLogger(__name__)


def _usd(section: Dict[str, Any], key: str) -> Optional[float]:
    value = section.get(key)
    if isinstance(value, dict):
        return value.get("usd")
    return value


class CoinGeckoProvider(MarketDataProvider):
    name = "coingecko"

    def auth_headers(self) -> Dict[str, str]:
        return {"x-cg-pro-api-key": self.api_key} if self.api_key else {}

    async def search_token(self, session: aiohttp.ClientSession, query: str) -> Optional[TokenMatch]:
        payload = await self._get(session, "/search", "search", params={"query": query})
        coins = payload.get("coins", []) if isinstance(payload, dict) else []
        candidates = [
            TokenMatch(
                id=coin["id"],
                symbol=coin.get("symbol", ""),
                name=coin.get("name", ""),
                market_cap_rank=coin.get("market_cap_rank"),
            )
            for coin in coins
            if coin.get("id")
        ]
        match = pick_best_match(query, candidates)
        logger.debug("[CoinGecko] search '%s' -> %s", query, match.id if match else None)
        return match

    async def get_token_details(self, session: aiohttp.ClientSession, match: TokenMatch) -> Optional[TokenDetails]:
        payload = await self._get(
            session,
            f"/coins/{match.id}",
            "coin_details",
            params={
                "localization": "false",
                "tickers": "false",
                "community_data": "false",
                "developer_data": "false",
            },
        )
        if not isinstance(payload, dict) or not payload.get("market_data"):
            return None
        market = payload["market_data"]
        return TokenDetails(
            id=payload.get("id", match.id),
            symbol=str(payload.get("symbol", match.symbol)).upper(),
            name=payload.get("name", match.name),
            current_price=_usd(market, "current_price"),
            market_cap=_usd(market, "market_cap"),
            market_cap_rank=payload.get("market_cap_rank", match.market_cap_rank),
            total_volume=_usd(market, "total_volume"),
            high_24h=_usd(market, "high_24h"),
            low_24h=_usd(market, "low_24h"),
            price_change_24h=market.get("price_change_24h"),
            price_change_percentage_24h=market.get("price_change_percentage_24h"),
            circulating_supply=market.get("circulating_supply"),
            total_supply=market.get("total_supply"),
            max_supply=market.get("max_supply"),
            last_updated=payload.get("last_updated"),
            source=self.name,
        )
