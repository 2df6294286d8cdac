"""
CoinMarketCap market-data provider (fallback source, API key required).

CoinMarketCap searches by symbol, so canonical identifiers coming out of preprocessing
("bitcoin") are translated back to their ticker ("BTC") first. Details come from
`/cryptocurrency/quotes/latest?id=`, keyed by the numeric CoinMarketCap id.
"""

import logging
from typing import Any, Dict, Optional

import aiohttp

from core.preprocessing import ticker_for
from provider_api.base import MarketDataProvider, pick_best_match
from shared.models import TokenDetails, TokenMatch

logger = logging.getLogger(__name__)


class CoinMarketCapProvider(MarketDataProvider):
    name = "coinmarketcap"

    def auth_headers(self) -> Dict[str, str]:
        return {"X-CMC_PRO_API_KEY": self.api_key} if self.api_key else {}

    async def search_token(self, session: aiohttp.ClientSession, query: str) -> Optional[TokenMatch]:
        symbol = ticker_for(query) or query.upper()
        payload = await self._get(session, "/cryptocurrency/map", "map", params={"symbol": symbol})
        entries = payload.get("data", []) if isinstance(payload, dict) else []
        candidates = [
            TokenMatch(
                id=str(entry["id"]),
                symbol=entry.get("symbol", ""),
                name=entry.get("name", ""),
                market_cap_rank=entry.get("rank"),
            )
            for entry in entries
            if entry.get("id") is not None
        ]
        # Match on the ticker first, then on the canonical slug or name.
        match = pick_best_match(symbol, candidates) if candidates else None
        logger.debug("[CoinMarketCap] search '%s' (%s) -> %s", query, symbol, match.id if match else None)
        return match

    async def get_token_details(self, session: aiohttp.ClientSession, match: TokenMatch) -> Optional[TokenDetails]:
        payload = await self._get(
            session, "/cryptocurrency/quotes/latest", "quotes", params={"id": match.id, "convert": "USD"}
        )
        data: Dict[str, Any] = payload.get("data", {}) if isinstance(payload, dict) else {}
        entry = data.get(match.id)
        if not entry:
            return None
        quote = entry.get("quote", {}).get("USD", {})
        price = quote.get("price")
        change_pct = quote.get("percent_change_24h")
        change_abs = None
        if price is not None and change_pct is not None and change_pct != -100:
            # Absolute change is derived from the percentage since the API does not report it.
            change_abs = price - price / (1 + change_pct / 100)
        return TokenDetails(
            id=entry.get("slug", match.id),
            symbol=entry.get("symbol", match.symbol).upper(),
            name=entry.get("name", match.name),
            current_price=price,
            market_cap=quote.get("market_cap"),
            market_cap_rank=entry.get("cmc_rank", match.market_cap_rank),
            total_volume=quote.get("volume_24h"),
            price_change_24h=change_abs,
            price_change_percentage_24h=change_pct,
            circulating_supply=entry.get("circulating_supply"),
            total_supply=entry.get("total_supply"),
            max_supply=entry.get("max_supply"),
            last_updated=quote.get("last_updated") or entry.get("last_updated"),
            source=self.name,
        )
