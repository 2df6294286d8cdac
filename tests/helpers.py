"""
Builders shared by the test modules: classification payloads, validated Analysis objects,
fake LLM completions and a controllable clock.
"""

import json
from types import SimpleNamespace
from typing import Any, Dict, Optional, Sequence
from unittest.mock import AsyncMock, MagicMock

from core.preprocessing import extract_metadata, preprocess_query
from core.schema import Analysis, ClassificationPayload, OriginalContext
from shared.models import TokenDetails


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def classification_payload(
    intent: str = "MARKET_DATA",
    tokens: Sequence[str] = ("bitcoin",),
    confidence: float = 0.9,
    needs_api_call: bool = True,
    requires_web_search: bool = False,
    suggested_queries: Sequence[str] = (),
    time_context: Optional[str] = "current",
    sanitized_query: str = "what is the price of bitcoin",
) -> Dict[str, Any]:
    return {
        "classification": {
            "primaryIntent": intent,
            "confidence": confidence,
            "needsApiCall": needs_api_call,
            "ambiguityLevel": "LOW",
            "requiresWebSearch": requires_web_search,
        },
        "queryAnalysis": {
            "sanitizedQuery": sanitized_query,
            "detectedTokens": list(tokens),
            "comparisonRequest": {
                "isComparison": len(tokens) > 1,
                "tokens": list(tokens) if len(tokens) > 1 else [],
                "aspects": [],
                "primaryMetric": None,
            },
            "detectedIntents": [intent],
            "timeContext": time_context,
            "marketIndicators": ["price"] if needs_api_call else [],
            "conceptualIndicators": [],
            "webSearchContext": {
                "needed": requires_web_search,
                "reason": "recent events" if requires_web_search else None,
                "suggestedQueries": list(suggested_queries),
            },
        },
        "dataRequirements": {
            "marketData": {
                "needed": needs_api_call,
                "types": ["price"] if needs_api_call else [],
                "timeframe": time_context if needs_api_call else None,
                "tokenCount": min(len(tokens), 5),
            },
            "conceptualData": {"needed": not needs_api_call, "aspects": []},
        },
    }


def make_analysis(query: str = "what is the price of btc", now: float = 1_000_000.0, **overrides) -> Analysis:
    """Build a validated Analysis the same way the classifier does, without an LLM call."""
    payload = ClassificationPayload.model_validate(classification_payload(**overrides))
    steps = preprocess_query(query)
    metadata = extract_metadata(query, steps, now=now)
    return Analysis(
        original_context=OriginalContext(
            raw_query=query,
            timestamp=metadata.timestamp,
            preprocessing_steps=tuple(steps),
            metadata=metadata,
        ),
        classification=payload.classification,
        query_analysis=payload.query_analysis,
        data_requirements=payload.data_requirements,
    )


def make_details(token: str = "bitcoin", source: str = "coingecko", **fields) -> TokenDetails:
    values = {
        "id": token,
        "symbol": token[:3].upper(),
        "name": token.capitalize(),
        "current_price": 65000.0,
        "market_cap": 1.28e12,
        "market_cap_rank": 1,
        "total_volume": 3.1e10,
        "high_24h": 66000.0,
        "low_24h": 64000.0,
        "price_change_percentage_24h": 1.5,
        "circulating_supply": 19_700_000,
        "source": source,
    }
    values.update(fields)
    return TokenDetails(**values)


def completion(content: Optional[str]) -> SimpleNamespace:
    """Object shaped like an OpenAI chat completion with a single choice."""
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def fake_llm_client(*results) -> MagicMock:
    """
    Client whose `chat.completions.create` yields the given results in order.

    Strings are wrapped into completions; exceptions are raised as-is.
    """
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        side_effect=[completion(r) if isinstance(r, str) else r for r in results]
    )
    return client


def json_completion(**overrides) -> str:
    return json.dumps(classification_payload(**overrides))
