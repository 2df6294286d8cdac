"""
Deterministic query preprocessing that runs before the classification LLM call.

Steps, each recorded as a PreprocessingStep:
1. trim: strip whitespace and reject empty input.
2. normalize: lowercase and replace known ticker abbreviations with canonical identifiers
   using whole-word matches ("btc" -> "bitcoin", but "btcx" is left alone).

Metadata extraction then pulls up to five candidate tokens out of the normalized text and derives
coarse keyword hints from the original text. The hint checks are case-sensitive on purpose:
"What's" does not raise the EDUCATIONAL hint while "what is" does.
"""

import re
import time
from typing import Dict, List, Optional, Tuple

from core.errors import PreprocessingError
from core.schema import MAX_TOKENS, PreprocessingStep, QueryMetadata

TOKEN_MAPPINGS: Dict[str, str] = {
    "btc": "bitcoin",
    "eth": "ethereum",
    "sol": "solana",
    "doge": "dogecoin",
    "ada": "cardano",
    "bnb": "binancecoin",
    "xrp": "ripple",
    "dot": "polkadot",
    "matic": "polygon",
    "avax": "avalanche-2",
    "link": "chainlink",
    "uni": "uniswap",
    "atom": "cosmos",
    "ltc": "litecoin",
    "luna": "terra-luna-2",
    "lunc": "terra-luna",
}

CANONICAL_TO_TICKER: Dict[str, str] = {canonical: ticker for ticker, canonical in TOKEN_MAPPINGS.items()}

KNOWN_IDENTIFIERS = frozenset(TOKEN_MAPPINGS.values())

STOP_WORDS = frozenset({
    "price", "show", "me", "what", "is", "the", "of", "and", "vs", "versus", "compare",
})

# (hint, substrings) pairs checked against the original query text.
HINT_RULES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("PRICE_QUERY", ("price",)),
    ("COMPARISON", ("compare", "vs", "versus")),
    ("TREND_ANALYSIS", ("trend",)),
    ("EDUCATIONAL", ("how", "what")),
    ("NEWS", ("news", "latest")),
    ("REGULATORY", ("regulation", "legal")),
    ("SECURITY", ("security", "safe")),
    ("DEFI", ("defi", "yield")),
)

_TICKER_PATTERN = re.compile(r"\b(" + "|".join(sorted(TOKEN_MAPPINGS, key=len, reverse=True)) + r")\b")
_ALPHANUMERIC = re.compile(r"^[a-z0-9]+$")


def ticker_for(identifier: str) -> Optional[str]:
    """Return the upper-case ticker for a canonical identifier, if known."""
    ticker = CANONICAL_TO_TICKER.get(identifier.lower())
    return ticker.upper() if ticker else None


def preprocess_query(raw_query: str) -> List[PreprocessingStep]:
    """
    Run the trim and normalize steps.

    Raises:
        PreprocessingError: If the query is empty after trimming.
    """
    if raw_query is None:
        raise PreprocessingError("Query must be a string", step="trim")
    trimmed = raw_query.strip()
    if not trimmed:
        raise PreprocessingError("Query is empty", step="trim")

    lowered = trimmed.lower()
    normalized = _TICKER_PATTERN.sub(lambda m: TOKEN_MAPPINGS[m.group(1)], lowered)
    if not normalized.strip():
        raise PreprocessingError("Query could not be sanitized", step="normalize")

    return [
        PreprocessingStep(operation="trim", input=raw_query, output=trimmed),
        PreprocessingStep(operation="normalize", input=lowered, output=normalized),
    ]


def extract_tokens(normalized_query: str) -> Tuple[str, ...]:
    """Candidate tokens in encounter order, deduplicated and capped at MAX_TOKENS."""
    candidates = []
    for word in normalized_query.split():
        if len(word) <= 1 or word in STOP_WORDS:
            continue
        if word in KNOWN_IDENTIFIERS or _ALPHANUMERIC.match(word):
            candidates.append(word)
    return tuple(dict.fromkeys(candidates))[:MAX_TOKENS]


def derive_hints(original_query: str, tokens: Tuple[str, ...]) -> Tuple[str, ...]:
    hints = []
    for hint, needles in HINT_RULES:
        if any(needle in original_query for needle in needles):
            hints.append(hint)
        # MULTI_TOKEN sits between the educational and news flags.
        if hint == "EDUCATIONAL" and len(tokens) > 1:
            hints.append("MULTI_TOKEN")
    return tuple(hints)


def extract_metadata(raw_query: str, steps: List[PreprocessingStep], now: Optional[float] = None) -> QueryMetadata:
    """Build the QueryMetadata for a preprocessed query."""
    tokens = extract_tokens(steps[-1].output)
    return QueryMetadata(
        tokens=tokens,
        timestamp=now if now is not None else time.time(),
        contextual_hints=derive_hints(raw_query, tokens),
    )
