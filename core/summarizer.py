"""
core/summarizer.py

Final answer generation.

Three paths, chosen from the Analysis and the aggregated data:
- a single-token MARKET_DATA query with usable details is answered from a fixed markdown price
  template, with no LLM call;
- a query that needed live data but got none asks the LLM to explain that the data could not be
  fetched and to offer general guidance instead;
- everything else sends the conversation context, the query, the analysis and the data to the
  LLM and returns its markdown answer.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from core.aggregator import AggregatorResult
from core.schema import Analysis
from llm_cloud.provider import complete_chat
from monitoring.metrics import track_errors
from shared.models import Intent, TokenDetails

logger = logging.getLogger(__name__)


def format_price(price: Optional[float]) -> str:
    if price is None:
        return "N/A"
    return f"${price:,.6f}" if price < 1 else f"${price:,.2f}"


def format_large_number(value: Optional[float]) -> str:
    """Format market caps and volumes with B/M/K suffixes."""
    if value is None:
        return "N/A"
    for threshold, suffix in ((1e9, "B"), (1e6, "M"), (1e3, "K")):
        if abs(value) >= threshold:
            return f"${value / threshold:.2f}{suffix}"
    return f"${value:.2f}"


def format_change(percentage: Optional[float]) -> str:
    if percentage is None:
        return "N/A"
    sign = "+" if percentage >= 0 else ""
    return f"{sign}{percentage:.2f}%"


def render_price_response(details: TokenDetails) -> str:
    """Markdown price card for one token."""
    lines = [
        f"## {details.name} ({details.symbol.upper()})",
        "",
        f"**Price:** {format_price(details.current_price)} ({format_change(details.price_change_percentage_24h)} 24h)",
        f"**Market Cap:** {format_large_number(details.market_cap)}"
        + (f" (Rank #{details.market_cap_rank})" if details.market_cap_rank else ""),
        f"**24h Volume:** {format_large_number(details.total_volume)}",
    ]
    if details.high_24h is not None and details.low_24h is not None:
        lines.append(f"**24h Range:** {format_price(details.low_24h)} - {format_price(details.high_24h)}")
    if details.circulating_supply is not None:
        lines.append(f"**Circulating Supply:** {details.circulating_supply:,.0f} {details.symbol.upper()}")
    lines += ["", f"_Source: {details.source}_"]
    return "\n".join(lines)


class SummaryGenerator:
    def __init__(self, client: Optional[AsyncOpenAI], model_config: Dict[str, Any], system_prompt: str):
        self.client = client
        self.model_config = model_config
        self.system_prompt = system_prompt

    @track_errors('summarization', 'summary_generator')
    async def generate(
        self,
        query: str,
        analysis: Analysis,
        aggregated: Optional[AggregatorResult],
        enhanced_context: Optional[str] = None,
    ) -> str:
        """
        Produce the answer text for a query.

        Args:
            query (str): The user's original query.
            analysis (Analysis): Validated classification.
            aggregated (AggregatorResult, optional): Fetched data; None on the recovery path.
            enhanced_context (str, optional): Formatted conversation context block.

        Returns:
            str: Non-empty markdown answer.

        Raises:
            LLMError: When the model returns no content.
        """
        has_data = aggregated is not None and aggregated.has_data
        if has_data and analysis.intent == Intent.MARKET_DATA and len(analysis.detected_tokens) == 1:
            details = aggregated.token_details.get(analysis.detected_tokens[0])
            if details is not None:
                logger.info("[SummaryGenerator] Rendering price template for %s", details.id)
                return render_price_response(details)

        messages: List[Dict[str, str]] = [{"role": "system", "content": self.system_prompt}]
        if enhanced_context:
            messages.append({"role": "system", "content": f"Conversation Context:\n{enhanced_context}"})

        if analysis.classification.needs_api_call and not has_data:
            logger.info("[SummaryGenerator] No usable data; generating explanatory response")
            messages.append({
                "role": "user",
                "content": (
                    f'Generate a helpful response for a failed data fetch. Query: "{query}". '
                    f"Tokens requested: {', '.join(analysis.detected_tokens) or 'none'}. "
                    "Explain that live market data is temporarily unavailable, do not invent figures, "
                    "and offer general information or next steps the user can take."
                ),
            })
        else:
            data = aggregated.to_dict() if aggregated is not None else None
            messages.append({
                "role": "user",
                "content": (
                    f"Query: {query}\n\n"
                    f"Analysis Context:\n{json.dumps(analysis.to_payload(), indent=2)}\n\n"
                    f"Available Data:\n{json.dumps(data, indent=2, default=str)}"
                ),
            })

        return await complete_chat(self.client, self.model_config, messages)
