"""
Unit tests for `core/orchestrator.py` – QueryOrchestrator stage sequencing and failure handling.

The classifier, aggregator and summarizer are mocked so that only the orchestration logic runs:
stage order, retry of transient failures, the recovery edge, error mapping to user-safe
messages and persistence of each completed turn. The conversation store and the context builder
are real, since the turn's effect on memory is part of what is being verified. Backoff sleeps
are patched out.
"""

import copy
import os
import random
import unittest
from unittest.mock import ANY, AsyncMock, MagicMock, patch

from config import CONFIG
from core.aggregator import AggregatorResult, AggregatorSpec, MarketDataRequest
from core.context_builder import ContextBuilder
from core.errors import (
    ErrorKind,
    LLMError,
    PreprocessingError,
    ProviderError,
    QueryFailedError,
    RequestTimeoutError,
    USER_MESSAGES,
)
from core.orchestrator import QueryOrchestrator
from helpers import make_analysis, make_details
from services.conversation_store import ConversationStore
from shared.models import Intent, MessageMetadata, MessageRole

SESSION = "session-1"


def build_orchestrator(analysis=None, spec=None, aggregated=None, summary="Here is your answer.", seed=7):
    store = ConversationStore()

    classifier = MagicMock()
    classifier.client = object()
    classifier.classify = AsyncMock(return_value=analysis or make_analysis())

    aggregator = MagicMock()
    aggregator.providers = ["coingecko"]
    aggregator.web_search = None
    aggregator.plan = MagicMock(return_value=spec if spec is not None else AggregatorSpec())
    aggregator.execute = AsyncMock(return_value=aggregated if aggregated is not None else AggregatorResult())

    summarizer = MagicMock()
    summarizer.client = classifier.client
    summarizer.generate = AsyncMock(return_value=summary)

    orchestrator = QueryOrchestrator(
        copy.deepcopy(CONFIG),
        store,
        classifier,
        aggregator,
        ContextBuilder(store),
        summarizer,
        rng=random.Random(seed),
    )
    return orchestrator, store


MARKET_SPEC = AggregatorSpec(market_data=MarketDataRequest(tokens=("bitcoin",), providers=("coingecko",)))


@patch("core.retry.asyncio.sleep", new_callable=AsyncMock)
class TestQueryOrchestrator(unittest.IsolatedAsyncioTestCase):

    async def test_successful_turn_runs_all_stages_and_persists(self, mock_sleep):
        aggregated = AggregatorResult(primary={"bitcoin": make_details()})
        orchestrator, store = build_orchestrator(spec=MARKET_SPEC, aggregated=aggregated)

        result = await orchestrator.process_query("btc price", SESSION)

        self.assertEqual(result.response, "Here is your answer.")
        self.assertEqual(result.aggregator_data["primary"]["bitcoin"]["source"], "coingecko")
        orchestrator.aggregator.execute.assert_awaited_once_with(MARKET_SPEC)
        orchestrator.summarizer.generate.assert_awaited_once_with("btc price", ANY, aggregated, ANY)

        messages = store.get_messages(SESSION)
        self.assertEqual([m.role for m in messages], [MessageRole.USER, MessageRole.ASSISTANT])
        self.assertEqual(messages[0].content, "btc price")
        self.assertEqual(messages[0].metadata.intent, Intent.MARKET_DATA)
        self.assertEqual(messages[0].metadata.tokens, ("bitcoin",))

        payload = result.to_dict()
        self.assertEqual(
            set(payload), {"analysis", "aggregatorData", "response", "suggestions", "contextAnalysis"}
        )
        self.assertEqual(
            set(payload["contextAnalysis"]),
            {"continuity", "relatedTopics", "predictedTopics", "conversationSummary"},
        )
        self.assertEqual(payload["contextAnalysis"]["conversationSummary"]["messageCount"], 2)
        self.assertLessEqual(len(result.suggestions), 3)

    async def test_empty_plan_skips_aggregation(self, mock_sleep):
        analysis = make_analysis("what is a blockchain", intent="CONCEPTUAL", tokens=(), needs_api_call=False)
        orchestrator, _ = build_orchestrator(analysis=analysis)

        result = await orchestrator.process_query("what is a blockchain", SESSION)

        orchestrator.aggregator.execute.assert_not_awaited()
        self.assertIsNone(result.aggregator_data)

    async def test_aggregation_failure_recovers_without_data(self, mock_sleep):
        orchestrator, store = build_orchestrator(spec=MARKET_SPEC, summary="General guidance.")
        orchestrator.aggregator.execute.side_effect = ProviderError("HTTP 500", provider="coingecko", status=500)

        result = await orchestrator.process_query("btc price", SESSION)

        self.assertEqual(result.response, "General guidance.")
        self.assertIsNone(result.aggregator_data)
        orchestrator.summarizer.generate.assert_awaited_once_with("btc price", ANY, None, ANY)
        self.assertEqual(len(store.get_messages(SESSION)), 2)

    async def test_summarization_failure_recovers(self, mock_sleep):
        orchestrator, _ = build_orchestrator(spec=MARKET_SPEC)
        orchestrator.summarizer.generate.side_effect = [LLMError("empty"), "Recovered answer."]

        result = await orchestrator.process_query("btc price", SESSION)

        self.assertEqual(result.response, "Recovered answer.")
        self.assertEqual(orchestrator.summarizer.generate.await_count, 2)

    async def test_failed_recovery_aborts_and_persists_nothing(self, mock_sleep):
        orchestrator, store = build_orchestrator()
        orchestrator.summarizer.generate.side_effect = LLMError("empty")

        with self.assertRaises(QueryFailedError) as ctx:
            await orchestrator.process_query("btc price", SESSION)

        self.assertEqual(ctx.exception.kind, ErrorKind.LLM)
        self.assertEqual(str(ctx.exception), USER_MESSAGES[ErrorKind.LLM])
        self.assertEqual(store.get_messages(SESSION), [])

    async def test_transient_classification_failure_is_retried(self, mock_sleep):
        orchestrator, _ = build_orchestrator()
        orchestrator.classifier.classify.side_effect = [RequestTimeoutError("slow"), make_analysis()]

        result = await orchestrator.process_query("btc price", SESSION)

        self.assertEqual(result.analysis.intent, Intent.MARKET_DATA)
        self.assertEqual(orchestrator.classifier.classify.await_count, 2)
        mock_sleep.assert_awaited_once_with(1.0)

    async def test_preprocessing_error_is_mapped_to_user_message(self, mock_sleep):
        orchestrator, store = build_orchestrator()
        orchestrator.classifier.classify.side_effect = PreprocessingError("Query is empty")

        with self.assertRaises(QueryFailedError) as ctx:
            await orchestrator.process_query("   ", SESSION)

        self.assertEqual(ctx.exception.kind, ErrorKind.PREPROCESSING)
        self.assertEqual(ctx.exception.user_message, "Please enter a question so I can help.")
        orchestrator.summarizer.generate.assert_not_awaited()
        self.assertEqual(store.get_messages(SESSION), [])

    async def test_unexpected_error_hides_details(self, mock_sleep):
        orchestrator, _ = build_orchestrator()
        orchestrator.classifier.classify.side_effect = KeyError("internal detail")

        with self.assertRaises(QueryFailedError) as ctx:
            await orchestrator.process_query("btc price", SESSION)

        self.assertEqual(ctx.exception.kind, ErrorKind.UNEXPECTED)
        self.assertNotIn("internal detail", str(ctx.exception))

    async def test_missing_session_id_is_rejected(self, mock_sleep):
        orchestrator, _ = build_orchestrator()

        with self.assertRaises(QueryFailedError) as ctx:
            await orchestrator.process_query("btc price", "")

        self.assertEqual(ctx.exception.kind, ErrorKind.PREPROCESSING)
        orchestrator.classifier.classify.assert_not_awaited()

    async def test_missing_llm_key_fails_before_classification(self, mock_sleep):
        orchestrator, store = build_orchestrator()

        with patch.dict(os.environ, {"OPENAI_API_KEY": "", "LLM_API_KEY": ""}):
            with self.assertRaises(QueryFailedError) as ctx:
                await orchestrator.process_query("btc price", SESSION)

        self.assertEqual(ctx.exception.kind, ErrorKind.CONFIGURATION)
        orchestrator.classifier.classify.assert_not_awaited()
        self.assertEqual(store.get_messages(SESSION), [])

    async def test_topic_switch_appends_bridging_question(self, mock_sleep):
        orchestrator, _ = build_orchestrator()
        await orchestrator.process_query("btc price", SESSION)

        orchestrator.classifier.classify.return_value = make_analysis(
            "is my wallet safe", intent="SECURITY", tokens=(), needs_api_call=False, confidence=0.3
        )
        result = await orchestrator.process_query("is my wallet safe", SESSION)

        self.assertTrue(result.response.startswith("Here is your answer."))
        self.assertTrue(result.response.endswith("our previous discussion about market data?"))
        self.assertFalse(result.context_analysis["continuity"]["isCoherent"])

    async def test_unknown_session_is_created_on_first_use(self, mock_sleep):
        orchestrator, store = build_orchestrator()

        await orchestrator.process_query("btc price", "brand-new")

        self.assertTrue(store.has_session("brand-new"))


class TestSuggestions(unittest.TestCase):

    def test_seeded_rng_gives_repeatable_suggestions(self):
        first, _ = build_orchestrator(seed=3)
        second, _ = build_orchestrator(seed=3)
        analysis = make_analysis(intent="DEFI", tokens=("uniswap",))
        context = first.context_builder.build(SESSION, analysis)

        self.assertEqual(
            first.generate_suggestions(analysis, context),
            second.generate_suggestions(analysis, context),
        )

    def test_market_suggestions_follow_technical_level(self):
        orchestrator, _ = build_orchestrator()
        analysis = make_analysis()
        basic = orchestrator.generate_suggestions(analysis, orchestrator.context_builder.build(SESSION, analysis))
        self.assertTrue(set(basic) <= {
            "How does this compare to other tokens?",
            "Would you like to see the price history?",
        })

    def test_favorite_tokens_add_suggestions(self):
        orchestrator, store = build_orchestrator()
        orchestrator.max_suggestions = 10
        store.add_message(SESSION, MessageRole.USER, "eth?", MessageMetadata(intent=Intent.TECHNICAL, tokens=("ethereum",)))
        analysis = make_analysis(intent="TECHNICAL", tokens=(), needs_api_call=False)

        suggestions = orchestrator.generate_suggestions(analysis, orchestrator.context_builder.build(SESSION, analysis))

        self.assertIn("What's the latest price of ethereum?", suggestions)
        self.assertIn("Would you like to see code examples?", suggestions)


if __name__ == "__main__":
    unittest.main()
