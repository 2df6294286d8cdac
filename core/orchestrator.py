"""
core/orchestrator.py

Top-level coordinator for one user query.

Each query walks a fixed sequence of stages:

    ValidateConfig -> Classify -> BuildContext -> Aggregate (when needed) -> Summarize
        -> PersistTurn -> Respond

Network-bound stages run under `retry_with_backoff` with a per-attempt timeout, retrying only
transient error kinds (rate limit, timeout, connection). A failure in Aggregate or Summarize does
not end the turn: the orchestrator takes the Recover edge and summarizes again with no data.
Only if that also fails, or if an earlier stage fails, is the turn aborted, in which case the
caller receives a `QueryFailedError` carrying a stable, user-safe message and no message of the
turn is persisted.
"""

import logging
import random
import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from config.logging_config import get_logger
from core.aggregator import AggregatorResult, DataAggregator
from core.classifier import IntentClassifier
from core.context_builder import ContextBuilder
from core.errors import (
    AssistantError,
    ErrorKind,
    PreprocessingError,
    QueryFailedError,
)
from core.retry import RetryPolicy, retry_with_backoff
from core.schema import Analysis
from core.summarizer import SummaryGenerator
from llm_cloud.provider import get_client, validate_env_for_provider
from monitoring.metrics import ERROR_COUNT, QUERY_COUNT, QUERY_LATENCY, STAGE_LATENCY
from provider_api import build_market_providers, build_web_search
from services.conversation_store import ConversationStore
from services.token_cache import TokenCache
from shared.models import (
    EnhancedContext,
    Intent,
    MessageMetadata,
    MessageRole,
    OrchestrationResult,
    TechnicalLevel,
)

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    VALIDATE_CONFIG = "validate_config"
    CLASSIFY = "classify"
    BUILD_CONTEXT = "build_context"
    AGGREGATE = "aggregate"
    SUMMARIZE = "summarize"
    RECOVER = "recover"
    PERSIST_TURN = "persist_turn"
    RESPOND = "respond"


SUGGESTIONS: Dict[Intent, List[str]] = {
    Intent.TECHNICAL: ["Would you like to see code examples?", "Should we explore security implications?"],
    Intent.DEFI: ["Would you like to analyze the protocol risks?", "Should we compare yields across platforms?"],
    Intent.REGULATORY: ["Would you like to see compliance requirements?", "Should we check jurisdictional differences?"],
    Intent.SECURITY: ["Would you like to see recent audit findings?", "Should we review security best practices?"],
    Intent.NEWS_EVENTS: ["Would you like to see related developments?", "Should we analyze market impact?"],
}
MARKET_SUGGESTIONS_ADVANCED = [
    "Would you like to see detailed market metrics?",
    "Should we analyze the trading volume patterns?",
]
MARKET_SUGGESTIONS_BASIC = [
    "How does this compare to other tokens?",
    "Would you like to see the price history?",
]


class QueryOrchestrator:
    """
    Sequences classification, context, aggregation and summarization for a session.

    Responsibilities:
    - Fail fast on missing LLM credentials before any work is done
    - Apply uniform timeout and backoff to network-bound stages
    - Degrade to a no-data answer when aggregation or summarization fails
    - Persist the user and assistant messages of each successful turn
    - Produce contextual follow-up suggestions from an injectable random source
    """

    def __init__(
        self,
        config: Dict[str, Any],
        store: ConversationStore,
        classifier: IntentClassifier,
        aggregator: DataAggregator,
        context_builder: ContextBuilder,
        summarizer: SummaryGenerator,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            config (Dict[str, Any]): Global configuration dictionary.
            store (ConversationStore): Process-wide conversation memory.
            classifier, aggregator, context_builder, summarizer: Stage collaborators.
            rng (random.Random, optional): Source used to order suggestions; seed it for
                deterministic output.
        """
        self.config = config
        self.store = store
        self.classifier = classifier
        self.aggregator = aggregator
        self.context_builder = context_builder
        self.summarizer = summarizer
        self.rng = rng or random.Random()

        orch_cfg = config.get("orchestrator", {})
        self.step_policy = RetryPolicy(
            max_attempts=int(orch_cfg.get("max_attempts", 3)),
            base_delay_s=float(orch_cfg.get("base_delay_s", 1.0)),
            factor=float(orch_cfg.get("backoff_factor", 2)),
            timeout_s=float(orch_cfg.get("step_timeout_s", 30)),
        )
        self.aggregation_policy = self.step_policy.scaled(float(orch_cfg.get("aggregation_delay_multiplier", 2)))
        self.max_suggestions = int(orch_cfg.get("max_suggestions", 3))
        self._provider_warning_logged = False

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        store: ConversationStore,
        rng: Optional[random.Random] = None,
    ) -> "QueryOrchestrator":
        """
        Wire all collaborators from configuration.

        When the LLM key is missing the client is left unset; every query then stops at
        ValidateConfig with a configuration error instead of the whole service failing to start.
        """
        try:
            client = get_client(config)
        except AssistantError as exc:
            logger.error("[QueryOrchestrator] LLM client unavailable: %s", exc)
            client = None

        models = config["llm"]["models"]
        prompts = config.get("prompts", {})
        classifier_cfg = config.get("classifier", {})
        classifier = IntentClassifier(
            client,
            models["classification"],
            prompts.get("classification", ""),
            retry_policy=RetryPolicy(
                max_attempts=int(classifier_cfg.get("max_attempts", 3)),
                base_delay_s=float(classifier_cfg.get("base_delay_s", 1.0)),
                factor=float(classifier_cfg.get("backoff_factor", 2)),
                retry_on=frozenset({ErrorKind.RATE_LIMIT}),
            ),
        )
        market_cfg = config.get("market_data", {})
        aggregator = DataAggregator(
            build_market_providers(config),
            web_search=build_web_search(config),
            cache=TokenCache(ttl_s=float(market_cfg.get("cache_ttl_s", 60))),
            request_timeout_s=float(market_cfg.get("request_timeout_s", 10)),
        )
        return cls(
            config,
            store,
            classifier,
            aggregator,
            ContextBuilder.from_config(config, store),
            SummaryGenerator(client, models["summary"], prompts.get("summary", "")),
            rng=rng,
        )

    def create_session(self) -> str:
        return self.store.create_session()

    async def process_query(self, query: str, session_id: str) -> OrchestrationResult:
        """
        Main entry point for query processing.

        Args:
            query (str): Raw user query.
            session_id (str): Session identifier; unknown ids start a new session.

        Returns:
            OrchestrationResult: analysis, aggregated data, response, suggestions and context analysis.

        Raises:
            QueryFailedError: With a user-safe message when the turn cannot be completed.
        """
        started = time.time()
        turn_id = str(uuid.uuid4())
        log = get_logger(__name__, session_id=session_id, stage=None)
        try:
            self._validate_config(session_id)
            async with self.store.session_guard(session_id):
                result, recovered = await self._run_turn(query, session_id, log)
        except AssistantError as exc:
            ERROR_COUNT.labels(type=exc.kind.value, location="orchestrator").inc()
            QUERY_COUNT.labels(outcome="error").inc()
            log.error("[QueryOrchestrator] Turn %s failed: %s (%s)", turn_id, exc.kind.value, exc)
            raise QueryFailedError(exc.kind) from exc
        except Exception as exc:
            ERROR_COUNT.labels(type=ErrorKind.UNEXPECTED.value, location="orchestrator").inc()
            QUERY_COUNT.labels(outcome="error").inc()
            log.exception("[QueryOrchestrator] Turn %s failed unexpectedly", turn_id)
            raise QueryFailedError(ErrorKind.UNEXPECTED) from exc
        finally:
            QUERY_LATENCY.observe(time.time() - started)

        QUERY_COUNT.labels(outcome="recovered" if recovered else "success").inc()
        log.info("[QueryOrchestrator] Turn %s completed in %.2fs", turn_id, time.time() - started)
        return result

    def _validate_config(self, session_id: str) -> None:
        if not session_id:
            raise PreprocessingError("Session ID is required for conversation memory", step="session")
        validate_env_for_provider(self.config)
        if self.classifier.client is None:
            # Key appeared after startup; build the client lazily for both LLM stages.
            client = get_client(self.config)
            self.classifier.client = client
            self.summarizer.client = client
        if not self._provider_warning_logged:
            self._provider_warning_logged = True
            if not self.aggregator.providers:
                logger.warning("[QueryOrchestrator] No market data providers configured; answers will lack live data")
            if self.aggregator.web_search is None:
                logger.warning("[QueryOrchestrator] Web search disabled; news and regulatory answers will lack sources")

    async def _run_turn(self, query: str, session_id: str, log: logging.LoggerAdapter):
        log.extra["stage"] = Stage.CLASSIFY.value
        with STAGE_LATENCY.labels(stage=Stage.CLASSIFY.value).time():
            analysis = await retry_with_backoff(
                lambda: self.classifier.classify(query), self.step_policy, label="classification"
            )

        log.extra["stage"] = Stage.BUILD_CONTEXT.value
        with STAGE_LATENCY.labels(stage=Stage.BUILD_CONTEXT.value).time():
            context = self.context_builder.build(session_id, analysis)
            formatted_context = self.context_builder.format(context)
            continuity = self.context_builder.judge_continuity(context)

        recovered = False
        aggregated: Optional[AggregatorResult] = None
        try:
            spec = self.aggregator.plan(analysis)
            if not spec.is_empty:
                log.extra["stage"] = Stage.AGGREGATE.value
                with STAGE_LATENCY.labels(stage=Stage.AGGREGATE.value).time():
                    aggregated = await retry_with_backoff(
                        lambda: self.aggregator.execute(spec), self.aggregation_policy, label="aggregation"
                    )
            log.extra["stage"] = Stage.SUMMARIZE.value
            with STAGE_LATENCY.labels(stage=Stage.SUMMARIZE.value).time():
                response = await retry_with_backoff(
                    lambda: self.summarizer.generate(query, analysis, aggregated, formatted_context),
                    self.step_policy,
                    label="summarization",
                )
        except Exception as exc:
            if isinstance(exc, AssistantError) and exc.kind == ErrorKind.CONFIGURATION:
                raise
            recovered = True
            aggregated = None
            response = await self._recover(query, analysis, formatted_context, exc, log)

        log.extra["stage"] = Stage.PERSIST_TURN.value
        self._persist_turn(session_id, query, response, analysis, continuity.confidence)

        log.extra["stage"] = Stage.RESPOND.value
        if continuity.suggested_follow_up:
            response = f"{response}\n\n{continuity.suggested_follow_up}"

        result = OrchestrationResult(
            analysis=analysis,
            aggregator_data=aggregated.to_dict() if aggregated is not None else None,
            response=response,
            suggestions=self.generate_suggestions(analysis, context),
            context_analysis={
                "continuity": continuity.to_dict(),
                "relatedTopics": list(context.related_topics),
                "predictedTopics": self.context_builder.predict_topics(context),
                "conversationSummary": self.store.get_conversation_summary(session_id).to_dict(),
            },
        )
        return result, recovered

    async def _recover(
        self,
        query: str,
        analysis: Analysis,
        formatted_context: str,
        cause: Exception,
        log: logging.LoggerAdapter,
    ) -> str:
        log.extra["stage"] = Stage.RECOVER.value
        log.warning("[QueryOrchestrator] Degrading to a no-data response after: %s", cause)
        with STAGE_LATENCY.labels(stage=Stage.RECOVER.value).time():
            return await retry_with_backoff(
                lambda: self.summarizer.generate(query, analysis, None, formatted_context),
                self.step_policy,
                label="summarization_recovery",
            )

    def _persist_turn(
        self,
        session_id: str,
        query: str,
        response: str,
        analysis: Analysis,
        context_confidence: float,
    ) -> None:
        metadata = MessageMetadata(
            intent=analysis.intent,
            confidence=analysis.confidence,
            tokens=tuple(analysis.detected_tokens),
            contextual_hints=tuple(analysis.original_context.metadata.contextual_hints),
            time_context=analysis.query_analysis.time_context,
            context_confidence=context_confidence,
        )
        self.store.add_message(session_id, MessageRole.USER, query, metadata)
        self.store.add_message(
            session_id,
            MessageRole.ASSISTANT,
            response,
            MessageMetadata(
                intent=analysis.intent,
                confidence=analysis.confidence,
                tokens=tuple(analysis.detected_tokens),
            ),
        )

    def generate_suggestions(self, analysis: Analysis, context: EnhancedContext) -> List[str]:
        """Intent- and preference-based follow-ups, shuffled by `self.rng` and capped."""
        intent = analysis.intent
        if intent == Intent.MARKET_DATA:
            if context.user_preferences.technical_level == TechnicalLevel.ADVANCED:
                suggestions = list(MARKET_SUGGESTIONS_ADVANCED)
            else:
                suggestions = list(MARKET_SUGGESTIONS_BASIC)
        else:
            suggestions = list(SUGGESTIONS.get(intent, []))

        if context.user_preferences.favorite_tokens:
            token = context.user_preferences.favorite_tokens[0]
            suggestions += [f"What's the latest price of {token}?", f"How has {token} performed recently?"]

        self.rng.shuffle(suggestions)
        return suggestions[: self.max_suggestions]
