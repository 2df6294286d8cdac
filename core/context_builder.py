"""
core/context_builder.py

Derives the per-turn conversational context from the ConversationStore.

`build` collects recent messages, preference snapshot, conversation metrics and the topics
related to the current query. A stored topic is related when ANY of these holds: it shares a
detected token with the query, its name equals the current primary intent, or it was mentioned
within the recency window. `judge_continuity` weighs the store's continuity score, the current
classification confidence and whether the current intent is among recent intents or related
topics; a low score with no topical overlap yields a bridging question back to the last topic.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from core.schema import Analysis
from services.conversation_store import ConversationStore
from shared.models import ContinuityJudgment, EnhancedContext, Intent, TechnicalLevel

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS = {"continuity": 0.3, "intent_confidence": 0.4, "topic_relevance": 0.3}

TOPIC_SUGGESTIONS: Dict[Intent, List[str]] = {
    Intent.MARKET_DATA: ["price trends", "market comparison", "volume analysis"],
    Intent.TECHNICAL: ["security implications", "implementation details", "best practices"],
    Intent.DEFI: ["yield strategies", "liquidity analysis", "protocol comparison"],
    Intent.REGULATORY: ["compliance requirements", "jurisdictional analysis", "risk assessment"],
    Intent.SECURITY: ["audit findings", "security measures", "risk mitigation"],
    Intent.NEWS_EVENTS: ["market impact", "related developments", "future implications"],
}
DEFAULT_TOPIC_SUGGESTIONS = ["market overview", "technical details", "latest updates"]
ADVANCED_TOPIC_SUGGESTIONS = ["technical deep dive", "architecture analysis", "security audit"]

MAX_PREDICTED_TOPICS = 5


class ContextBuilder:
    def __init__(
        self,
        store: ConversationStore,
        max_recent_messages: int = 5,
        recent_topic_window_s: float = 30 * 60,
        coherence_threshold: float = 0.7,
        weights: Optional[Dict[str, float]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.max_recent_messages = max_recent_messages
        self.recent_topic_window_s = recent_topic_window_s
        self.coherence_threshold = coherence_threshold
        self.weights = {**DEFAULT_WEIGHTS, **(weights or {})}
        self._clock = clock

    @classmethod
    def from_config(cls, config: Dict[str, Any], store: ConversationStore) -> "ContextBuilder":
        ctx = config.get("context", {})
        return cls(
            store,
            max_recent_messages=int(ctx.get("max_recent_messages", 5)),
            recent_topic_window_s=float(ctx.get("recent_topic_window_s", 30 * 60)),
            coherence_threshold=float(ctx.get("coherence_threshold", 0.7)),
            weights=ctx.get("weights"),
        )

    def build(self, session_id: str, analysis: Analysis) -> EnhancedContext:
        now = self._clock()
        current_tokens = set(analysis.detected_tokens)
        intent_name = analysis.intent.value

        related = [
            topic.name for topic in self.store.get_topics(session_id, now)
            if topic.related_tokens & current_tokens
            or topic.name == intent_name
            or now - topic.last_mentioned <= self.recent_topic_window_s
        ]
        summary = self.store.get_conversation_summary(session_id, now)
        return EnhancedContext(
            session_id=session_id,
            recent_messages=self.store.get_recent_context(session_id, self.max_recent_messages, now),
            user_preferences=self.store.get_user_preferences(session_id),
            continuity_score=summary.continuity_score,
            dominant_topics=summary.dominant_topics,
            message_count=summary.message_count,
            analysis=analysis,
            related_topics=related,
        )

    def format(self, context: EnhancedContext) -> str:
        """Render the context as a plain-text block for the summarization prompt."""
        prefs = context.user_preferences
        lines = ["Recent Conversation:"]
        if context.recent_messages:
            lines.extend(f"{m.role.value}: {m.content}" for m in context.recent_messages)
        else:
            lines.append("(no previous messages)")
        lines += [
            "",
            "User Preferences:",
            f"- Favorite Tokens: {', '.join(prefs.favorite_tokens[:5]) or 'none'}",
            f"- Technical Level: {prefs.technical_level.value}",
            f"- Interests: {', '.join(prefs.interests) or 'none'}",
            f"- Preferred Timeframes: {', '.join(prefs.preferred_timeframes) or 'none'}",
            "",
            "Conversation Metrics:",
            f"- Messages: {context.message_count}",
            f"- Continuity Score: {context.continuity_score:.2f}",
            f"- Dominant Topics: {', '.join(context.dominant_topics) or 'none'}",
            "",
            "Current Query:",
            f"- Intent: {context.analysis.intent.value}",
            f"- Tokens: {', '.join(context.analysis.detected_tokens) or 'none'}",
            f"- Related Topics: {', '.join(context.related_topics) or 'none'}",
        ]
        return "\n".join(lines)

    def judge_continuity(self, context: EnhancedContext) -> ContinuityJudgment:
        intent = context.analysis.intent
        recent_intents = context.recent_intents
        is_related = intent in recent_intents or intent.value in context.related_topics

        confidence = (
            self.weights["continuity"] * context.continuity_score
            + self.weights["intent_confidence"] * context.analysis.confidence
            + self.weights["topic_relevance"] * (1.0 if is_related else 0.5)
        )
        confidence = max(0.0, min(1.0, confidence))

        follow_up = None
        if confidence < self.coherence_threshold and not is_related and recent_intents:
            last_topic = recent_intents[-1].value.lower().replace("_", " ")
            follow_up = f"Would you like to know how this relates to our previous discussion about {last_topic}?"

        return ContinuityJudgment(
            is_coherent=is_related and confidence >= self.coherence_threshold,
            confidence=confidence,
            suggested_follow_up=follow_up,
        )

    def predict_topics(self, context: EnhancedContext) -> List[str]:
        """Up to five distinct follow-up topic suggestions."""
        suggestions = list(TOPIC_SUGGESTIONS.get(context.analysis.intent, DEFAULT_TOPIC_SUGGESTIONS))
        if context.user_preferences.technical_level == TechnicalLevel.ADVANCED:
            suggestions.extend(ADVANCED_TOPIC_SUGGESTIONS)
        for token in context.user_preferences.favorite_tokens[:2]:
            suggestions.extend([f"{token} analysis", f"{token} performance"])
        return list(dict.fromkeys(suggestions))[:MAX_PREDICTED_TOPICS]
