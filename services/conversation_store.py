"""
Session-keyed, in-process conversation memory.

The store owns three maps keyed by session id: the bounded message history, the per-session
`ConversationMetadata` (topics, inferred preferences, continuity score) and a per-session
`asyncio.Lock`. One instance is built at startup and handed to the orchestrator; tests simply
build a fresh store. Nothing is persisted beyond the process lifetime.

Topic relevance: every user message that carries an intent bumps that topic's frequency, moves
`last_mentioned` forward (never backward) and blends the topic confidence toward the new
classification confidence with an exponential moving update. Ranking applies an exponential
time decay, so topics that have not come up for a while sink without being deleted.

Continuity: when the assistant half of a turn is recorded, the rolling continuity score is
blended toward a turn score built from whether the intent followed the previous turn (or a hot
topic) and the classification confidence. The score is clamped to [0, 1].

Concurrency: the store is used from a single event loop and none of its methods await, so each
call runs without interleaving. `session_guard` serializes whole requests for one session and
marks the session in-flight so the background expiry sweep leaves it alone.
"""

import asyncio
import copy
import logging
import math
import time
import uuid
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

from monitoring.metrics import ACTIVE_SESSIONS, SESSIONS_EXPIRED
from shared.models import (
    ChatMessage,
    ConversationMetadata,
    ConversationSummary,
    Intent,
    MessageMetadata,
    MessageRole,
    PreferenceSnapshot,
    TechnicalLevel,
    TopicMetadata,
    UserPreferences,
)

logger = logging.getLogger(__name__)

ADVANCED_HINTS = frozenset({"TECHNICAL", "CODE"})
INTERMEDIATE_HINTS = frozenset({"INTERMEDIATE", "TREND_ANALYSIS", "DEFI"})

# Weight of "did this turn follow the flow" versus classification confidence in a turn score.
FLOW_WEIGHT = 0.6


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class ConversationStore:
    def __init__(
        self,
        max_messages: int = 50,
        expiry_s: float = 24 * 60 * 60,
        topic_decay_window_s: float = 30 * 60,
        topic_blend_weight: float = 0.6,
        continuity_blend_weight: float = 0.5,
        recent_context_window_s: float = 60 * 60,
        clock: Callable[[], float] = time.time,
    ):
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        self.max_messages = max_messages
        self.expiry_s = expiry_s
        self.topic_decay_window_s = topic_decay_window_s
        self.topic_blend_weight = topic_blend_weight
        self.continuity_blend_weight = continuity_blend_weight
        self.recent_context_window_s = recent_context_window_s
        self._clock = clock

        self._messages: Dict[str, List[ChatMessage]] = {}
        self._metadata: Dict[str, ConversationMetadata] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._in_flight: Counter = Counter()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ConversationStore":
        conv = config.get("conversation", {})
        return cls(
            max_messages=int(conv.get("max_messages", 50)),
            expiry_s=float(conv.get("session_expiry_s", 24 * 60 * 60)),
            topic_decay_window_s=float(conv.get("topic_decay_window_s", 30 * 60)),
            topic_blend_weight=float(conv.get("topic_blend_weight", 0.6)),
            continuity_blend_weight=float(conv.get("continuity_blend_weight", 0.5)),
            recent_context_window_s=float(conv.get("recent_context_window_s", 60 * 60)),
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def create_session(self) -> str:
        session_id = str(uuid.uuid4())
        self._ensure_session(session_id)
        logger.info("[ConversationStore] Created session %s", session_id)
        return session_id

    def has_session(self, session_id: str) -> bool:
        return session_id in self._metadata

    def delete_session(self, session_id: str) -> bool:
        existed = self._metadata.pop(session_id, None) is not None
        self._messages.pop(session_id, None)
        if session_id not in self._in_flight:
            self._locks.pop(session_id, None)
        ACTIVE_SESSIONS.set(len(self._metadata))
        return existed

    def __len__(self) -> int:
        return len(self._metadata)

    def _ensure_session(self, session_id: str) -> ConversationMetadata:
        meta = self._metadata.get(session_id)
        if meta is None:
            meta = ConversationMetadata(last_active=self._clock())
            self._metadata[session_id] = meta
            self._messages[session_id] = []
            ACTIVE_SESSIONS.set(len(self._metadata))
        return meta

    @asynccontextmanager
    async def session_guard(self, session_id: str) -> AsyncIterator[None]:
        """
        Serialize work on one session and protect it from the expiry sweep.

        Requests for different sessions never wait on each other.
        """
        self._in_flight[session_id] += 1
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        try:
            async with lock:
                yield
        finally:
            self._in_flight[session_id] -= 1
            if self._in_flight[session_id] <= 0:
                del self._in_flight[session_id]
                # Failed turns for unknown ids never reach the sweep.
                if session_id not in self._metadata and not lock.locked():
                    self._locks.pop(session_id, None)

    def is_in_flight(self, session_id: str) -> bool:
        return self._in_flight.get(session_id, 0) > 0

    def clean_expired_sessions(self, now: Optional[float] = None) -> int:
        """
        Remove sessions idle for longer than the expiry window.

        Sessions with a request in flight are skipped even when expired.

        Returns:
            int: Number of sessions removed.
        """
        now = now if now is not None else self._clock()
        expired = [
            session_id for session_id, meta in list(self._metadata.items())
            if now - meta.last_active > self.expiry_s and not self.is_in_flight(session_id)
        ]
        for session_id in expired:
            self.delete_session(session_id)
        if expired:
            SESSIONS_EXPIRED.inc(len(expired))
            logger.info("[ConversationStore] Expired %d sessions", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_message(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        metadata: Optional[MessageMetadata] = None,
        timestamp: Optional[float] = None,
    ) -> ChatMessage:
        """
        Append a message, creating the session on first use.

        User messages update topics and preferences; assistant messages recompute the
        continuity score. The history is truncated to `max_messages`, oldest first.
        """
        now = timestamp if timestamp is not None else self._clock()
        meta = self._ensure_session(session_id)
        message = ChatMessage(role=role, content=content, timestamp=now, metadata=metadata)

        messages = self._messages[session_id]
        messages.append(message)
        if len(messages) > self.max_messages:
            del messages[: len(messages) - self.max_messages]
        meta.message_count = len(messages)
        meta.last_active = max(meta.last_active, now)

        if metadata is not None:
            if role == MessageRole.USER:
                self._record_user_turn(meta, metadata, now)
            elif role == MessageRole.ASSISTANT and metadata.intent is not None:
                self._update_continuity(meta, metadata)
        return message

    def _record_user_turn(self, meta: ConversationMetadata, metadata: MessageMetadata, now: float) -> None:
        if metadata.intent is not None:
            # Evaluate flow before this turn touches the topic map.
            if meta.last_intent is None:
                meta.pending_flow_match = True
            else:
                meta.pending_flow_match = (
                    metadata.intent == meta.last_intent
                    or metadata.intent.value in self._hot_topic_names(meta, now)
                )
            self._record_topic(meta, metadata.intent.value, metadata.confidence, metadata.tokens, now)
        self._update_preferences(meta.user_preferences, metadata, now)

    def _hot_topic_names(self, meta: ConversationMetadata, now: float) -> List[str]:
        return [
            name for name, topic in meta.topics.items()
            if now - topic.last_mentioned <= self.topic_decay_window_s
        ]

    def _record_topic(
        self,
        meta: ConversationMetadata,
        name: str,
        confidence: Optional[float],
        tokens: Iterable[str],
        now: float,
    ) -> None:
        new_confidence = _clamp(confidence if confidence is not None else 0.0)
        topic = meta.topics.get(name)
        if topic is None:
            meta.topics[name] = TopicMetadata(
                name=name,
                frequency=1,
                last_mentioned=now,
                related_tokens=set(tokens),
                confidence=new_confidence,
            )
            return
        w = self.topic_blend_weight
        topic.frequency += 1
        topic.last_mentioned = max(topic.last_mentioned, now)
        topic.related_tokens.update(tokens)
        topic.confidence = _clamp((1 - w) * topic.confidence + w * new_confidence)

    def _update_preferences(self, prefs: UserPreferences, metadata: MessageMetadata, now: float) -> None:
        prefs.favorite_tokens.update(metadata.tokens)
        prefs.interests.update(metadata.contextual_hints)
        if metadata.time_context:
            prefs.preferred_timeframes.add(metadata.time_context)
        level = self._infer_level(metadata)
        if level.rank > prefs.technical_level.rank:
            prefs.technical_level = level
        prefs.last_updated = now

    @staticmethod
    def _infer_level(metadata: MessageMetadata) -> TechnicalLevel:
        hints = set(metadata.contextual_hints)
        if metadata.intent == Intent.TECHNICAL or hints & ADVANCED_HINTS:
            return TechnicalLevel.ADVANCED
        if metadata.intent in (Intent.DEFI, Intent.SECURITY) or hints & INTERMEDIATE_HINTS:
            return TechnicalLevel.INTERMEDIATE
        return TechnicalLevel.BASIC

    def _update_continuity(self, meta: ConversationMetadata, metadata: MessageMetadata) -> None:
        if meta.pending_flow_match is not None:
            followed = meta.pending_flow_match
        else:
            followed = meta.last_intent is None or metadata.intent == meta.last_intent
        turn_score = FLOW_WEIGHT * float(followed) + (1 - FLOW_WEIGHT) * _clamp(metadata.confidence or 0.0)
        w = self.continuity_blend_weight
        meta.continuity_score = _clamp((1 - w) * meta.continuity_score + w * turn_score)
        meta.last_intent = metadata.intent
        meta.pending_flow_match = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_messages(self, session_id: str) -> List[ChatMessage]:
        return list(self._messages.get(session_id, []))

    def get_metadata(self, session_id: str) -> Optional[ConversationMetadata]:
        """Deep copy of the session metadata, or None for unknown sessions."""
        meta = self._metadata.get(session_id)
        return copy.deepcopy(meta) if meta is not None else None

    def get_continuity_score(self, session_id: str) -> float:
        meta = self._metadata.get(session_id)
        return meta.continuity_score if meta is not None else 1.0

    def topic_importance(self, topic: TopicMetadata, now: Optional[float] = None) -> float:
        """frequency x confidence, discounted exponentially by time since last mention."""
        now = now if now is not None else self._clock()
        elapsed = max(0.0, now - topic.last_mentioned)
        return topic.frequency * topic.confidence * math.exp(-elapsed / self.topic_decay_window_s)

    def get_topics(self, session_id: str, now: Optional[float] = None) -> List[TopicMetadata]:
        """Copies of all topics for a session, most important first."""
        meta = self._metadata.get(session_id)
        if meta is None:
            return []
        now = now if now is not None else self._clock()
        topics = [replace(t, related_tokens=set(t.related_tokens)) for t in meta.topics.values()]
        return sorted(topics, key=lambda t: self.topic_importance(t, now), reverse=True)

    def get_favorite_tokens(self, session_id: str, limit: int = 5) -> List[str]:
        meta = self._metadata.get(session_id)
        if meta is None:
            return []
        return [token for token, _ in meta.user_preferences.favorite_tokens.most_common(limit)]

    def get_user_preferences(self, session_id: str) -> PreferenceSnapshot:
        meta = self._metadata.get(session_id)
        prefs = meta.user_preferences if meta is not None else UserPreferences()
        return PreferenceSnapshot(
            favorite_tokens=[token for token, _ in prefs.favorite_tokens.most_common()],
            interests=sorted(prefs.interests),
            technical_level=prefs.technical_level,
            preferred_timeframes=sorted(prefs.preferred_timeframes),
        )

    def get_recent_context(
        self, session_id: str, max_messages: int = 5, now: Optional[float] = None
    ) -> List[ChatMessage]:
        """
        Most recent messages that are still relevant to the conversation.

        A message qualifies if it is recent, if its intent is a tracked topic, or if it mentions
        one of the user's favorite tokens.
        """
        meta = self._metadata.get(session_id)
        if meta is None:
            return []
        now = now if now is not None else self._clock()
        favorites = set(meta.user_preferences.favorite_tokens)

        def relevant(message: ChatMessage) -> bool:
            if now - message.timestamp <= self.recent_context_window_s:
                return True
            md = message.metadata
            if md is None:
                return False
            if md.intent is not None and md.intent.value in meta.topics:
                return True
            return bool(favorites.intersection(md.tokens))

        selected = [m for m in self._messages.get(session_id, []) if relevant(m)]
        return selected[-max_messages:] if max_messages > 0 else []

    def get_conversation_summary(self, session_id: str, now: Optional[float] = None) -> ConversationSummary:
        meta = self._metadata.get(session_id)
        if meta is None:
            return ConversationSummary(
                message_count=0,
                continuity_score=1.0,
                dominant_topics=[],
                user_level=TechnicalLevel.BASIC.value,
                favorite_tokens=[],
            )
        return ConversationSummary(
            message_count=meta.message_count,
            continuity_score=meta.continuity_score,
            dominant_topics=[t.name for t in self.get_topics(session_id, now)[:3]],
            user_level=meta.user_preferences.technical_level.value,
            favorite_tokens=self.get_favorite_tokens(session_id, limit=3),
        )
