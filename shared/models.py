"""
shared/models.py

Common data models used across the orchestration pipeline.

Conversation records (messages, topics, preferences) are plain dataclasses owned by the
ConversationStore. Provider payloads are pydantic models so that every data source is
normalized into one validated shape before it reaches the summarizer. The classification
result (`Analysis`) lives in `core.schema` next to the validator that produces it.
"""

from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from core.schema import Analysis


class Intent(str, Enum):
    """
    Coarse categories a user query can be classified into.

    The intent drives which data providers are consulted and which follow-up suggestions
    are offered:
    - MARKET_DATA / COMPARISON: live prices and figures for one or more tokens
    - TECHNICAL / CONCEPTUAL: explanations that need no live data
    - DEFI, REGULATORY, NEWS_EVENTS, SECURITY: domain-specific questions
    - HYBRID: live data plus explanation
    - NEEDS_CONTEXT: too ambiguous to answer without clarification
    """
    MARKET_DATA = "MARKET_DATA"
    COMPARISON = "COMPARISON"
    TECHNICAL = "TECHNICAL"
    DEFI = "DEFI"
    REGULATORY = "REGULATORY"
    NEWS_EVENTS = "NEWS_EVENTS"
    SECURITY = "SECURITY"
    CONCEPTUAL = "CONCEPTUAL"
    HYBRID = "HYBRID"
    NEEDS_CONTEXT = "NEEDS_CONTEXT"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TechnicalLevel(str, Enum):
    """Inferred user expertise. Values are ordered; a session only ever moves up."""
    BASIC = "basic"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"

    @property
    def rank(self) -> int:
        return list(TechnicalLevel).index(self)


@dataclass(frozen=True)
class MessageMetadata:
    """
    Classification results copied onto a stored message.

    Denormalized so the store can update topics and preferences without re-running
    classification.
    """
    intent: Optional[Intent] = None
    confidence: Optional[float] = None
    tokens: Tuple[str, ...] = ()
    contextual_hints: Tuple[str, ...] = ()
    time_context: Optional[str] = None
    context_confidence: Optional[float] = None


@dataclass(frozen=True)
class ChatMessage:
    """A single immutable conversation turn."""
    role: MessageRole
    content: str
    timestamp: float
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    metadata: Optional[MessageMetadata] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['role'] = self.role.value
        if self.metadata is not None and self.metadata.intent is not None:
            data['metadata']['intent'] = self.metadata.intent.value
        return data


@dataclass
class TopicMetadata:
    """Running statistics for one intent seen in a session."""
    name: str
    frequency: int
    last_mentioned: float
    related_tokens: Set[str] = field(default_factory=set)
    confidence: float = 0.0


@dataclass
class UserPreferences:
    favorite_tokens: Counter = field(default_factory=Counter)
    preferred_timeframes: Set[str] = field(default_factory=set)
    interests: Set[str] = field(default_factory=set)
    technical_level: TechnicalLevel = TechnicalLevel.BASIC
    last_updated: float = 0.0


@dataclass
class ConversationMetadata:
    """
    Per-session bookkeeping maintained alongside the message list.

    `last_intent` and `pending_flow_match` are scratch fields used to recompute the continuity
    score when the assistant half of a turn is recorded.
    """
    last_active: float
    message_count: int = 0
    topics: Dict[str, TopicMetadata] = field(default_factory=dict)
    user_preferences: UserPreferences = field(default_factory=UserPreferences)
    continuity_score: float = 1.0
    last_intent: Optional[Intent] = None
    pending_flow_match: Optional[bool] = None


@dataclass(frozen=True)
class ConversationSummary:
    message_count: int
    continuity_score: float
    dominant_topics: List[str]
    user_level: str
    favorite_tokens: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'messageCount': self.message_count,
            'continuityScore': round(self.continuity_score, 3),
            'dominantTopics': list(self.dominant_topics),
            'userLevel': self.user_level,
            'favoriteTokens': list(self.favorite_tokens),
        }


@dataclass(frozen=True)
class PreferenceSnapshot:
    """Read-only view of UserPreferences handed to the context builder."""
    favorite_tokens: List[str]
    interests: List[str]
    technical_level: TechnicalLevel
    preferred_timeframes: List[str]


@dataclass(frozen=True)
class EnhancedContext:
    """
    Derived, per-turn view of the conversation used to condition the answer.

    Rebuilt for every query and never stored.
    """
    session_id: str
    recent_messages: List[ChatMessage]
    user_preferences: PreferenceSnapshot
    continuity_score: float
    dominant_topics: List[str]
    message_count: int
    analysis: "Analysis"
    related_topics: List[str]

    @property
    def recent_intents(self) -> List[Intent]:
        return [
            m.metadata.intent for m in self.recent_messages
            if m.metadata is not None and m.metadata.intent is not None
        ]


@dataclass(frozen=True)
class ContinuityJudgment:
    is_coherent: bool
    confidence: float
    suggested_follow_up: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'isCoherent': self.is_coherent,
            'confidence': round(self.confidence, 3),
            'suggestedFollowUp': self.suggested_follow_up,
        }


class TokenDetails(BaseModel):
    """
    Canonical token-detail shape shared by every market-data provider.

    Fields a provider does not report are left as None.
    """
    id: str
    symbol: str
    name: str
    current_price: Optional[float] = None
    market_cap: Optional[float] = None
    market_cap_rank: Optional[int] = None
    total_volume: Optional[float] = None
    high_24h: Optional[float] = None
    low_24h: Optional[float] = None
    price_change_24h: Optional[float] = None
    price_change_percentage_24h: Optional[float] = None
    circulating_supply: Optional[float] = None
    total_supply: Optional[float] = None
    max_supply: Optional[float] = None
    last_updated: Optional[str] = None
    source: str = Field(..., description="Provider that produced this record")


class TokenMatch(BaseModel):
    """Result of a provider search: the provider-side identifier for a token."""
    id: str
    symbol: str
    name: str
    market_cap_rank: Optional[int] = None


class SearchHit(BaseModel):
    title: str
    url: str
    description: str = ""


@dataclass
class OrchestrationResult:
    """Everything returned to the Session API caller for one successful turn."""
    analysis: "Analysis"
    aggregator_data: Optional[Dict[str, Any]]
    response: str
    suggestions: List[str]
    context_analysis: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'analysis': self.analysis.to_payload(),
            'aggregatorData': self.aggregator_data,
            'response': self.response,
            'suggestions': list(self.suggestions),
            'contextAnalysis': self.context_analysis,
        }
