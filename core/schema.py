"""
Analysis schema and the SchemaValidator.

The classification LLM must answer with a JSON object of exactly three sections:
`classification`, `queryAnalysis` and `dataRequirements`. These pydantic models describe that
contract with camelCase aliases, `extra="forbid"` (unknown fields are a validation failure) and
`frozen=True` (an Analysis is never mutated after creation). Enum-like strings are normalized
before validation, and token lists are deduplicated after the five-entry cap is enforced.

`SchemaValidator.validate` never raises: it returns `Ok(payload)` or `Err(kind, field, detail)`,
and the classifier decides how to surface an `Err`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from core.errors import ValidationErrorKind
from shared.models import Intent

MAX_TOKENS = 5


class _Strict(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)


def _dedupe(values: Tuple[str, ...]) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(values))


def _upper(value: Any) -> Any:
    return value.strip().upper() if isinstance(value, str) else value


class Classification(_Strict):
    primary_intent: Intent = Field(..., alias="primaryIntent")
    confidence: float = Field(..., ge=0.0, le=1.0)
    needs_api_call: bool = Field(..., alias="needsApiCall")
    ambiguity_level: str = Field(..., alias="ambiguityLevel", pattern=r"^(LOW|MEDIUM|HIGH)$")
    requires_web_search: bool = Field(..., alias="requiresWebSearch")

    @field_validator("primary_intent", "ambiguity_level", mode="before")
    @classmethod
    def _normalize_upper(cls, value: Any) -> Any:
        return _upper(value)


class ComparisonRequest(_Strict):
    is_comparison: bool = Field(..., alias="isComparison")
    tokens: Tuple[str, ...] = Field(..., max_length=MAX_TOKENS)
    aspects: Tuple[str, ...]
    primary_metric: Optional[str] = Field(..., alias="primaryMetric")

    @field_validator("tokens")
    @classmethod
    def _dedupe_tokens(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        return _dedupe(value)


class WebSearchContext(_Strict):
    needed: bool
    reason: Optional[str]
    suggested_queries: Tuple[str, ...] = Field(..., alias="suggestedQueries")


class QueryAnalysis(_Strict):
    sanitized_query: str = Field(..., alias="sanitizedQuery", min_length=1)
    detected_tokens: Tuple[str, ...] = Field(..., alias="detectedTokens", max_length=MAX_TOKENS)
    comparison_request: ComparisonRequest = Field(..., alias="comparisonRequest")
    detected_intents: Tuple[Intent, ...] = Field(..., alias="detectedIntents")
    time_context: Optional[str] = Field(..., alias="timeContext", pattern=r"^(current|24h|7d|30d)$")
    market_indicators: Tuple[str, ...] = Field(..., alias="marketIndicators")
    conceptual_indicators: Tuple[str, ...] = Field(..., alias="conceptualIndicators")
    web_search_context: WebSearchContext = Field(..., alias="webSearchContext")

    @field_validator("detected_tokens")
    @classmethod
    def _normalize_tokens(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        return _dedupe(tuple(token.strip().lower() for token in value if token.strip()))

    @field_validator("detected_intents", mode="before")
    @classmethod
    def _normalize_intents(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [_upper(item) for item in value]
        return value

    @field_validator("time_context", mode="before")
    @classmethod
    def _normalize_time_context(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class MarketDataRequirement(_Strict):
    needed: bool
    types: Tuple[str, ...]
    timeframe: Optional[str]
    token_count: int = Field(..., alias="tokenCount", ge=0, le=MAX_TOKENS)


class ConceptualDataRequirement(_Strict):
    needed: bool
    aspects: Tuple[str, ...]


class DataRequirements(_Strict):
    market_data: MarketDataRequirement = Field(..., alias="marketData")
    conceptual_data: ConceptualDataRequirement = Field(..., alias="conceptualData")


class ClassificationPayload(_Strict):
    """The exact object the classification LLM must return."""
    classification: Classification
    query_analysis: QueryAnalysis = Field(..., alias="queryAnalysis")
    data_requirements: DataRequirements = Field(..., alias="dataRequirements")


class PreprocessingStep(_Strict):
    operation: str
    input: str
    output: str


class QueryMetadata(_Strict):
    tokens: Tuple[str, ...] = Field(default=(), max_length=MAX_TOKENS)
    timestamp: float
    contextual_hints: Tuple[str, ...] = Field(default=(), alias="contextualHints")


class OriginalContext(_Strict):
    raw_query: str = Field(..., alias="rawQuery")
    timestamp: float
    preprocessing_steps: Tuple[PreprocessingStep, ...] = Field(..., alias="preprocessingSteps")
    metadata: QueryMetadata


class Analysis(_Strict):
    """
    Validated classification result for one query.

    Produced fresh per query by the IntentClassifier and passed by value through the pipeline.
    """
    original_context: OriginalContext = Field(..., alias="originalContext")
    classification: Classification
    query_analysis: QueryAnalysis = Field(..., alias="queryAnalysis")
    data_requirements: DataRequirements = Field(..., alias="dataRequirements")

    @property
    def intent(self) -> Intent:
        return self.classification.primary_intent

    @property
    def confidence(self) -> float:
        return self.classification.confidence

    @property
    def detected_tokens(self) -> Tuple[str, ...]:
        return self.query_analysis.detected_tokens

    def to_payload(self) -> Dict[str, Any]:
        """JSON-ready dict using the camelCase wire names."""
        return self.model_dump(by_alias=True, mode="json")


@dataclass(frozen=True)
class Ok:
    value: ClassificationPayload


@dataclass(frozen=True)
class Err:
    kind: ValidationErrorKind
    field: Optional[str]
    detail: str


ValidationOutcome = Union[Ok, Err]

_ERROR_TYPE_KINDS = {
    "missing": ValidationErrorKind.MISSING_FIELD,
    "extra_forbidden": ValidationErrorKind.UNKNOWN_FIELD,
    "enum": ValidationErrorKind.INVALID_ENUM,
    "string_pattern_mismatch": ValidationErrorKind.INVALID_ENUM,
    "greater_than_equal": ValidationErrorKind.OUT_OF_RANGE,
    "less_than_equal": ValidationErrorKind.OUT_OF_RANGE,
    "too_short": ValidationErrorKind.OUT_OF_RANGE,
    "string_too_short": ValidationErrorKind.OUT_OF_RANGE,
}

_TOKEN_FIELDS = ("detectedTokens", "tokens", "tokenCount")


class SchemaValidator:
    """Validates raw classification payloads into `ClassificationPayload` records."""

    def validate(self, payload: Any) -> ValidationOutcome:
        if not isinstance(payload, dict):
            return Err(ValidationErrorKind.NOT_AN_OBJECT, None, f"expected a JSON object, got {type(payload).__name__}")
        try:
            return Ok(ClassificationPayload.model_validate(payload))
        except PydanticValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(part) for part in first.get("loc", ()))
            return Err(self._kind_for(first), field or None, first.get("msg", "invalid value"))

    @staticmethod
    def _kind_for(error: Dict[str, Any]) -> ValidationErrorKind:
        error_type = error.get("type", "")
        loc: List[Any] = list(error.get("loc", ()))
        if error_type == "too_long" or (
            error_type == "less_than_equal" and loc and loc[-1] in _TOKEN_FIELDS
        ):
            if any(part in _TOKEN_FIELDS for part in loc):
                return ValidationErrorKind.TOO_MANY_TOKENS
        return _ERROR_TYPE_KINDS.get(error_type, ValidationErrorKind.INVALID_TYPE)
