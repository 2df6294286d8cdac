"""
core/classifier.py

Intent classification for the query pipeline.

The classifier turns a raw user query into a validated `Analysis`: it runs deterministic
preprocessing, sends the sanitized query to the LLM with the classification system prompt,
parses the JSON answer and validates it against the Analysis schema. The LLM client is injected
so the classifier holds no hidden global state and tests can pass a fake client.
"""

import json
import logging
from typing import Any, Dict, Optional

from openai import AsyncOpenAI

from core.errors import ErrorKind, LLMError, ValidationError
from core.preprocessing import extract_metadata, preprocess_query
from core.retry import RetryPolicy, retry_with_backoff
from core.schema import Analysis, Err, OriginalContext, SchemaValidator
from llm_cloud.provider import complete_chat
from monitoring.metrics import track_errors

logger = logging.getLogger(__name__)

# Only rate limits are retried at this level; the orchestrator wraps the whole call again.
DEFAULT_RETRY_POLICY = RetryPolicy(
    max_attempts=3,
    base_delay_s=1.0,
    factor=2.0,
    retry_on=frozenset({ErrorKind.RATE_LIMIT}),
)


class IntentClassifier:
    """
    Classifier that produces an `Analysis` for each user query.

    Responsibilities:
    - Reject empty input with `PreprocessingError` before any network call
    - Call the classification model with a strict-JSON request
    - Surface `LLMError` for empty or unparsable output and `ValidationError` for schema mismatches
    - Retry rate-limited LLM calls with exponential backoff
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI],
        model_config: Dict[str, Any],
        system_prompt: str,
        validator: Optional[SchemaValidator] = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    ):
        """
        Args:
            client (AsyncOpenAI): Injected LLM client built once at startup.
            model_config (dict): The "classification" entry of CONFIG["llm"]["models"].
            system_prompt (str): Fixed classification instruction.
            validator (SchemaValidator, optional): Schema validator; a default one is created if omitted.
            retry_policy (RetryPolicy): Backoff policy for rate-limited calls.
        """
        self.client = client
        self.model_config = model_config
        self.system_prompt = system_prompt
        self.validator = validator or SchemaValidator()
        self.retry_policy = retry_policy
        logger.info("[IntentClassifier] Initialized with model %s", model_config.get("name"))

    @track_errors('classification', 'intent_classifier')
    async def classify(self, raw_query: str) -> Analysis:
        """
        Classify a raw query into an `Analysis`.

        Args:
            raw_query (str): Text exactly as typed by the user.

        Returns:
            Analysis: Frozen, validated classification result.

        Raises:
            PreprocessingError: Empty or unsanitizable input.
            LLMError: Empty output or malformed JSON.
            ValidationError: JSON that does not match the schema.
            RateLimitError: When rate limits persist past the retry budget.
        """
        steps = preprocess_query(raw_query)
        metadata = extract_metadata(raw_query, steps)
        sanitized = steps[-1].output
        logger.debug(
            "[IntentClassifier] Preprocessed query: tokens=%s hints=%s",
            list(metadata.tokens), list(metadata.contextual_hints),
        )

        messages = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": sanitized},
        ]
        content = await retry_with_backoff(
            lambda: complete_chat(self.client, self.model_config, messages),
            self.retry_policy,
            label="classification_llm",
        )

        outcome = self.validator.validate(self._parse_json(content))
        if isinstance(outcome, Err):
            logger.warning(
                "[IntentClassifier] Classification rejected: %s at %s (%s)",
                outcome.kind.value, outcome.field, outcome.detail,
            )
            raise ValidationError(
                f"Classification failed schema validation at {outcome.field}: {outcome.detail}",
                error_kind=outcome.kind,
                field=outcome.field,
            )

        payload = outcome.value
        analysis = Analysis(
            original_context=OriginalContext(
                raw_query=raw_query,
                timestamp=metadata.timestamp,
                preprocessing_steps=tuple(steps),
                metadata=metadata,
            ),
            classification=payload.classification,
            query_analysis=payload.query_analysis,
            data_requirements=payload.data_requirements,
        )
        logger.info(
            "[IntentClassifier] Classified as %s (confidence=%.2f, tokens=%s)",
            analysis.intent.value, analysis.confidence, list(analysis.detected_tokens),
        )
        return analysis

    @staticmethod
    def _parse_json(content: str) -> Any:
        text = content.strip()
        # Some models wrap JSON in a markdown fence even when asked not to.
        if text.startswith("```"):
            text = text.strip("`")
            if text.lower().startswith("json"):
                text = text[4:]
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise LLMError(f"Classification output is not valid JSON: {e}") from e
