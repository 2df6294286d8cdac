"""
provider.py – External LLM client. Build a configured OpenAI-compatible async client
----------------------------------------------------------------
In the overall data-flow this file sits at the infrastructure layer.
It is the single place where we talk to the external LLM platform (OpenAI, or Nebius'
OpenAI-compatible endpoint when selected in config.json).

Why a *provider* module?
• Keeps third-party SDK initialisation separate from business logic.
• Offers a small `get_client()` factory that is called once at startup; the client is then
  injected into the classifier and summarizer instead of living in a global.
• `complete_chat()` is the only place that translates SDK exceptions into the tagged
  error taxonomy, so retry decisions upstream never look at exception text.
"""

import logging
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from config import CONFIG, get_api_key
from core.errors import (
    ConfigurationError,
    LLMError,
    NetworkConnectionError,
    RateLimitError,
    RequestTimeoutError,
)
from monitoring.metrics import LLM_REQUEST_TIME

logger = logging.getLogger(__name__)

DEFAULT_BASE_URLS = {
    "openai": None,
    "nebius": "https://api.studio.nebius.ai/v1",
}


def _provider_name(config: Dict[str, Any]) -> str:
    return str(config.get("llm", {}).get("provider", "openai")).strip().lower()


def validate_env_for_provider(config: Optional[Dict[str, Any]] = None) -> str:
    """
    Return the API key for the configured LLM provider or raise if it is missing.

    Args:
        config (dict, optional): Full CONFIG mapping; defaults to the loaded CONFIG.

    Returns:
        str: The non-empty API key.

    Raises:
        ConfigurationError: If the provider is unknown or its key is not set.
    """
    config = config if config is not None else CONFIG
    provider = _provider_name(config)
    if provider not in DEFAULT_BASE_URLS:
        raise ConfigurationError(f"Unsupported llm provider: {provider}")
    api_key = get_api_key(provider)
    if not api_key:
        raise ConfigurationError(f"API key for llm provider '{provider}' is not configured")
    return api_key


def get_client(config: Optional[Dict[str, Any]] = None) -> AsyncOpenAI:
    """
    Build and return a configured async OpenAI client.

    The provider encapsulates all environment and configuration lookups (base URL, API key, and
    timeouts) so that callers do not need to deal with SDK initialization details.

    Returns:
        AsyncOpenAI: A ready-to-use client.

    Raises:
        ConfigurationError: When the LLM API key is missing.
    """
    config = config if config is not None else CONFIG
    llm_cfg = config.get("llm", {})
    api_key = validate_env_for_provider(config)
    base_url = llm_cfg.get("base_url") or DEFAULT_BASE_URLS[_provider_name(config)]
    logger.info("[llm_provider] Building %s client (base_url=%s)", _provider_name(config), base_url or "default")
    return AsyncOpenAI(
        base_url=base_url,
        api_key=api_key,
        timeout=llm_cfg.get("timeout", 30),  # seconds – explicit is better than implicit
        max_retries=0,  # retries are owned by core.retry
    )


async def complete_chat(
    client: AsyncOpenAI,
    model_config: Dict[str, Any],
    messages: List[Dict[str, str]],
) -> str:
    """
    Send a chat completion request and return the trimmed text content.

    Args:
        client (AsyncOpenAI): Injected client.
        model_config (dict): Entry of `CONFIG["llm"]["models"]` with "name" and "settings".
        messages (list): Chat messages in OpenAI format.

    Returns:
        str: Non-empty, stripped message content.

    Raises:
        RateLimitError, RequestTimeoutError, NetworkConnectionError: transient API failures.
        ConfigurationError: The key was rejected by the API.
        LLMError: Any other API error, or an empty response.
    """
    model_name = model_config["name"]
    settings = model_config.get("settings", {})
    try:
        with LLM_REQUEST_TIME.labels(model=model_name).time():
            completion = await client.chat.completions.create(
                model=model_name,
                messages=messages,
                **settings,
            )
    except openai.RateLimitError as e:
        raise RateLimitError(f"LLM rate limit exceeded: {e}", source="llm") from e
    except openai.APITimeoutError as e:
        raise RequestTimeoutError(f"LLM request timed out: {e}") from e
    except openai.APIConnectionError as e:
        raise NetworkConnectionError(f"LLM connection failed: {e}") from e
    except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
        raise ConfigurationError(f"LLM credentials rejected: {e}") from e
    except openai.APIError as e:
        raise LLMError(f"LLM API error: {e}") from e

    if not completion.choices:
        raise LLMError("LLM returned no choices")
    content = completion.choices[0].message.content
    if not content or not content.strip():
        raise LLMError("LLM returned empty content")
    return content.strip()
