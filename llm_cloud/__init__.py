"""Top-level package exports for llm_cloud.

This package holds the LLM infrastructure:
    • provider.py – async client configuration and the tagged chat-completion helper
"""

from .provider import complete_chat, get_client, validate_env_for_provider

__all__ = [
    "complete_chat",
    "get_client",
    "validate_env_for_provider",
]
