"""
Core metrics and the error-tracking decorator for the crypto assistant.

This module defines Prometheus metrics and a decorator for tracking:
- Query outcomes and end-to-end latency
- Per-stage latency of the orchestration state machine
- Error and retry counts
- External API latency (LLM, market-data providers, web search)
- Session and token-cache activity
"""

import asyncio
import functools
import logging
from typing import Callable
from prometheus_client import Counter, Gauge, Histogram

logger = logging.getLogger(__name__)

# Query metrics
QUERY_COUNT = Counter(
    'assistant_queries_total',
    'Total number of processed queries',
    ['outcome']  # success, recovered, error
)

QUERY_LATENCY = Histogram(
    'assistant_query_duration_seconds',
    'End-to-end query processing time in seconds',
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, float("inf")]
)

STAGE_LATENCY = Histogram(
    'assistant_stage_duration_seconds',
    'Time spent in each orchestration stage',
    ['stage'],
    buckets=[0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, float("inf")]
)

# Error metrics
ERROR_COUNT = Counter(
    'error_total',
    'Total number of errors',
    ['type', 'location']  # type: error kind; location: component
)

RETRY_COUNT = Counter(
    'retry_attempts_total',
    'Retries scheduled after a transient failure',
    ['operation', 'kind']
)

# External API metrics
LLM_REQUEST_TIME = Histogram(
    'llm_request_duration_seconds',
    'Time spent waiting for LLM API',
    ['model'],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, float("inf")]
)

PROVIDER_REQUEST_TIME = Histogram(
    'provider_request_duration_seconds',
    'Time spent waiting for market-data and web-search providers',
    ['provider', 'endpoint'],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, float("inf")]
)

PROVIDER_FALLBACKS = Counter(
    'provider_fallback_total',
    'Times a provider failed or was skipped and the next one in the chain was tried',
    ['provider']
)

# Session and cache metrics
ACTIVE_SESSIONS = Gauge(
    'active_sessions',
    'Sessions currently held by the conversation store'
)

SESSIONS_EXPIRED = Counter(
    'sessions_expired_total',
    'Sessions removed by the expiry sweep'
)

TOKEN_CACHE_EVENTS = Counter(
    'token_cache_events_total',
    'Token cache lookups',
    ['event']  # hit, miss
)


def track_errors(error_type: str, location: str) -> Callable:
    """
    A decorator factory that counts exceptions raised by a function and re-raises them.

    Args:
        error_type (str): Type of error (e.g., 'llm', 'provider', 'pipeline')
        location (str): Where the error occurred

    Returns:
        Callable: The decorated function

    Example:
        @track_errors('llm', 'classifier')
        async def classify(self, raw_query: str):
            ...
    """
    def _record(e: Exception) -> None:
        ERROR_COUNT.labels(type=error_type, location=location).inc()
        logger.error(
            f"Error in {location} ({error_type}): {str(e)}",
            extra={'extra_fields': {'error_type': error_type, 'location': location, 'error': str(e)}}
        )

    def decorator(func: Callable) -> Callable:
        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    _record(e)
                    raise
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                _record(e)
                raise
        return wrapper
    return decorator
