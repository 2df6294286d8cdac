"""
Monitoring package initializer.

This package exposes Prometheus metrics and an error-counting decorator for tracking query processing,
external API latency and session activity.
"""

from .metrics import (
    QUERY_COUNT,
    QUERY_LATENCY,
    STAGE_LATENCY,
    ERROR_COUNT,
    RETRY_COUNT,
    LLM_REQUEST_TIME,
    PROVIDER_REQUEST_TIME,
    PROVIDER_FALLBACKS,
    ACTIVE_SESSIONS,
    SESSIONS_EXPIRED,
    TOKEN_CACHE_EVENTS,
    track_errors,
)

__all__ = [
    'QUERY_COUNT',
    'QUERY_LATENCY',
    'STAGE_LATENCY',
    'ERROR_COUNT',
    'RETRY_COUNT',
    'LLM_REQUEST_TIME',
    'PROVIDER_REQUEST_TIME',
    'PROVIDER_FALLBACKS',
    'ACTIVE_SESSIONS',
    'SESSIONS_EXPIRED',
    'TOKEN_CACHE_EVENTS',
    'track_errors',
]
