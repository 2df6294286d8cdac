"""
services/__init__.py

Long-lived, process-local services:
- conversation_store: session-keyed conversation memory
- session_scheduler: periodic expiry sweep driven by APScheduler
- token_cache: short TTL cache for normalized token details
"""
