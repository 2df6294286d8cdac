"""
core/__init__.py

Core orchestration modules for the crypto assistant.

This package contains the query pipeline:
- preprocessing / schema / classifier: turn a raw query into a validated Analysis
- aggregator: plan and execute market-data and web-search fetches
- context_builder: derive conversational context from the ConversationStore
- summarizer: produce the final answer text
- orchestrator: sequence the stages with retries and graceful degradation
- errors / retry: the tagged error taxonomy and the backoff helper

These modules handle the high-level flow of a user query through the system.
"""
