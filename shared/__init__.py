"""
shared/__init__.py

Data models shared across the orchestration layers:
- models: conversation records, enums and normalized provider payloads

Keeping them in one place lets the store, the providers and the API agree on a single shape.
"""
