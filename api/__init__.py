"""
api/__init__.py

HTTP routers exposing the Session API (session creation, query processing, summaries).
"""
