"""
Test-session setup shared by every test module.

Environment variables must be in place before anything under `config` is imported: the LLM key
is checked when a query starts, and an empty LOG_FILE_PATH keeps the test run from writing a
rotating log file into the working tree.
"""

import os
import sys
from pathlib import Path

# Ensure the project root and this directory are on sys.path so `from core...` and
# `from helpers import ...` work regardless of where pytest is started.
TESTS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = TESTS_DIR.parent
for path in (PROJECT_ROOT, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ["LOG_FILE_PATH"] = ""
os.environ.setdefault("LOG_LEVEL", "WARNING")
