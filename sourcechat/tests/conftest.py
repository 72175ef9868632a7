from __future__ import annotations

"""Shared pytest fixtures and test environment defaults."""

import os
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ["RAG_LLM_PROVIDER"] = "openai"
os.environ["OPENAI_CHAT_MODEL"] = "gpt-test"
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("RAG_USAGE_DB_URI", None)
os.environ.pop("RAG_NOTEBOOK_MODEL_MAP", None)
os.environ.setdefault("RAG_DISABLE_TIKTOKEN", "true")
os.environ.setdefault("RAG_METRICS_ENABLED", "true")
os.environ.setdefault("RAG_RETRY_INITIAL_DELAY_MS", "1")
os.environ.setdefault("RAG_RETRY_MAX_DELAY_MS", "4")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
