from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Settings:
    llm_provider: str = os.getenv("RAG_LLM_PROVIDER", "ollama")
    openai_api_key: str | None = os.getenv("OPENAI_API_KEY")
    openai_base_url: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    openai_chat_model: str | None = os.getenv("OPENAI_CHAT_MODEL")
    gemini_api_key: str | None = os.getenv("GEMINI_API_KEY")
    gemini_chat_model: str | None = os.getenv("GEMINI_CHAT_MODEL")
    ollama_base_url: str = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
    ollama_model: str = os.getenv("OLLAMA_MODEL", "llama3.1:8b")
    llm_temperature: float = float(os.getenv("RAG_LLM_TEMPERATURE", "0.2"))
    llm_max_tokens: int = int(os.getenv("RAG_LLM_MAX_TOKENS", "2048"))
    llm_timeout: float = float(os.getenv("RAG_LLM_TIMEOUT", "60"))
    compression_mode_raw: str = os.getenv("RAG_COMPRESSION_MODE", "two-pass")
    context_mode_raw: str = os.getenv("RAG_CONTEXT_MODE", "classic")
    full_content_cap: int = int(os.getenv("RAG_FULL_CONTENT_CAP", "5"))
    summary_batch_size: int = int(os.getenv("RAG_SUMMARY_BATCH_SIZE", "10"))
    chat_history_turns: int = int(os.getenv("RAG_CHAT_HISTORY_TURNS", "10"))
    retry_max_attempts: int = int(os.getenv("RAG_RETRY_MAX_ATTEMPTS", "3"))
    retry_initial_delay_ms: float = float(os.getenv("RAG_RETRY_INITIAL_DELAY_MS", "1000"))
    retry_max_delay_ms: float = float(os.getenv("RAG_RETRY_MAX_DELAY_MS", "10000"))
    max_tool_steps: int = int(os.getenv("RAG_MAX_TOOL_STEPS", "5"))
    tool_cache_ttl: float = float(os.getenv("RAG_TOOL_CACHE_TTL", "3600"))
    model_cache_ttl: float = float(os.getenv("RAG_MODEL_CACHE_TTL", "3600"))
    usage_db_uri: str | None = os.getenv("RAG_USAGE_DB_URI")
    usage_sink: str = os.getenv("RAG_USAGE_SINK", "memory")
    notebook_model_map_raw: str = os.getenv("RAG_NOTEBOOK_MODEL_MAP", "")
    metrics_enabled: bool = os.getenv("RAG_METRICS_ENABLED", "true").lower() in {"1", "true", "yes"}
    log_level: str = os.getenv("RAG_LOG_LEVEL", "INFO")
    disable_tiktoken: bool = os.getenv("RAG_DISABLE_TIKTOKEN", "false").lower() in {"1", "true", "yes"}
    tokenizer_encoding: str = os.getenv("RAG_TOKENIZER_ENCODING", "cl100k_base")

    @property
    def compression_mode(self) -> str:
        raw = os.getenv("RAG_COMPRESSION_MODE", self.compression_mode_raw).strip().lower()
        return raw if raw in {"two-pass", "single-pass"} else "two-pass"

    @property
    def context_mode(self) -> str:
        raw = os.getenv("RAG_CONTEXT_MODE", self.context_mode_raw).strip().lower()
        return raw if raw in {"classic", "agentic"} else "classic"

    @property
    def notebook_model_map(self) -> dict[str, dict[str, Any]]:
        raw = os.getenv("RAG_NOTEBOOK_MODEL_MAP", self.notebook_model_map_raw).strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        if not isinstance(data, dict):
            return {}
        return {
            key: value
            for key, value in data.items()
            if isinstance(key, str) and isinstance(value, dict)
        }


settings = Settings()
