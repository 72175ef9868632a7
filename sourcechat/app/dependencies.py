from __future__ import annotations

from functools import lru_cache

from sourcechat.agents.tools import ToolResultCache
from sourcechat.app.metrics import record_model_call
from sourcechat.app.settings import settings
from sourcechat.metadata.model_cache import ModelListCache
from sourcechat.metadata.usage import InMemoryUsageSink, LoggingUsageSink, SQLUsageSink, UsageSink
from sourcechat.rag.config import SettingsConfigResolver
from sourcechat.rag.orchestrator import ChatOrchestrator


@lru_cache
def get_orchestrator() -> ChatOrchestrator:
    return ChatOrchestrator(
        config_resolver=get_config_resolver(),
        settings=settings,
        usage_sink=get_usage_sink(),
        tool_cache=get_tool_cache(),
        on_model_call=record_model_call,
    )


def reset_orchestrator_cache() -> None:
    get_orchestrator.cache_clear()
    get_config_resolver.cache_clear()
    get_usage_sink.cache_clear()


@lru_cache
def get_config_resolver() -> SettingsConfigResolver:
    return SettingsConfigResolver(settings)


@lru_cache
def get_usage_sink() -> UsageSink:
    if settings.usage_db_uri:
        return SQLUsageSink(settings.usage_db_uri)
    if settings.usage_sink.strip().lower() == "log":
        return LoggingUsageSink()
    return InMemoryUsageSink()


@lru_cache
def get_tool_cache() -> ToolResultCache:
    return ToolResultCache(ttl_seconds=settings.tool_cache_ttl)


@lru_cache
def get_model_cache() -> ModelListCache:
    return ModelListCache(ttl_seconds=settings.model_cache_ttl)
