from __future__ import annotations

import logging

from sourcechat.metadata.model_cache import ModelListCache, hash_credential
from sourcechat.metadata.usage import (
    InMemoryUsageSink,
    LoggingUsageSink,
    SQLUsageSink,
    UsageRecord,
    safe_record,
)
from sourcechat.tests.fakes import FailingSink


def _record(operation: str = "chat", input_tokens: int = 10, output_tokens: int = 5) -> UsageRecord:
    return UsageRecord(
        model_config_id="cfg-1",
        provider_id="openai",
        model="gpt-test",
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        operation=operation,
    )


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_in_memory_sink_totals_by_operation() -> None:
    sink = InMemoryUsageSink()
    sink.record(_record("chat"))
    sink.record(_record("ranking", 3, 1))
    sink.record(_record("chat", 1, 1))

    assert sink.totals_by_operation() == {"chat": 17, "ranking": 4}


def test_in_memory_sink_keeps_most_recent_records() -> None:
    sink = InMemoryUsageSink(max_records=2)
    for tokens in (1, 2, 3):
        sink.record(_record(input_tokens=tokens))

    assert [item.input_tokens for item in sink.records] == [2, 3]


def test_sql_sink_persists_records(tmp_path) -> None:
    sink = SQLUsageSink(f"sqlite:///{tmp_path / 'usage.db'}")
    sink.record(_record("summarization", 20, 10))
    sink.record(_record("chat", 5, 5))

    assert sink.totals_by_operation() == {"chat": 10, "summarization": 30}


def test_safe_record_logs_sink_failures(caplog) -> None:
    with caplog.at_level(logging.WARNING):
        safe_record(FailingSink(), _record())

    assert any(record.getMessage() == "usage_record_failed" for record in caplog.records)


def test_safe_record_ignores_missing_sink() -> None:
    safe_record(None, _record())


def test_hash_credential_is_short_and_stable() -> None:
    assert hash_credential(None) == "anonymous"
    assert hash_credential("sk-one") == hash_credential("sk-one")
    assert hash_credential("sk-one") != hash_credential("sk-two")
    assert len(hash_credential("sk-one")) == 16
    assert "sk-one" not in hash_credential("sk-one")


def test_model_cache_expires_after_ttl() -> None:
    clock = _Clock()
    cache = ModelListCache(ttl_seconds=60, clock=clock)
    cache.set("openai", "sk-one", ["gpt-a", "gpt-b"])

    assert cache.get("openai", "sk-one") == ["gpt-a", "gpt-b"]
    assert cache.get("openai", "sk-two") is None

    clock.now = 61
    assert cache.get("openai", "sk-one") is None


def test_model_cache_invalidate_scopes() -> None:
    cache = ModelListCache()
    cache.set("openai", "sk-one", ["a"])
    cache.set("openai", "sk-two", ["b"])
    cache.set("ollama", None, ["llama"])

    cache.invalidate("openai", "sk-one")
    assert cache.get("openai", "sk-one") is None
    assert cache.get("openai", "sk-two") == ["b"]

    cache.invalidate("openai")
    assert cache.get("openai", "sk-two") is None
    assert cache.get("ollama", None) == ["llama"]

    cache.invalidate()
    assert cache.get("ollama", None) is None


def test_logging_sink_emits_structured_record(caplog) -> None:
    with caplog.at_level(logging.INFO):
        LoggingUsageSink().record(_record("ranking", 3, 1))

    entry = next(record for record in caplog.records if record.getMessage() == "usage_recorded")
    assert entry.operation == "ranking"
    assert entry.input_tokens == 3
