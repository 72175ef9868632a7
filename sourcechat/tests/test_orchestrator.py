from __future__ import annotations

"""Tests for classic and agentic chat turns, streaming and failure handling."""

import json

import pytest

from sourcechat.app.settings import Settings
from sourcechat.metadata.usage import InMemoryUsageSink
from sourcechat.rag.config import build_backend
from sourcechat.rag.errors import ChatError
from sourcechat.rag.orchestrator import ChatOptions, ChatOrchestrator
from sourcechat.rag.types import (
    AssistantEvent,
    CompleteEvent,
    TextEvent,
    ToolCall,
    ToolCallEvent,
    ToolResultEvent,
    ToolResultStreamEvent,
    UserEvent,
)
from sourcechat.tests.fakes import (
    FailingSink,
    ScriptedBackend,
    StaticResolver,
    make_config,
    make_sources,
    no_sleep,
)

pytestmark = pytest.mark.anyio

ANSWER_WITH_BLOCK = (
    "Tea is grown in hills [Source 1]. It is picked by hand [Source 2]. "
    "Harvests happen twice a year [Source 1].\n\n"
    "---CITATIONS---\n"
    '[Source 1]: "grown on hillsides"\n'
    '[Source 2]: "picked by hand"\n'
    "---END CITATIONS---"
)


def _settings(**overrides) -> Settings:
    values = {"retry_max_attempts": 3, "retry_initial_delay_ms": 1, "retry_max_delay_ms": 4}
    values.update(overrides)
    return Settings(**values)


def _orchestrator(
    backend: ScriptedBackend,
    usage_sink=None,
    config=None,
    **settings_overrides,
) -> ChatOrchestrator:
    return ChatOrchestrator(
        config_resolver=StaticResolver(config or make_config()),
        settings=_settings(**settings_overrides),
        usage_sink=usage_sink,
        backend_factory=lambda config, settings: backend,
        sleep=no_sleep,
    )


async def _collect(stream) -> list:
    return [event async for event in stream]


async def test_classic_answer_without_markers_is_returned_verbatim() -> None:
    backend = ScriptedBackend(responses=["The sources do not say."])

    result = await _orchestrator(backend).chat(make_sources(3), "What about pricing?")

    assert result.content == "The sources do not say."
    assert result.citations == []
    assert result.error is None


async def test_classic_chat_reconciles_citations() -> None:
    backend = ScriptedBackend(responses=[ANSWER_WITH_BLOCK])

    result = await _orchestrator(backend).chat(make_sources(2), "How is tea grown?")

    assert "[Source 1a]" in result.content
    assert "[Source 1b]" in result.content
    assert "[Source 2]" in result.content
    assert "---CITATIONS---" not in result.content
    assert [c.source_id for c in result.citations] == ["s1", "s1", "s2"]
    system_prompt, messages = backend.calls[0]
    assert "Body of source 1." in system_prompt
    assert messages[-1] == {"role": "user", "content": "How is tea grown?"}


async def test_citations_follow_render_order_after_ranking() -> None:
    ranking = json.dumps(
        [{"index": 6, "score": 0.95}] + [{"index": i, "score": 0.3} for i in range(1, 6)]
    )
    backend = ScriptedBackend(responses=[ranking, "Only the last source helps [Source 1]."])
    usage = InMemoryUsageSink()

    result = await _orchestrator(backend, usage_sink=usage).chat(make_sources(6), "question")

    assert [c.source_id for c in result.citations] == ["s6"]
    assert [record.operation for record in usage.records] == ["ranking", "chat"]
    assert '1. "Source title 6" (ID: s6)' in backend.calls[-1][0]


async def test_chat_retries_recoverable_failures() -> None:
    backend = ScriptedBackend(responses=[RuntimeError("429 rate limit"), "Recovered answer."])

    result = await _orchestrator(backend).chat(make_sources(1), "question")

    assert result.content == "Recovered answer."
    assert len(backend.calls) == 2


async def test_chat_does_not_retry_auth_failures() -> None:
    backend = ScriptedBackend(responses=[RuntimeError("401 Unauthorized"), "never used"])

    with pytest.raises(ChatError) as excinfo:
        await _orchestrator(backend).chat(make_sources(1), "question")

    assert excinfo.value.classified.category == "auth"
    assert len(backend.calls) == 1


async def test_missing_credential_is_a_configuration_error() -> None:
    orchestrator = ChatOrchestrator(
        config_resolver=StaticResolver(make_config(credential=None)),
        settings=_settings(),
        backend_factory=build_backend,
        sleep=no_sleep,
    )

    with pytest.raises(ChatError) as excinfo:
        await orchestrator.chat(make_sources(1), "question")

    assert excinfo.value.classified.category == "config"
    assert excinfo.value.classified.recoverable is False


async def test_unconfigured_model_fails_stream_immediately() -> None:
    orchestrator = ChatOrchestrator(
        config_resolver=StaticResolver(None),
        settings=_settings(),
        sleep=no_sleep,
    )

    with pytest.raises(ChatError) as excinfo:
        await _collect(orchestrator.stream_chat(make_sources(1), "question"))

    assert excinfo.value.classified.category == "config"


async def test_stream_masks_citation_block_and_completes() -> None:
    chunks = [ANSWER_WITH_BLOCK[i : i + 7] for i in range(0, len(ANSWER_WITH_BLOCK), 7)]
    backend = ScriptedBackend(stream_chunks=chunks)
    usage = InMemoryUsageSink()

    events = await _collect(
        _orchestrator(backend, usage_sink=usage).stream_chat(make_sources(2), "How is tea grown?")
    )

    streamed = "".join(event.content for event in events if isinstance(event, TextEvent))
    assert "---" not in streamed
    assert "grown on hillsides" not in streamed
    assert isinstance(events[-1], CompleteEvent)
    result = events[-1].result
    assert result.error is None
    assert "---CITATIONS---" not in result.content
    assert [c.excerpt for c in result.citations] == [
        "grown on hillsides",
        "Reference b from this source",
        "picked by hand",
    ]
    assert [record.operation for record in usage.records] == ["chat"]


async def test_stream_failure_after_text_keeps_partial_answer() -> None:
    backend = ScriptedBackend(
        stream_chunks=["Partial answer ", "[Source 1]"],
        stream_error=RuntimeError("Connection reset by peer"),
    )
    usage = InMemoryUsageSink()

    events = await _collect(
        _orchestrator(backend, usage_sink=usage).stream_chat(make_sources(1), "question")
    )

    complete = events[-1]
    assert isinstance(complete, CompleteEvent)
    assert complete.result.content == "Partial answer [Source 1]"
    assert complete.result.error is not None
    assert complete.result.error.category == "network"
    assert [c.source_id for c in complete.result.citations] == ["s1"]
    assert usage.records == []
    assert len(backend.stream_calls) == 1


async def test_stream_failure_before_text_raises() -> None:
    backend = ScriptedBackend(stream_error=RuntimeError("429 Too Many Requests"))

    with pytest.raises(ChatError) as excinfo:
        await _collect(_orchestrator(backend).stream_chat(make_sources(1), "question"))

    assert excinfo.value.classified.category == "rate_limit"
    assert len(backend.stream_calls) == 1


async def test_usage_sink_failure_does_not_fail_turn() -> None:
    backend = ScriptedBackend(responses=["Fine."])

    result = await _orchestrator(backend, usage_sink=FailingSink()).chat(
        make_sources(1), "question"
    )

    assert result.content == "Fine."


async def test_agentic_stream_forwards_tool_events() -> None:
    backend = ScriptedBackend(
        tool_calls=[("call_1", "read_source", {"source_id": "s2"})],
        stream_chunks=["Source two says so [Source 2]."],
    )
    sources = make_sources(3)

    events = await _collect(
        _orchestrator(backend).stream_chat(
            sources, "question", options=ChatOptions(context_mode="agentic")
        )
    )

    assert isinstance(events[0], ToolCallEvent)
    assert events[0].tool_name == "read_source"
    assert isinstance(events[1], ToolResultStreamEvent)
    assert events[1].result["content"] == sources[1].content
    assert isinstance(events[2], TextEvent)
    result = events[-1].result
    assert [c.source_id for c in result.citations] == ["s2"]
    assert [call.tool_call_id for call in result.tool_calls] == ["call_1"]
    system_prompt, _, tools = backend.stream_calls[0]
    assert tools is not None
    assert "Body of source 1." not in system_prompt
    assert "read_source" in system_prompt


async def test_agentic_chat_collects_stream() -> None:
    backend = ScriptedBackend(
        tool_calls=[("call_1", "list_sources", {})],
        stream_chunks=["Three sources exist [Source 3]."],
    )

    result = await _orchestrator(backend, context_mode_raw="agentic").chat(
        make_sources(3), "question", options=ChatOptions(context_mode="agentic")
    )

    assert result.content == "Three sources exist [Source 3]."
    assert [c.source_id for c in result.citations] == ["s3"]
    assert result.tool_calls[0].tool_name == "list_sources"


async def test_history_is_sent_before_question() -> None:
    backend = ScriptedBackend(responses=["Answer."])
    history = [
        UserEvent(id="u1", notebook_id="nb", timestamp=1.0, content="Earlier question"),
        ToolResultEvent(
            id="t1",
            notebook_id="nb",
            timestamp=1.5,
            tool_call_id="call_9",
            tool_name="list_sources",
            result={"total_count": 1},
        ),
        AssistantEvent(
            id="a1",
            notebook_id="nb",
            timestamp=2.0,
            content="Earlier answer",
            tool_calls=(ToolCall("call_9", "list_sources", {}, 1.2),),
        ),
    ]

    await _orchestrator(backend).chat(make_sources(1), "Follow up", history=history)

    messages = backend.calls[0][1]
    assert [message["role"] for message in messages] == [
        "user",
        "assistant",
        "tool",
        "assistant",
        "user",
    ]
    assert messages[1]["tool_calls"][0]["id"] == "call_9"
    assert messages[2]["tool_call_id"] == "call_9"
    assert messages[3]["content"] == "Earlier answer"
    assert messages[-1]["content"] == "Follow up"


async def test_status_callback_reports_progress() -> None:
    backend = ScriptedBackend(responses=["Answer."])
    statuses: list[str] = []

    await _orchestrator(backend).chat(
        make_sources(1), "question", options=ChatOptions(on_status=statuses.append)
    )

    assert statuses == [
        "Preparing sources...",
        "Generating answer...",
        "Processing citations...",
        "Done",
    ]


async def test_interrupted_stream_records_only_delivered_text() -> None:
    backend = ScriptedBackend(
        stream_chunks=["Answer here ---CIT"],
        stream_error=RuntimeError("Connection reset"),
    )

    events = await _collect(_orchestrator(backend).stream_chat(make_sources(1), "question"))

    delivered = "".join(event.content for event in events if isinstance(event, TextEvent))
    complete = events[-1]
    assert isinstance(complete, CompleteEvent)
    assert delivered == "Answer here "
    assert complete.result.content == "Answer here "
    assert "---CIT" not in complete.result.content
    assert complete.result.error.category == "network"


async def test_agentic_mode_without_tool_support_is_configuration_error() -> None:
    backend = ScriptedBackend(stream_chunks=["never streamed"])
    orchestrator = _orchestrator(
        backend, config=make_config(provider_type="gemini", context_mode="agentic")
    )

    with pytest.raises(ChatError) as excinfo:
        await orchestrator.chat(make_sources(2), "question")

    assert excinfo.value.classified.category == "config"
    assert excinfo.value.classified.recoverable is False
    assert backend.stream_calls == []
    assert backend.calls == []
