from __future__ import annotations

import pytest

from sourcechat.rag.summarizer import EMPTY_SUMMARY, SourceSummarizer, extractive_summary
from sourcechat.tests.fakes import ScriptedBackend, make_sources

pytestmark = pytest.mark.anyio


def test_extractive_summary_takes_first_sentences() -> None:
    text = "First one. Second two! Third three? Fourth four."

    assert extractive_summary(text) == "First one. Second two! Third three?"


def test_extractive_summary_adds_terminal_punctuation() -> None:
    assert extractive_summary("just some words") == "just some words."


def test_extractive_summary_placeholder_for_empty() -> None:
    assert extractive_summary("") == EMPTY_SUMMARY
    assert extractive_summary("   ") == EMPTY_SUMMARY


async def test_call_failure_falls_back_to_extractive() -> None:
    backend = ScriptedBackend(responses=[RuntimeError("503 Service Unavailable")])
    sources = make_sources(2)

    summaries = await SourceSummarizer(backend).summarize(sources)

    assert summaries == {
        "s1": "Body of source 1. It has two sentences.",
        "s2": "Body of source 2. It has two sentences.",
    }


async def test_partial_parse_keeps_valid_summaries() -> None:
    backend = ScriptedBackend(
        responses=[
            '[{"index": 1, "summary": "Model summary of one."},'
            ' {"index": "2", "summary": 5}]'
        ]
    )

    summaries = await SourceSummarizer(backend).summarize(make_sources(2))

    assert summaries["s1"] == "Model summary of one."
    assert summaries["s2"] == "Body of source 2. It has two sentences."


async def test_batch_size_caps_the_model_call() -> None:
    backend = ScriptedBackend(
        responses=['[{"index": 1, "summary": "One."}, {"index": 2, "summary": "Two."}]']
    )
    reported: list[str] = []

    summaries = await SourceSummarizer(
        backend, batch_size=2, on_usage=lambda op, usage: reported.append(op)
    ).summarize(make_sources(3))

    assert summaries == {"s1": "One.", "s2": "Two."}
    prompt = backend.calls[0][1][0]["content"]
    assert "Source title 2" in prompt
    assert "Source title 3" not in prompt
    assert reported == ["summarization"]
