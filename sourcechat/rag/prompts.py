from __future__ import annotations

"""Prompt templates and chat history reconstruction."""

import json
from typing import Any, Sequence

from sourcechat.rag.citations import CITATIONS_CLOSE, CITATIONS_OPEN
from sourcechat.rag.types import AssistantEvent, ChatEvent, Source, ToolResultEvent, UserEvent


RANKING_SYSTEM_PROMPT = """You are a relevance ranking assistant. Given a user query and a list of sources with previews, rank them by relevance.

Return ONLY a JSON array of objects with this exact structure:
[
  {"index": 1, "score": 0.9, "reason": "Directly addresses the core question"},
  {"index": 2, "score": 0.3, "reason": "Marginally related context"}
]

Where:
- index: The source number (1-based)
- score: Relevance score from 0.0 (not relevant) to 1.0 (highly relevant)
- reason: Brief explanation of the score

Score guidelines:
- 0.9-1.0: Directly answers the question or provides essential information
- 0.7-0.9: Strongly relevant background or supporting information
- 0.5-0.7: Somewhat related context
- 0.3-0.5: Tangentially related
- 0.0-0.3: Not relevant

Be discerning - not all sources deserve high scores."""

SUMMARY_SYSTEM_PROMPT = """You are a precise summarizer. Create 2-3 sentence summaries that capture the main points and key information.

Return ONLY a JSON array of objects:
[
  {"index": 1, "summary": "Two to three sentences capturing the main points..."},
  {"index": 2, "summary": "Two to three sentences..."}
]

Be accurate and concise. Focus on substantive content."""

_CITATION_INSTRUCTIONS = f"""After your main response, add a CITATIONS section in this exact format:
{CITATIONS_OPEN}
[Source 1]: "exact quote or paraphrase from source"
{CITATIONS_CLOSE}

Only include sources you actually referenced. If you didn't cite any sources, omit the citations section."""


def ranking_prompt(query: str, metadata: str) -> str:
    return (
        f'Rank these sources by relevance to the query: "{query}"\n\n'
        f"Sources:\n{metadata}\n\n"
        "Return the JSON ranking."
    )


def summary_prompt(batch_text: str) -> str:
    return f"Summarize these sources:\n\n{batch_text}\n\nReturn the JSON summaries."


def build_source_list(sources: Sequence[Source]) -> str:
    return "\n".join(
        f'  {i}. "{source.title}" (ID: {source.id})' for i, source in enumerate(sources, start=1)
    )


def classic_system_prompt(ordered_sources: Sequence[Source], source_context: str) -> str:
    """System prompt embedding the compressed source context."""
    return f"""You are a helpful AI assistant that answers questions based on the provided sources.

IMPORTANT INSTRUCTIONS:
1. Base your answers ONLY on the provided sources
2. When you use information from a source, cite it using the format [Source N] where N is the numeric index (e.g., [Source 1], [Source 2])
3. Be accurate and well-structured
4. If the sources don't contain relevant information, say so

{_CITATION_INSTRUCTIONS}

Available sources:
{build_source_list(ordered_sources)}

Source contents:

{source_context}"""


def agentic_system_prompt(sources: Sequence[Source], tool_names: Sequence[str]) -> str:
    """System prompt listing sources without bodies and describing the tools."""
    tools = ", ".join(tool_names)
    return f"""You are a helpful AI assistant that answers questions based on the user's sources.

Source contents are NOT included below. Use the available tools ({tools}) to list sources, find the ones relevant to the question, and read them before answering.

IMPORTANT INSTRUCTIONS:
1. Base your answers ONLY on content you have read with the tools
2. When you use information from a source, cite it using the format [Source N] where N is the number of the source in the list below
3. Be accurate and well-structured
4. If the sources don't contain relevant information, say so

{_CITATION_INSTRUCTIONS}

Available sources:
{build_source_list(sources)}"""


def build_chat_history(
    history: Sequence[ChatEvent] | None, max_events: int = 10
) -> list[dict[str, Any]]:
    """Rebuild role-tagged messages from the most recent chat events.

    An assistant turn that used tools expands to an assistant ``tool_calls``
    message, one ``tool`` message per recorded result, then the answer text.
    Results are attached to their owning call regardless of timestamp; calls
    without a recorded result and orphaned results are dropped.
    """
    if not history:
        return []
    events = sorted(history, key=lambda event: event.timestamp)[-max_events:]
    results = {
        event.tool_call_id: event for event in events if isinstance(event, ToolResultEvent)
    }
    messages: list[dict[str, Any]] = []
    for event in events:
        if isinstance(event, UserEvent):
            messages.append({"role": "user", "content": event.content})
        elif isinstance(event, AssistantEvent):
            messages.extend(_assistant_messages(event, results))
    return messages


def _assistant_messages(
    event: AssistantEvent, results: dict[str, ToolResultEvent]
) -> list[dict[str, Any]]:
    answered = [call for call in event.tool_calls if call.tool_call_id in results]
    messages: list[dict[str, Any]] = []
    if answered:
        messages.append(
            {
                "role": "assistant",
                "content": "",
                "tool_calls": [
                    {
                        "id": call.tool_call_id,
                        "type": "function",
                        "function": {
                            "name": call.tool_name,
                            "arguments": json.dumps(call.args),
                        },
                    }
                    for call in answered
                ],
            }
        )
        for call in answered:
            outcome = results[call.tool_call_id]
            payload = {"error": outcome.error} if outcome.error else outcome.result
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": call.tool_call_id,
                    "content": json.dumps(payload, ensure_ascii=False, default=str),
                }
            )
    if event.content or not answered:
        messages.append({"role": "assistant", "content": event.content})
    return messages
