from __future__ import annotations

"""Chat turn orchestration for classic and agentic modes."""

from dataclasses import dataclass
from enum import Enum
import asyncio
import logging
import time
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Sequence

from sourcechat.agents.tools import SourceToolProvider, ToolResultCache
from sourcechat.app.settings import Settings, settings as default_settings
from sourcechat.metadata.usage import UsageRecord, UsageSink, safe_record
from sourcechat.rag.citations import CitationStreamMasker, reconcile_citations
from sourcechat.rag.compressor import PASSTHROUGH_LIMIT, ContextCompressor
from sourcechat.rag.config import ConfigResolver, ResolvedModelConfig, build_backend
from sourcechat.rag.errors import (
    ChatError,
    ConfigurationError,
    RetryPolicy,
    classify_error,
    with_retry,
)
from sourcechat.rag.llm import (
    ModelBackend,
    TextDelta,
    TokenUsage,
    ToolCallDelta,
    ToolResultDelta,
    ToolSet,
    UsageDelta,
)
from sourcechat.rag.prompts import agentic_system_prompt, build_chat_history, classic_system_prompt
from sourcechat.rag.ranker import RelevanceRanker
from sourcechat.rag.summarizer import SourceSummarizer
from sourcechat.rag.types import (
    ChatEvent,
    ChatResult,
    CompleteEvent,
    ContextMode,
    Source,
    StreamEvent,
    TextEvent,
    ToolCall,
    ToolCallEvent,
    ToolResultStreamEvent,
    UsageOperation,
)


logger = logging.getLogger(__name__)

NOT_CONFIGURED_MESSAGE = "No AI model configured. Please configure a model in settings."

_PROVIDERS_WITHOUT_TOOLS = {"gemini"}

BackendFactory = Callable[[ResolvedModelConfig, Settings], ModelBackend]
ModelCallHook = Callable[[str, str], None]


class TurnState(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    GENERATING = "generating"
    RECONCILING = "reconciling"
    DONE = "done"
    FAILED = "failed"


_STATUS_MESSAGES = {
    TurnState.PREPARING: "Preparing sources...",
    TurnState.GENERATING: "Generating answer...",
    TurnState.RECONCILING: "Processing citations...",
    TurnState.DONE: "Done",
    TurnState.FAILED: "Failed",
}


@dataclass(frozen=True)
class ChatOptions:
    """Per-turn options; ``context_mode`` None defers to the resolved config."""
    tools: ToolSet | None = None
    context_mode: ContextMode | None = None
    on_status: Callable[[str], None] | None = None
    notebook_id: str | None = None


@dataclass(frozen=True)
class _PreparedTurn:
    turn_id: str
    config: ResolvedModelConfig
    backend: ModelBackend
    system_prompt: str
    messages: list[dict[str, Any]]
    citation_sources: list[Source]
    tools: ToolSet | None


class ChatOrchestrator:
    """Compose compression, generation and citation reconciliation into one turn."""

    def __init__(
        self,
        config_resolver: ConfigResolver,
        settings: Settings = default_settings,
        usage_sink: UsageSink | None = None,
        backend_factory: BackendFactory = build_backend,
        tool_cache: ToolResultCache | None = None,
        on_model_call: ModelCallHook | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._resolver = config_resolver
        self._settings = settings
        self._usage_sink = usage_sink
        self._backend_factory = backend_factory
        self._tool_cache = tool_cache
        self._on_model_call = on_model_call
        self._sleep = sleep

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max(1, self._settings.retry_max_attempts),
            initial_delay_ms=self._settings.retry_initial_delay_ms,
            max_delay_ms=self._settings.retry_max_delay_ms,
        )

    async def chat(
        self,
        sources: Sequence[Source],
        question: str,
        history: Sequence[ChatEvent] | None = None,
        options: ChatOptions | None = None,
    ) -> ChatResult:
        """Run one non-streaming turn, retrying recoverable generation failures."""
        opts = options or ChatOptions()
        turn_id = uuid.uuid4().hex[:12]
        self._transition(turn_id, TurnState.PREPARING, opts)
        try:
            turn = await self._prepare(turn_id, sources, question, history, opts)
            self._transition(turn_id, TurnState.GENERATING, opts)
            if turn.tools is None:
                text, tool_calls = await self._generate(turn), []
            else:
                text, tool_calls = await with_retry(
                    lambda: self._collect_stream(turn), self.retry_policy(), sleep=self._sleep
                )
            self._transition(turn_id, TurnState.RECONCILING, opts)
            reconciled = reconcile_citations(text, turn.citation_sources)
        except Exception as exc:
            raise self._fail(turn_id, exc, opts) from exc
        self._transition(turn_id, TurnState.DONE, opts)
        return ChatResult(
            content=reconciled.clean_content,
            citations=reconciled.citations,
            tool_calls=tool_calls,
        )

    async def stream_chat(
        self,
        sources: Sequence[Source],
        question: str,
        history: Sequence[ChatEvent] | None = None,
        options: ChatOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one turn as events, ending with a ``CompleteEvent``.

        Streaming is never retried. A failure after output has been delivered
        ends the turn with the partial answer and ``error`` set; a failure
        before any output raises ``ChatError``.
        """
        opts = options or ChatOptions()
        turn_id = uuid.uuid4().hex[:12]
        self._transition(turn_id, TurnState.PREPARING, opts)
        try:
            turn = await self._prepare(turn_id, sources, question, history, opts)
        except Exception as exc:
            raise self._fail(turn_id, exc, opts) from exc

        self._transition(turn_id, TurnState.GENERATING, opts)
        masker = CitationStreamMasker()
        tool_calls: list[ToolCall] = []
        usage: TokenUsage | None = None
        error = None
        try:
            async for delta in turn.backend.stream_generate(
                turn.system_prompt, turn.messages, turn.tools
            ):
                if isinstance(delta, TextDelta):
                    visible = masker.feed(delta.text)
                    if visible:
                        yield TextEvent(content=visible)
                elif isinstance(delta, ToolCallDelta):
                    tool_calls.append(_tool_call(delta))
                    yield ToolCallEvent(
                        tool_call_id=delta.tool_call_id, tool_name=delta.tool_name, args=delta.args
                    )
                elif isinstance(delta, ToolResultDelta):
                    yield ToolResultStreamEvent(
                        tool_call_id=delta.tool_call_id,
                        tool_name=delta.tool_name,
                        result=delta.result,
                        error=delta.error,
                    )
                elif isinstance(delta, UsageDelta):
                    usage = delta.usage
        except Exception as exc:
            if not masker.text and not tool_calls:
                raise self._fail(turn_id, exc, opts) from exc
            error = classify_error(exc)
            self._model_call("chat", "error")
            logger.error(
                "chat_stream_interrupted",
                extra={
                    "turn_id": turn_id,
                    "category": error.category,
                    "delivered_chars": masker.emitted,
                },
            )

        if error is None:
            tail = masker.flush()
            if tail:
                yield TextEvent(content=tail)
            if usage is not None:
                self._report_usage(turn.config, "chat", usage)

        # An interrupted turn keeps only what the caller actually received.
        final_text = masker.text if error is None else masker.text[: masker.emitted]
        self._transition(turn_id, TurnState.RECONCILING, opts)
        reconciled = reconcile_citations(final_text, turn.citation_sources)
        self._transition(turn_id, TurnState.FAILED if error else TurnState.DONE, opts)
        yield CompleteEvent(
            result=ChatResult(
                content=reconciled.clean_content,
                citations=reconciled.citations,
                tool_calls=tool_calls,
                error=error,
            )
        )

    async def _prepare(
        self,
        turn_id: str,
        sources: Sequence[Source],
        question: str,
        history: Sequence[ChatEvent] | None,
        opts: ChatOptions,
    ) -> _PreparedTurn:
        config = self._resolver.resolve(opts.notebook_id)
        if config is None:
            raise ConfigurationError(NOT_CONFIGURED_MESSAGE)
        mode = opts.context_mode or config.context_mode
        if mode == "agentic" and config.provider_type in _PROVIDERS_WITHOUT_TOOLS:
            raise ConfigurationError(
                f"Agentic mode is not supported for the {config.provider_type} provider. "
                "Please configure classic mode or another provider."
            )
        backend = self._backend_factory(config, self._settings)
        on_usage = self._usage_callback(config)
        messages = build_chat_history(history, self._settings.chat_history_turns)
        messages.append({"role": "user", "content": question})

        if mode == "agentic":
            tools = opts.tools or SourceToolProvider(
                sources=list(sources),
                ranker=RelevanceRanker(backend, on_usage=on_usage),
                cache=self._tool_cache,
            )
            tool_names = [spec["function"]["name"] for spec in tools.tool_specs()]
            return _PreparedTurn(
                turn_id=turn_id,
                config=config,
                backend=backend,
                system_prompt=agentic_system_prompt(sources, tool_names),
                messages=messages,
                citation_sources=list(sources),
                tools=tools,
            )

        if len(sources) > PASSTHROUGH_LIMIT and config.compression_mode == "two-pass":
            self._status(opts, "Ranking sources...")
        compressor = ContextCompressor(
            ranker=RelevanceRanker(backend, on_usage=on_usage),
            summarizer=SourceSummarizer(
                backend,
                batch_size=self._settings.summary_batch_size,
                on_usage=on_usage,
            ),
            full_content_cap=self._settings.full_content_cap,
        )
        context = await compressor.compress(
            sources,
            question,
            "single-pass" if config.compression_mode == "single-pass" else "two-pass",
        )
        return _PreparedTurn(
            turn_id=turn_id,
            config=config,
            backend=backend,
            system_prompt=classic_system_prompt(context.ordered_sources, context.text),
            messages=messages,
            citation_sources=context.ordered_sources,
            tools=None,
        )

    async def _generate(self, turn: _PreparedTurn) -> str:
        result = await with_retry(
            lambda: turn.backend.generate(turn.system_prompt, turn.messages),
            self.retry_policy(),
            sleep=self._sleep,
        )
        self._report_usage(turn.config, "chat", result.usage)
        return result.text

    async def _collect_stream(self, turn: _PreparedTurn) -> tuple[str, list[ToolCall]]:
        """Drain a tool-enabled stream into text and the tool calls it made."""
        parts: list[str] = []
        tool_calls: list[ToolCall] = []
        usage: TokenUsage | None = None
        async for delta in turn.backend.stream_generate(
            turn.system_prompt, turn.messages, turn.tools
        ):
            if isinstance(delta, TextDelta):
                parts.append(delta.text)
            elif isinstance(delta, ToolCallDelta):
                tool_calls.append(_tool_call(delta))
            elif isinstance(delta, UsageDelta):
                usage = delta.usage
        if usage is not None:
            self._report_usage(turn.config, "chat", usage)
        return "".join(parts), tool_calls

    def _usage_callback(
        self, config: ResolvedModelConfig
    ) -> Callable[[UsageOperation, TokenUsage], None]:
        def _record(operation: UsageOperation, usage: TokenUsage) -> None:
            self._report_usage(config, operation, usage)

        return _record

    def _report_usage(
        self, config: ResolvedModelConfig, operation: UsageOperation, usage: TokenUsage
    ) -> None:
        self._model_call(operation, "success")
        safe_record(
            self._usage_sink,
            UsageRecord(
                model_config_id=config.model_config_id,
                provider_id=config.provider_type,
                model=config.model_id,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                operation=operation,
            ),
        )

    def _model_call(self, operation: str, outcome: str) -> None:
        if self._on_model_call is not None:
            self._on_model_call(operation, outcome)

    def _fail(self, turn_id: str, exc: Exception, opts: ChatOptions) -> ChatError:
        classified = classify_error(exc)
        if not isinstance(exc, ConfigurationError):
            self._model_call("chat", "error")
        logger.error(
            "chat_failed",
            extra={
                "turn_id": turn_id,
                "category": classified.category,
                "recoverable": classified.recoverable,
            },
        )
        self._transition(turn_id, TurnState.FAILED, opts)
        return ChatError(classified)

    def _transition(self, turn_id: str, state: TurnState, opts: ChatOptions) -> None:
        logger.info("chat_turn_state", extra={"turn_id": turn_id, "state": state.value})
        self._status(opts, _STATUS_MESSAGES[state])

    @staticmethod
    def _status(opts: ChatOptions, message: str) -> None:
        if opts.on_status is not None:
            opts.on_status(message)


def _tool_call(delta: ToolCallDelta) -> ToolCall:
    return ToolCall(
        tool_call_id=delta.tool_call_id,
        tool_name=delta.tool_name,
        args=delta.args,
        timestamp=time.time(),
    )
