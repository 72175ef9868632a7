from __future__ import annotations

"""Model backends for generation and streaming, plus JSON parsing helpers."""

from dataclasses import dataclass, field
import asyncio
import json
import logging
import re
from typing import Any, AsyncIterator, Protocol, Union

import httpx


class LLMError(RuntimeError):
    """Raised when LLM requests fail or responses are invalid."""
    pass


logger = logging.getLogger(__name__)

_JSON_ARRAY_RE = re.compile(r"\[.*\]", flags=re.DOTALL)
_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass(frozen=True)
class GenerationResult:
    """Completed single-shot generation."""
    text: str
    usage: TokenUsage


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallDelta:
    tool_call_id: str
    tool_name: str
    args: dict[str, Any]


@dataclass(frozen=True)
class ToolResultDelta:
    tool_call_id: str
    tool_name: str
    result: Any
    error: str | None = None


@dataclass(frozen=True)
class UsageDelta:
    usage: TokenUsage


StreamDelta = Union[TextDelta, ToolCallDelta, ToolResultDelta, UsageDelta]


class ToolSet(Protocol):
    """Callable tools offered to the model in agentic mode."""

    def tool_specs(self) -> list[dict[str, Any]]:
        """Return OpenAI-style function specs for every tool."""
        ...

    async def call(self, name: str, args: dict[str, Any]) -> Any:
        """Validate ``args`` and execute the named tool."""
        ...


class ModelBackend(Protocol):
    """Transport that runs a language model."""

    async def generate(
        self, system_prompt: str, messages: list[dict[str, Any]]
    ) -> GenerationResult:
        ...

    def stream_generate(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: ToolSet | None = None,
    ) -> AsyncIterator[StreamDelta]:
        ...


def strip_code_fence(text: str) -> str:
    """Remove an optional surrounding markdown code fence."""
    return _CODE_FENCE_RE.sub("", text.strip())


def parse_json_array(content: str) -> list[Any]:
    """Parse a JSON array from model output, tolerating code fences and chatter."""
    text = strip_code_fence(content)
    try:
        data = json.loads(text)
        if isinstance(data, list):
            return data
    except json.JSONDecodeError:
        pass
    match = _JSON_ARRAY_RE.search(text)
    if match:
        try:
            data = json.loads(match.group(0))
            if isinstance(data, list):
                return data
        except json.JSONDecodeError:
            pass
    raise LLMError("LLM response is not valid JSON")


def estimate_tokens(text: str, encoding_name: str = "cl100k_base", disabled: bool = False) -> int:
    """Estimate token count when a provider does not report usage."""
    if not text:
        return 0
    if disabled:
        return max(1, len(text) // 4)
    import tiktoken

    try:
        encoding = tiktoken.get_encoding(encoding_name)
    except Exception:  # pragma: no cover - fall back to default encoding
        encoding = tiktoken.get_encoding("cl100k_base")
    return len(encoding.encode(text))


def _prompt_text(system_prompt: str, messages: list[dict[str, Any]]) -> str:
    parts = [system_prompt]
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            parts.append(content)
    return "\n".join(parts)


def _tool_result_content(result: Any, error: str | None) -> str:
    if error is not None:
        return json.dumps({"error": error})
    return json.dumps(result, ensure_ascii=False, default=str)


async def _run_tool(tools: ToolSet, name: str, args: dict[str, Any]) -> tuple[Any, str | None]:
    """Execute a tool, returning (result, error) so the model can see failures."""
    try:
        return await tools.call(name, args), None
    except Exception as exc:
        logger.warning("tool_call_failed", extra={"tool": name, "detail": type(exc).__name__})
        return None, str(exc)


@dataclass(frozen=True)
class OpenAICompatibleBackend:
    """Backend for OpenAI-compatible chat completions APIs."""
    api_key: str
    base_url: str
    model: str
    temperature: float
    max_tokens: int
    timeout: float
    max_tool_steps: int = 5
    tokenizer_encoding: str = "cl100k_base"
    disable_tiktoken: bool = False
    transport: httpx.AsyncBaseTransport | None = field(default=None, compare=False)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def _payload(self, system_prompt: str, messages: list[dict[str, Any]]) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    async def generate(
        self, system_prompt: str, messages: list[dict[str, Any]]
    ) -> GenerationResult:
        """Run a single non-streaming chat completion."""
        payload = self._payload(system_prompt, messages)
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            raise LLMError(f"{exc.response.status_code} {exc.response.text[:200]}") from exc
        except httpx.HTTPError as exc:
            raise LLMError(f"Network error: {exc}") from exc

        choices = data.get("choices") or []
        if not choices:
            raise LLMError("Invalid OpenAI response")
        message = choices[0].get("message") or {}
        content = message.get("content")
        if not isinstance(content, str):
            raise LLMError("Invalid OpenAI response content")
        usage = data.get("usage") or {}
        return GenerationResult(
            text=content,
            usage=TokenUsage(
                input_tokens=int(usage.get("prompt_tokens") or 0),
                output_tokens=int(usage.get("completion_tokens") or 0),
            ),
        )

    async def stream_generate(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: ToolSet | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Stream a chat completion, running tool calls between steps."""
        conversation = list(messages)
        total = TokenUsage()
        reported = False
        produced = ""
        for _step in range(max(1, self.max_tool_steps)):
            payload = self._payload(system_prompt, conversation)
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
            if tools is not None:
                payload["tools"] = tools.tool_specs()
            pending: dict[int, dict[str, Any]] = {}
            step_text = ""
            try:
                async with self._client() as client:
                    async with client.stream(
                        "POST",
                        f"{self.base_url}/chat/completions",
                        json=payload,
                        headers=self._headers(),
                    ) as response:
                        if response.status_code >= 400:
                            body = (await response.aread()).decode("utf-8", "replace")
                            raise LLMError(f"{response.status_code} {body[:200]}")
                        async for line in response.aiter_lines():
                            if not line.startswith("data:"):
                                continue
                            data_text = line[len("data:"):].strip()
                            if data_text == "[DONE]":
                                break
                            try:
                                chunk = json.loads(data_text)
                            except json.JSONDecodeError as exc:
                                raise LLMError("Invalid streaming chunk") from exc
                            usage = chunk.get("usage")
                            if usage:
                                reported = True
                                total = total + TokenUsage(
                                    input_tokens=int(usage.get("prompt_tokens") or 0),
                                    output_tokens=int(usage.get("completion_tokens") or 0),
                                )
                            for choice in chunk.get("choices") or []:
                                delta = choice.get("delta") or {}
                                text = delta.get("content")
                                if isinstance(text, str) and text:
                                    step_text += text
                                    yield TextDelta(text)
                                for call in delta.get("tool_calls") or []:
                                    slot = pending.setdefault(
                                        int(call.get("index", 0)),
                                        {"id": "", "name": "", "arguments": ""},
                                    )
                                    function = call.get("function") or {}
                                    slot["id"] = call.get("id") or slot["id"]
                                    slot["name"] = function.get("name") or slot["name"]
                                    slot["arguments"] += function.get("arguments") or ""
            except httpx.HTTPError as exc:
                raise LLMError(f"Network error: {exc}") from exc
            produced += step_text

            if not pending or tools is None:
                break
            calls = [pending[index] for index in sorted(pending)]
            conversation.append(
                {
                    "role": "assistant",
                    "content": step_text or None,
                    "tool_calls": [
                        {
                            "id": call["id"],
                            "type": "function",
                            "function": {"name": call["name"], "arguments": call["arguments"] or "{}"},
                        }
                        for call in calls
                    ],
                }
            )
            for call in calls:
                try:
                    args = json.loads(call["arguments"] or "{}")
                except json.JSONDecodeError:
                    args = {}
                yield ToolCallDelta(tool_call_id=call["id"], tool_name=call["name"], args=args)
                result, error = await _run_tool(tools, call["name"], args)
                yield ToolResultDelta(
                    tool_call_id=call["id"], tool_name=call["name"], result=result, error=error
                )
                conversation.append(
                    {
                        "role": "tool",
                        "tool_call_id": call["id"],
                        "content": _tool_result_content(result, error),
                    }
                )

        if not reported:
            total = TokenUsage(
                input_tokens=estimate_tokens(
                    _prompt_text(system_prompt, messages),
                    self.tokenizer_encoding,
                    self.disable_tiktoken,
                ),
                output_tokens=estimate_tokens(produced, self.tokenizer_encoding, self.disable_tiktoken),
            )
        yield UsageDelta(total)

    async def list_models(self) -> list[str]:
        """List model ids exposed by the provider."""
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/models", headers=self._headers())
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            raise LLMError(str(exc)) from exc
        return sorted(
            str(item.get("id")) for item in data.get("data") or [] if item.get("id")
        )


@dataclass(frozen=True)
class OllamaBackend:
    """Backend for the Ollama chat API."""
    base_url: str
    model: str
    temperature: float
    max_tokens: int
    timeout: float
    max_tool_steps: int = 5
    transport: httpx.AsyncBaseTransport | None = field(default=None, compare=False)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def _payload(
        self, system_prompt: str, messages: list[dict[str, Any]], stream: bool
    ) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                *[_to_ollama_message(message) for message in messages],
            ],
            "stream": stream,
            "options": {
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
            },
        }

    async def generate(
        self, system_prompt: str, messages: list[dict[str, Any]]
    ) -> GenerationResult:
        """Run a single non-streaming chat request."""
        payload = self._payload(system_prompt, messages, stream=False)
        try:
            async with self._client() as client:
                response = await client.post(f"{self.base_url}/api/chat", json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            raise LLMError(f"{exc.response.status_code} {exc.response.text[:200]}") from exc
        except httpx.HTTPError as exc:
            raise LLMError(f"Network error: {exc}") from exc

        message = data.get("message") or {}
        content = message.get("content")
        if not isinstance(content, str):
            raise LLMError("Invalid LLM response")
        return GenerationResult(
            text=content,
            usage=TokenUsage(
                input_tokens=int(data.get("prompt_eval_count") or 0),
                output_tokens=int(data.get("eval_count") or 0),
            ),
        )

    async def stream_generate(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: ToolSet | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Stream NDJSON chat chunks, running tool calls between steps."""
        conversation = list(messages)
        total = TokenUsage()
        for step in range(max(1, self.max_tool_steps)):
            payload = self._payload(system_prompt, conversation, stream=True)
            if tools is not None:
                payload["tools"] = tools.tool_specs()
            calls: list[dict[str, Any]] = []
            step_text = ""
            try:
                async with self._client() as client:
                    async with client.stream(
                        "POST", f"{self.base_url}/api/chat", json=payload
                    ) as response:
                        if response.status_code >= 400:
                            body = (await response.aread()).decode("utf-8", "replace")
                            raise LLMError(f"{response.status_code} {body[:200]}")
                        async for line in response.aiter_lines():
                            if not line.strip():
                                continue
                            try:
                                chunk = json.loads(line)
                            except json.JSONDecodeError as exc:
                                raise LLMError("Invalid streaming chunk") from exc
                            if chunk.get("error"):
                                raise LLMError(str(chunk["error"]))
                            message = chunk.get("message") or {}
                            text = message.get("content")
                            if isinstance(text, str) and text:
                                step_text += text
                                yield TextDelta(text)
                            calls.extend(message.get("tool_calls") or [])
                            if chunk.get("done"):
                                total = total + TokenUsage(
                                    input_tokens=int(chunk.get("prompt_eval_count") or 0),
                                    output_tokens=int(chunk.get("eval_count") or 0),
                                )
            except httpx.HTTPError as exc:
                raise LLMError(f"Network error: {exc}") from exc

            if not calls or tools is None:
                break
            conversation.append({"role": "assistant", "content": step_text, "tool_calls": []})
            for position, call in enumerate(calls):
                function = call.get("function") or {}
                name = str(function.get("name") or "")
                args = function.get("arguments") or {}
                if isinstance(args, str):
                    try:
                        args = json.loads(args)
                    except json.JSONDecodeError:
                        args = {}
                call_id = str(call.get("id") or f"call_{step}_{position}")
                conversation[-1]["tool_calls"].append(
                    {"id": call_id, "type": "function", "function": {"name": name, "arguments": args}}
                )
                yield ToolCallDelta(tool_call_id=call_id, tool_name=name, args=args)
                result, error = await _run_tool(tools, name, args)
                yield ToolResultDelta(tool_call_id=call_id, tool_name=name, result=result, error=error)
                conversation.append(
                    {"role": "tool", "tool_call_id": call_id, "content": _tool_result_content(result, error)}
                )
        yield UsageDelta(total)

    async def list_models(self) -> list[str]:
        """List locally available Ollama models."""
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/api/tags")
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            raise LLMError(str(exc)) from exc
        return sorted(str(item.get("name")) for item in data.get("models") or [] if item.get("name"))


def _to_ollama_message(message: dict[str, Any]) -> dict[str, Any]:
    """Convert an OpenAI-style message to Ollama's shape (dict tool arguments)."""
    converted = {"role": message.get("role", "user"), "content": message.get("content") or ""}
    tool_calls = message.get("tool_calls")
    if tool_calls:
        normalized = []
        for call in tool_calls:
            function = dict(call.get("function") or {})
            arguments = function.get("arguments")
            if isinstance(arguments, str):
                try:
                    function["arguments"] = json.loads(arguments or "{}")
                except json.JSONDecodeError:
                    function["arguments"] = {}
            normalized.append({"function": function})
        converted["tool_calls"] = normalized
    return converted


@dataclass(frozen=True)
class GeminiBackend:
    """Backend for Gemini generative models (no tool support)."""
    api_key: str
    model: str
    temperature: float
    max_tokens: int
    timeout: float

    def _model(self, system_prompt: str):
        try:
            import google.generativeai as genai
        except ImportError as exc:
            raise LLMError("google-generativeai is required for GeminiBackend") from exc
        genai.configure(api_key=self.api_key)
        return genai.GenerativeModel(self.model, system_instruction=system_prompt)

    def _generation_config(self) -> dict[str, Any]:
        return {
            "temperature": self.temperature,
            "max_output_tokens": self.max_tokens,
        }

    async def generate(
        self, system_prompt: str, messages: list[dict[str, Any]]
    ) -> GenerationResult:
        """Generate a completion using Gemini."""
        contents = _to_gemini_contents(messages)

        def _run() -> GenerationResult:
            model = self._model(system_prompt)
            response = model.generate_content(contents, generation_config=self._generation_config())
            return GenerationResult(text=getattr(response, "text", "") or "", usage=_gemini_usage(response))

        try:
            return await asyncio.wait_for(asyncio.to_thread(_run), timeout=self.timeout)
        except LLMError:
            raise
        except Exception as exc:
            raise LLMError(str(exc)) from exc

    async def stream_generate(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: ToolSet | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Stream a Gemini completion chunk by chunk."""
        if tools is not None:
            raise LLMError("Tool use is not supported for the Gemini provider")
        contents = _to_gemini_contents(messages)

        def _start():
            model = self._model(system_prompt)
            return model.generate_content(
                contents, generation_config=self._generation_config(), stream=True
            )

        try:
            response = await asyncio.wait_for(asyncio.to_thread(_start), timeout=self.timeout)
            iterator = iter(response)
            while True:
                chunk = await asyncio.wait_for(
                    asyncio.to_thread(next, iterator, None), timeout=self.timeout
                )
                if chunk is None:
                    break
                text = getattr(chunk, "text", "") or ""
                if text:
                    yield TextDelta(text)
        except LLMError:
            raise
        except Exception as exc:
            raise LLMError(str(exc)) from exc
        yield UsageDelta(_gemini_usage(response))


def _to_gemini_contents(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    contents: list[dict[str, Any]] = []
    for message in messages:
        content = message.get("content")
        if not isinstance(content, str) or not content:
            continue
        role = "model" if message.get("role") == "assistant" else "user"
        contents.append({"role": role, "parts": [content]})
    return contents


def _gemini_usage(response: Any) -> TokenUsage:
    metadata = getattr(response, "usage_metadata", None)
    if metadata is None:
        return TokenUsage()
    return TokenUsage(
        input_tokens=int(getattr(metadata, "prompt_token_count", 0) or 0),
        output_tokens=int(getattr(metadata, "candidates_token_count", 0) or 0),
    )
