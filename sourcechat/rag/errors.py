from __future__ import annotations

"""Error classification and retry helpers for model calls."""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from sourcechat.rag.types import ClassifiedError


logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConfigurationError(RuntimeError):
    """Raised when no usable model configuration or credential is available."""
    pass


class ChatError(RuntimeError):
    """Raised when a chat turn fails; carries the classified error."""

    def __init__(self, classified: ClassifiedError) -> None:
        super().__init__(classified.technical_message)
        self.classified = classified


@dataclass(frozen=True)
class _ErrorPattern:
    patterns: tuple[re.Pattern[str], ...]
    category: str
    user_message: str
    recoverable: bool
    suggested_action: str


# First match wins.
_ERROR_PATTERNS: tuple[_ErrorPattern, ...] = (
    _ErrorPattern(
        patterns=(
            re.compile(r"api.?key", re.IGNORECASE),
            re.compile(r"authentication", re.IGNORECASE),
            re.compile(r"unauthorized", re.IGNORECASE),
            re.compile(r"401"),
            re.compile(r"invalid.*key", re.IGNORECASE),
            re.compile(r"invalid.*token", re.IGNORECASE),
        ),
        category="auth",
        user_message="API key is invalid or missing",
        recoverable=False,
        suggested_action="Check your API key in Settings",
    ),
    _ErrorPattern(
        patterns=(
            re.compile(r"rate.?limit", re.IGNORECASE),
            re.compile(r"too.?many.?requests", re.IGNORECASE),
            re.compile(r"429"),
            re.compile(r"quota", re.IGNORECASE),
            re.compile(r"exceeded", re.IGNORECASE),
        ),
        category="rate_limit",
        user_message="Too many requests. Please wait a moment.",
        recoverable=True,
        suggested_action="Wait a few seconds and try again",
    ),
    _ErrorPattern(
        patterns=(
            re.compile(r"network", re.IGNORECASE),
            re.compile(r"connection", re.IGNORECASE),
            re.compile(r"offline", re.IGNORECASE),
            re.compile(r"enotfound", re.IGNORECASE),
            re.compile(r"etimedout", re.IGNORECASE),
            re.compile(r"fetch.*failed", re.IGNORECASE),
            re.compile(r"network.*error", re.IGNORECASE),
            # httpx timeouts read "timed out" with no other network keyword.
            re.compile(r"timed? ?out", re.IGNORECASE),
        ),
        category="network",
        user_message="Connection error. Check your internet.",
        recoverable=True,
        suggested_action="Check your internet connection and try again",
    ),
    _ErrorPattern(
        patterns=(
            re.compile(r"model.*not.*found", re.IGNORECASE),
            re.compile(r"model.*not.*available", re.IGNORECASE),
            re.compile(r"invalid.*model", re.IGNORECASE),
            re.compile(r"unknown.*model", re.IGNORECASE),
        ),
        category="model",
        user_message="The selected AI model is not available",
        recoverable=False,
        suggested_action="Try a different model in Settings",
    ),
    _ErrorPattern(
        patterns=(
            re.compile(r"context.*length", re.IGNORECASE),
            re.compile(r"too.*long", re.IGNORECASE),
            re.compile(r"maximum.*token", re.IGNORECASE),
            re.compile(r"content.*large", re.IGNORECASE),
            re.compile(r"payload.*large", re.IGNORECASE),
        ),
        category="content",
        user_message="Content is too long for the AI model",
        recoverable=False,
        suggested_action="Try removing some sources or using shorter content",
    ),
    _ErrorPattern(
        patterns=(
            re.compile(r"no.*model.*configured", re.IGNORECASE),
            re.compile(r"no.*ai.*configured", re.IGNORECASE),
            re.compile(r"please.*configure", re.IGNORECASE),
            re.compile(r"not.*configured", re.IGNORECASE),
        ),
        category="config",
        user_message="AI is not configured",
        recoverable=False,
        suggested_action="Add an AI profile in Settings",
    ),
)

_STATUS_RE = re.compile(r"\b([45]\d{2})\b")


def classify_error(error: BaseException | str) -> ClassifiedError:
    """Classify an error and attach user-friendly guidance."""
    if isinstance(error, ChatError):
        return error.classified
    technical_message = str(error)
    if isinstance(error, ConfigurationError):
        return ClassifiedError(
            category="config",
            user_message="AI is not configured",
            technical_message=technical_message,
            recoverable=False,
            suggested_action="Add an AI profile in Settings",
        )

    for group in _ERROR_PATTERNS:
        if any(pattern.search(technical_message) for pattern in group.patterns):
            return ClassifiedError(
                category=group.category,
                user_message=group.user_message,
                technical_message=technical_message,
                recoverable=group.recoverable,
                suggested_action=group.suggested_action,
            )

    status = _status_code(error, technical_message)
    if status in {401, 403}:
        return ClassifiedError(
            category="auth",
            user_message="Authentication failed",
            technical_message=technical_message,
            recoverable=False,
            suggested_action="Check your API key in Settings",
        )
    if status == 429:
        return ClassifiedError(
            category="rate_limit",
            user_message="Rate limited. Please wait.",
            technical_message=technical_message,
            recoverable=True,
            suggested_action="Wait a moment and try again",
        )
    if status is not None and status >= 500:
        return ClassifiedError(
            category="network",
            user_message="Server error. Try again later.",
            technical_message=technical_message,
            recoverable=True,
            suggested_action="Wait a moment and try again",
        )

    return ClassifiedError(
        category="unknown",
        user_message="An unexpected error occurred",
        technical_message=technical_message,
        recoverable=True,
        suggested_action="Please try again",
    )


def _status_code(error: BaseException | str, message: str) -> int | None:
    """Return an HTTP status from the exception chain or message, if any."""
    current: BaseException | None = error if isinstance(error, BaseException) else None
    while current is not None:
        if isinstance(current, httpx.HTTPStatusError):
            return current.response.status_code
        current = current.__cause__
    match = _STATUS_RE.search(message)
    if match:
        return int(match.group(1))
    return None


def format_error_for_user(error: BaseException | str) -> str:
    """Render an error as a category message plus suggested action."""
    classified = classify_error(error)
    message = classified.user_message
    if classified.suggested_action:
        message = f"{message.rstrip('.')}. {classified.suggested_action}."
    return message


def is_recoverable_error(error: BaseException | str) -> bool:
    return classify_error(error).recoverable


def _default_should_retry(error: BaseException, attempt: int) -> bool:
    return classify_error(error).recoverable


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff policy for retrying model calls."""
    max_attempts: int = 3
    initial_delay_ms: float = 1000
    max_delay_ms: float = 10000
    backoff_multiplier: float = 2.0
    should_retry: Callable[[BaseException, int], bool] = _default_should_retry
    on_retry: Callable[[BaseException, int, float], None] | None = None

    def delay_for(self, attempt: int) -> float:
        """Delay in milliseconds before the retry following ``attempt``."""
        delay = self.initial_delay_ms * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_ms)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Await ``fn`` and retry recoverable failures with exponential backoff.

    ``sleep`` receives seconds and is injectable so callers and tests can
    observe the backoff schedule without waiting.
    """
    opts = policy or RetryPolicy()
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= opts.max_attempts or not opts.should_retry(exc, attempt):
                raise
            delay_ms = opts.delay_for(attempt)
            logger.warning(
                "llm_retry",
                extra={
                    "attempt": attempt,
                    "delay_ms": delay_ms,
                    "category": classify_error(exc).category,
                },
            )
            if opts.on_retry is not None:
                opts.on_retry(exc, attempt, delay_ms)
            await sleep(delay_ms / 1000)
            attempt += 1
