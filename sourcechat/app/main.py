from __future__ import annotations

"""FastAPI application entrypoint for the source-grounded chat service."""

from dataclasses import asdict
import json
import logging
import uuid
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from sourcechat.app.dependencies import get_config_resolver, get_model_cache, get_orchestrator
from sourcechat.app.metrics import metrics_middleware, metrics_response
from sourcechat.app.schemas import ChatRequest, ChatResponse, ErrorOut, ModelsResponse
from sourcechat.app.settings import settings
from sourcechat.rag.config import build_backend
from sourcechat.rag.errors import ChatError, ConfigurationError, classify_error
from sourcechat.rag.orchestrator import NOT_CONFIGURED_MESSAGE, ChatOptions, ChatOrchestrator
from sourcechat.rag.types import ClassifiedError, CompleteEvent, StreamEvent

logger = logging.getLogger(__name__)

app = FastAPI(title="Sourcechat", version="0.1.0")

_STATUS_BY_CATEGORY = {
    "config": 400,
    "auth": 401,
    "content": 413,
    "rate_limit": 429,
}


def _configure_logging() -> None:
    """Configure root logging using environment settings."""
    level_name = settings.log_level.strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    logger.setLevel(level)


_configure_logging()


def _error_response(error: ClassifiedError, request_id: str) -> JSONResponse:
    payload = ErrorOut.from_classified(error).model_dump()
    payload["request_id"] = request_id
    return JSONResponse(status_code=_STATUS_BY_CATEGORY.get(error.category, 502), content=payload)


def _event_payload(event: StreamEvent, request_id: str) -> dict[str, Any]:
    if isinstance(event, CompleteEvent):
        payload = ChatResponse.from_result(event.result, request_id).model_dump()
        payload["type"] = event.type
        return payload
    return asdict(event)


async def _ndjson(
    first: StreamEvent, stream: AsyncIterator[StreamEvent], request_id: str
) -> AsyncIterator[str]:
    """Serialize stream events as newline-delimited JSON."""
    yield json.dumps(_event_payload(first, request_id), default=str) + "\n"
    try:
        async for event in stream:
            yield json.dumps(_event_payload(event, request_id), default=str) + "\n"
    except ChatError as exc:
        payload = ErrorOut.from_classified(exc.classified).model_dump()
        payload["type"] = "error"
        yield json.dumps(payload) + "\n"


def _options(request: ChatRequest) -> ChatOptions:
    return ChatOptions(context_mode=request.context_mode, notebook_id=request.notebook_id)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Attach or create a request ID for traceability."""
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    """Capture request metrics before returning the response."""
    return await metrics_middleware(request, call_next)


@app.get("/metrics")
async def metrics():
    """Expose Prometheus-style metrics."""
    return metrics_response()


@app.get("/health")
async def health() -> dict[str, str]:
    """Simple health probe for uptime checks."""
    return {"status": "ok"}


@app.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    http_request: Request,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Answer a question grounded in the supplied sources."""
    request_id = getattr(http_request.state, "request_id", str(uuid.uuid4()))
    try:
        result = await orchestrator.chat(
            request.to_sources(), request.question, request.to_history(), _options(request)
        )
    except ChatError as exc:
        logger.warning(
            "chat_request_failed",
            extra={"request_id": request_id, "category": exc.classified.category},
        )
        return _error_response(exc.classified, request_id)
    logger.info(
        "chat_request_completed",
        extra={
            "request_id": request_id,
            "sources": len(request.sources),
            "citations": len(result.citations),
        },
    )
    return ChatResponse.from_result(result, request_id)


@app.post("/chat/stream")
async def chat_stream(
    request: ChatRequest,
    http_request: Request,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Stream an answer as NDJSON events ending with a ``complete`` event."""
    request_id = getattr(http_request.state, "request_id", str(uuid.uuid4()))
    stream = orchestrator.stream_chat(
        request.to_sources(), request.question, request.to_history(), _options(request)
    )
    try:
        first = await anext(stream)
    except ChatError as exc:
        logger.warning(
            "chat_stream_request_failed",
            extra={"request_id": request_id, "category": exc.classified.category},
        )
        return _error_response(exc.classified, request_id)
    return StreamingResponse(
        _ndjson(first, stream, request_id), media_type="application/x-ndjson"
    )


@app.get("/models", response_model=ModelsResponse)
async def models(http_request: Request, notebook_id: str | None = None):
    """List models offered by the configured provider, cached per credential."""
    request_id = getattr(http_request.state, "request_id", str(uuid.uuid4()))
    config = get_config_resolver().resolve(notebook_id)
    if config is None:
        return _error_response(classify_error(ConfigurationError(NOT_CONFIGURED_MESSAGE)), request_id)
    cache = get_model_cache()
    cached = cache.get(config.provider_type, config.credential)
    if cached is not None:
        return ModelsResponse(provider=config.provider_type, models=cached, cached=True)
    try:
        backend = build_backend(config, settings)
        list_models = getattr(backend, "list_models", None)
        available = await list_models() if list_models else [config.model_id]
    except Exception as exc:
        logger.warning(
            "model_list_failed",
            extra={"request_id": request_id, "provider": config.provider_type},
        )
        return _error_response(classify_error(exc), request_id)
    cache.set(config.provider_type, config.credential, available)
    return ModelsResponse(provider=config.provider_type, models=available)
