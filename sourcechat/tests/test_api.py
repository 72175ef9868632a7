from __future__ import annotations

import json

import httpx
import pytest

from sourcechat.app.dependencies import get_orchestrator, reset_orchestrator_cache
from sourcechat.app.main import app
from sourcechat.app.settings import Settings
from sourcechat.rag.orchestrator import ChatOrchestrator
from sourcechat.tests.fakes import ScriptedBackend, StaticResolver, make_config, no_sleep

pytestmark = pytest.mark.anyio

SOURCES = [
    {
        "id": "s1",
        "title": "Tea guide",
        "url": "https://example.com/tea",
        "content": "Tea is grown on hillsides.",
    }
]


@pytest.fixture(autouse=True)
def _reset_overrides():
    yield
    app.dependency_overrides.clear()
    reset_orchestrator_cache()


def use_backend(backend: ScriptedBackend) -> None:
    orchestrator = ChatOrchestrator(
        config_resolver=StaticResolver(make_config()),
        settings=Settings(retry_max_attempts=2, retry_initial_delay_ms=1, retry_max_delay_ms=2),
        backend_factory=lambda config, settings: backend,
        sleep=no_sleep,
    )
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator


def get_client() -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


async def test_health_endpoint() -> None:
    async with get_client() as client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"]


async def test_chat_returns_answer_with_citations() -> None:
    use_backend(
        ScriptedBackend(
            responses=[
                "Tea grows on hills [Source 1].\n\n---CITATIONS---\n"
                '[Source 1]: "grown on hillsides"\n---END CITATIONS---'
            ]
        )
    )

    async with get_client() as client:
        response = await client.post(
            "/chat",
            json={"question": "Where does tea grow?", "sources": SOURCES},
            headers={"X-Request-ID": "req-42"},
        )

    assert response.status_code == 200
    payload = response.json()
    assert payload["content"] == "Tea grows on hills [Source 1]."
    assert payload["citations"] == [
        {
            "source_id": "s1",
            "source_title": "Tea guide",
            "excerpt": "grown on hillsides",
            "label": "[Source 1]",
        }
    ]
    assert payload["error"] is None
    assert payload["request_id"] == "req-42"


async def test_chat_maps_auth_failure_to_401() -> None:
    use_backend(ScriptedBackend(responses=[RuntimeError("401 Unauthorized")]))

    async with get_client() as client:
        response = await client.post(
            "/chat", json={"question": "Where does tea grow?", "sources": SOURCES}
        )

    assert response.status_code == 401
    payload = response.json()
    assert payload["category"] == "auth"
    assert payload["recoverable"] is False
    assert payload["request_id"]


async def test_chat_rejects_empty_question() -> None:
    use_backend(ScriptedBackend())

    async with get_client() as client:
        response = await client.post("/chat", json={"question": "", "sources": SOURCES})

    assert response.status_code == 422


async def test_chat_stream_emits_ndjson_until_complete() -> None:
    use_backend(ScriptedBackend(stream_chunks=["Tea grows ", "on hills [Source 1]."]))

    async with get_client() as client:
        response = await client.post(
            "/chat/stream", json={"question": "Where does tea grow?", "sources": SOURCES}
        )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    events = [json.loads(line) for line in response.text.splitlines() if line.strip()]
    assert events[-1]["type"] == "complete"
    assert events[-1]["content"] == "Tea grows on hills [Source 1]."
    assert events[-1]["citations"][0]["source_id"] == "s1"
    text = "".join(event["content"] for event in events if event["type"] == "text")
    assert text == "Tea grows on hills [Source 1]."


async def test_chat_stream_early_failure_returns_status() -> None:
    use_backend(ScriptedBackend(stream_error=RuntimeError("429 Too Many Requests")))

    async with get_client() as client:
        response = await client.post(
            "/chat/stream", json={"question": "Where does tea grow?", "sources": SOURCES}
        )

    assert response.status_code == 429
    assert response.json()["category"] == "rate_limit"


async def test_models_without_credential_is_config_error() -> None:
    async with get_client() as client:
        response = await client.get("/models")

    assert response.status_code == 400
    assert response.json()["category"] == "config"


async def test_metrics_endpoint() -> None:
    async with get_client() as client:
        await client.get("/health")
        response = await client.get("/metrics")
    assert response.status_code == 200
    assert "sourcechat_http_requests_total" in response.text


async def test_agentic_request_on_provider_without_tools_returns_400() -> None:
    backend = ScriptedBackend()
    orchestrator = ChatOrchestrator(
        config_resolver=StaticResolver(make_config(provider_type="gemini")),
        settings=Settings(retry_max_attempts=3, retry_initial_delay_ms=1, retry_max_delay_ms=2),
        backend_factory=lambda config, settings: backend,
        sleep=no_sleep,
    )
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    async with get_client() as client:
        response = await client.post(
            "/chat",
            json={"question": "Where does tea grow?", "sources": SOURCES, "context_mode": "agentic"},
        )

    assert response.status_code == 400
    assert response.json()["category"] == "config"
    assert backend.stream_calls == []
