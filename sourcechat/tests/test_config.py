from __future__ import annotations

import json

import pytest

from sourcechat.app.settings import Settings
from sourcechat.rag.config import SettingsConfigResolver, build_backend
from sourcechat.rag.errors import ConfigurationError, classify_error
from sourcechat.rag.llm import GeminiBackend, OllamaBackend, OpenAICompatibleBackend
from sourcechat.tests.fakes import make_config


@pytest.fixture(autouse=True)
def _clear_overrides(monkeypatch) -> None:
    monkeypatch.delenv("RAG_NOTEBOOK_MODEL_MAP", raising=False)
    monkeypatch.delenv("RAG_COMPRESSION_MODE", raising=False)
    monkeypatch.delenv("RAG_CONTEXT_MODE", raising=False)


def _settings(**overrides) -> Settings:
    values = {
        "llm_provider": "openai",
        "openai_api_key": "sk-default",
        "openai_base_url": "https://api.example.com/v1/",
        "openai_chat_model": "gpt-default",
        "gemini_api_key": "gm-key",
        "ollama_base_url": "http://ollama.local:11434",
        "ollama_model": "llama-local",
    }
    values.update(overrides)
    return Settings(**values)


def test_default_openai_configuration() -> None:
    config = SettingsConfigResolver(_settings()).resolve(None)

    assert config is not None
    assert config.provider_type == "openai"
    assert config.model_id == "gpt-default"
    assert config.credential == "sk-default"
    assert config.base_url == "https://api.example.com/v1"
    assert config.compression_mode == "two-pass"
    assert config.context_mode == "classic"


def test_unknown_or_incomplete_provider_is_not_configured() -> None:
    assert SettingsConfigResolver(_settings(llm_provider="mystery")).resolve(None) is None
    assert SettingsConfigResolver(_settings(openai_chat_model=None)).resolve("nb") is None


def test_invalid_modes_fall_back_to_defaults() -> None:
    config = SettingsConfigResolver(
        _settings(compression_mode_raw="three-pass", context_mode_raw="agentic")
    ).resolve(None)

    assert config.compression_mode == "two-pass"
    assert config.context_mode == "agentic"


def test_notebook_override_switches_provider() -> None:
    model_map = {
        "nb-local": {"provider": "ollama", "model": "qwen", "context_mode": "agentic"},
        "nb-warm": {"temperature": "0.9", "max_tokens": "oops"},
    }
    resolver = SettingsConfigResolver(
        _settings(notebook_model_map_raw=json.dumps(model_map))
    )

    local = resolver.resolve("nb-local")
    warm = resolver.resolve("nb-warm")
    other = resolver.resolve("nb-other")

    assert local.provider_type == "ollama"
    assert local.model_id == "qwen"
    assert local.credential is None
    assert local.base_url == "http://ollama.local:11434"
    assert local.context_mode == "agentic"
    assert warm.provider_type == "openai"
    assert warm.temperature == 0.9
    assert warm.max_tokens == _settings().llm_max_tokens
    assert other == resolver.resolve(None)


def test_malformed_notebook_map_is_ignored() -> None:
    resolver = SettingsConfigResolver(_settings(notebook_model_map_raw="{not json"))

    assert resolver.resolve("nb") == resolver.resolve(None)


@pytest.mark.parametrize(
    ("provider", "credential", "expected"),
    [
        ("openai", "sk-test", OpenAICompatibleBackend),
        ("gemini", "gm-test", GeminiBackend),
        ("ollama", None, OllamaBackend),
    ],
)
def test_build_backend_per_provider(provider: str, credential: str | None, expected: type) -> None:
    backend = build_backend(
        make_config(provider_type=provider, credential=credential, base_url=None),
        _settings(),
    )

    assert isinstance(backend, expected)


def test_build_backend_requires_credential() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        build_backend(make_config(credential=None), _settings())

    classified = classify_error(excinfo.value)
    assert classified.category == "config"
    assert classified.recoverable is False


def test_build_backend_rejects_unknown_provider() -> None:
    with pytest.raises(ConfigurationError):
        build_backend(make_config(provider_type="mystery"), _settings())
