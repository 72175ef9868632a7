from __future__ import annotations

"""Resolution of the model configuration used for a chat turn."""

from dataclasses import dataclass, replace
from typing import Any, Protocol

from sourcechat.app.settings import Settings
from sourcechat.rag.errors import ConfigurationError
from sourcechat.rag.llm import GeminiBackend, ModelBackend, OllamaBackend, OpenAICompatibleBackend


_PROVIDERS_REQUIRING_KEY = {"openai", "gemini"}


@dataclass(frozen=True)
class ResolvedModelConfig:
    """Model configuration resolved for one notebook."""
    model_config_id: str
    provider_type: str
    credential: str | None
    model_id: str
    base_url: str | None = None
    temperature: float = 0.2
    max_tokens: int = 2048
    timeout: float = 60.0
    compression_mode: str = "two-pass"
    context_mode: str = "classic"

    @property
    def requires_credential(self) -> bool:
        return self.provider_type in _PROVIDERS_REQUIRING_KEY


class ConfigResolver(Protocol):
    def resolve(self, notebook_id: str | None) -> ResolvedModelConfig | None:
        """Return the resolved configuration, or None when not configured."""
        ...


@dataclass(frozen=True)
class SettingsConfigResolver:
    """Resolve configuration from settings with optional per-notebook overrides."""
    settings: Settings

    def resolve(self, notebook_id: str | None) -> ResolvedModelConfig | None:
        base = self._default()
        if base is None:
            return None
        if notebook_id is None:
            return base
        override = self.settings.notebook_model_map.get(notebook_id)
        if not override:
            return base
        return _apply_override(base, override, self.settings)

    def _default(self) -> ResolvedModelConfig | None:
        provider = self.settings.llm_provider.strip().lower()
        common = {
            "temperature": self.settings.llm_temperature,
            "max_tokens": self.settings.llm_max_tokens,
            "timeout": self.settings.llm_timeout,
            "compression_mode": self.settings.compression_mode,
            "context_mode": self.settings.context_mode,
        }
        if provider == "openai":
            if not self.settings.openai_chat_model:
                return None
            return ResolvedModelConfig(
                model_config_id="default",
                provider_type="openai",
                credential=self.settings.openai_api_key,
                model_id=self.settings.openai_chat_model,
                base_url=self.settings.openai_base_url.rstrip("/"),
                **common,
            )
        if provider in {"gemini", "google"}:
            if not self.settings.gemini_chat_model:
                return None
            return ResolvedModelConfig(
                model_config_id="default",
                provider_type="gemini",
                credential=self.settings.gemini_api_key,
                model_id=self.settings.gemini_chat_model,
                **common,
            )
        if provider == "ollama":
            return ResolvedModelConfig(
                model_config_id="default",
                provider_type="ollama",
                credential=None,
                model_id=self.settings.ollama_model,
                base_url=self.settings.ollama_base_url.rstrip("/"),
                **common,
            )
        return None


def _apply_override(
    base: ResolvedModelConfig, override: dict[str, Any], settings: Settings
) -> ResolvedModelConfig:
    """Overlay a notebook-specific override onto the default configuration."""
    provider = str(override.get("provider", base.provider_type)).strip().lower()
    if provider == "google":
        provider = "gemini"
    changes: dict[str, Any] = {"provider_type": provider}
    if provider != base.provider_type:
        changes["credential"] = {
            "openai": settings.openai_api_key,
            "gemini": settings.gemini_api_key,
        }.get(provider)
        changes["base_url"] = {
            "openai": settings.openai_base_url.rstrip("/"),
            "ollama": settings.ollama_base_url.rstrip("/"),
        }.get(provider)
    for key, field_name in (
        ("id", "model_config_id"),
        ("model", "model_id"),
        ("api_key", "credential"),
        ("base_url", "base_url"),
        ("compression_mode", "compression_mode"),
        ("context_mode", "context_mode"),
    ):
        value = override.get(key)
        if isinstance(value, str) and value:
            changes[field_name] = value
    for key, field_name, cast in (
        ("temperature", "temperature", float),
        ("max_tokens", "max_tokens", int),
    ):
        if key in override:
            try:
                changes[field_name] = cast(override[key])
            except (TypeError, ValueError):
                continue
    return replace(base, **changes)


def build_backend(config: ResolvedModelConfig, settings: Settings) -> ModelBackend:
    """Factory for model backends; missing credentials are a configuration error."""
    if config.requires_credential and not config.credential:
        raise ConfigurationError(
            "AI provider not configured. Please add your API key in settings."
        )
    if config.provider_type == "openai":
        return OpenAICompatibleBackend(
            api_key=config.credential or "",
            base_url=(config.base_url or settings.openai_base_url).rstrip("/"),
            model=config.model_id,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout,
            max_tool_steps=settings.max_tool_steps,
            tokenizer_encoding=settings.tokenizer_encoding,
            disable_tiktoken=settings.disable_tiktoken,
        )
    if config.provider_type == "gemini":
        return GeminiBackend(
            api_key=config.credential or "",
            model=config.model_id,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout,
        )
    if config.provider_type == "ollama":
        return OllamaBackend(
            base_url=(config.base_url or settings.ollama_base_url).rstrip("/"),
            model=config.model_id,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout,
            max_tool_steps=settings.max_tool_steps,
        )
    raise ConfigurationError(f"Unsupported provider: {config.provider_type} is not configured")
