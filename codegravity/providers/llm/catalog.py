from __future__ import annotations

from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Mapping

from codegravity.core.config import Settings, get_settings
from codegravity.core.errors import UnknownProviderError


AUTH_BEARER = "bearer"
AUTH_X_API_KEY = "x-api-key"

PROVIDER_NAMES = ("openai", "anthropic", "gemini", "deepseek", "groq", "ollama")


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    base_url: str
    default_model: str
    models: tuple[str, ...]
    # Only the auth header shape differs; every provider speaks the same SSE framing.
    auth_style: str = AUTH_BEARER
    chat_path: str = "/chat/completions"
    models_path: str = "/models"
    extra_headers: tuple[tuple[str, str], ...] = ()

    @property
    def chat_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.chat_path}"

    @property
    def models_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.models_path}"

    def auth_headers(self, credential: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_style == AUTH_X_API_KEY:
            headers["x-api-key"] = credential
        else:
            headers["Authorization"] = f"Bearer {credential}"
        headers.update(dict(self.extra_headers))
        return headers


_DEFAULT_PROVIDERS: tuple[ProviderConfig, ...] = (
    ProviderConfig(
        name="openai",
        base_url="https://api.openai.com/v1",
        default_model="gpt-4-turbo",
        models=("gpt-4-turbo", "gpt-4", "gpt-3.5-turbo"),
    ),
    ProviderConfig(
        name="anthropic",
        base_url="https://api.anthropic.com/v1",
        default_model="claude-3-sonnet-20240229",
        models=("claude-3-opus-20240229", "claude-3-sonnet-20240229", "claude-3-haiku-20240307"),
        auth_style=AUTH_X_API_KEY,
        extra_headers=(("anthropic-version", "2023-06-01"),),
    ),
    ProviderConfig(
        name="gemini",
        # Gemini's OpenAI-compatible surface accepts bearer keys and chat/completions.
        base_url="https://generativelanguage.googleapis.com/v1beta/openai",
        default_model="gemini-1.5-pro",
        models=("gemini-pro", "gemini-1.5-pro"),
    ),
    ProviderConfig(
        name="deepseek",
        base_url="https://api.deepseek.com/v1",
        default_model="deepseek-coder",
        models=("deepseek-coder", "deepseek-chat"),
    ),
    ProviderConfig(
        name="groq",
        base_url="https://api.groq.com/openai/v1",
        default_model="llama-3.1-70b-versatile",
        models=("llama-3.1-70b-versatile", "llama-3.1-8b-instant", "mixtral-8x7b-32768"),
    ),
    ProviderConfig(
        name="ollama",
        base_url="http://localhost:11434/v1",
        default_model="codellama",
        models=("codellama", "llama3", "mistral"),
    ),
)


class ProviderCatalog:
    """Immutable registry of known providers, built once at startup."""

    def __init__(self, providers: Mapping[str, ProviderConfig]) -> None:
        self._providers = MappingProxyType(dict(providers))

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ProviderCatalog:
        settings = settings or get_settings()
        providers: dict[str, ProviderConfig] = {}
        for config in _DEFAULT_PROVIDERS:
            if config.name == "ollama" and settings.ollama_base_url:
                config = replace(config, base_url=settings.ollama_base_url)
            providers[config.name] = config
        return cls(providers)

    def resolve(self, provider_name: str) -> ProviderConfig:
        name = (provider_name or "").strip().lower()
        config = self._providers.get(name)
        if config is None:
            raise UnknownProviderError(f"Unknown AI provider: {provider_name!r}")
        if not config.base_url:
            # Fall back to the OpenAI wire shape when a base URL is unresolved.
            return replace(config, base_url=self._providers["openai"].base_url)
        return config

    def names(self) -> tuple[str, ...]:
        return tuple(self._providers)

    def __iter__(self):
        return iter(self._providers.values())

    def __contains__(self, provider_name: object) -> bool:
        return isinstance(provider_name, str) and provider_name.lower() in self._providers
