from __future__ import annotations

from dataclasses import replace

import pytest

from codegravity.core.config import Settings
from codegravity.core.errors import UnknownProviderError
from codegravity.providers.llm.catalog import PROVIDER_NAMES, ProviderCatalog


def _catalog(**overrides) -> ProviderCatalog:
    return ProviderCatalog.from_settings(Settings(_env_file=None, **overrides))


def test_every_known_provider_resolves() -> None:
    catalog = _catalog()
    for name in PROVIDER_NAMES:
        config = catalog.resolve(name)
        assert config.name == name
        assert config.base_url
        assert config.default_model in config.models
    assert catalog.names() == PROVIDER_NAMES


def test_resolve_normalizes_case_and_whitespace() -> None:
    catalog = _catalog()
    assert catalog.resolve("  OpenAI ").name == "openai"
    assert "GROQ" in catalog
    assert "mistral" not in catalog


def test_unknown_provider_is_rejected() -> None:
    with pytest.raises(UnknownProviderError):
        _catalog().resolve("mistral")
    with pytest.raises(UnknownProviderError):
        _catalog().resolve("")


def test_chat_url_joins_base_and_path() -> None:
    catalog = _catalog()
    assert catalog.resolve("openai").chat_url == "https://api.openai.com/v1/chat/completions"
    assert catalog.resolve("groq").chat_url == "https://api.groq.com/openai/v1/chat/completions"
    assert catalog.resolve("deepseek").models_url == "https://api.deepseek.com/v1/models"


def test_ollama_base_url_override() -> None:
    catalog = _catalog(ollama_base_url="http://gpu-box:11434/v1/")
    assert catalog.resolve("ollama").chat_url == "http://gpu-box:11434/v1/chat/completions"


def test_auth_headers_by_provider() -> None:
    catalog = _catalog()
    openai_headers = catalog.resolve("openai").auth_headers("sk-abc")
    assert openai_headers["Authorization"] == "Bearer sk-abc"
    assert "x-api-key" not in openai_headers

    anthropic_headers = catalog.resolve("anthropic").auth_headers("sk-ant")
    assert anthropic_headers["x-api-key"] == "sk-ant"
    assert anthropic_headers["anthropic-version"] == "2023-06-01"
    assert "Authorization" not in anthropic_headers


def test_missing_base_url_falls_back_to_openai_shape() -> None:
    catalog = _catalog()
    providers = {config.name: config for config in catalog}
    providers["groq"] = replace(providers["groq"], base_url="")
    patched = ProviderCatalog(providers)
    assert patched.resolve("groq").base_url == "https://api.openai.com/v1"
