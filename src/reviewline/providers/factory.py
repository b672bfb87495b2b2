"""Build provider clients from configuration."""

from __future__ import annotations

import structlog

from reviewline.core.config import ProviderConfig
from reviewline.core.constants import ProviderKind
from reviewline.core.exceptions import ConfigurationError
from reviewline.providers.anthropic import AnthropicProvider
from reviewline.providers.base import ProviderClient
from reviewline.providers.mock import MockProvider
from reviewline.providers.ollama import OllamaProvider
from reviewline.providers.openai_compat import OpenAICompatProvider

logger = structlog.get_logger(__name__)


def create_provider(config: ProviderConfig) -> ProviderClient:
    """Instantiate the adapter matching ``config.kind``.

    Raises:
        ConfigurationError: If the kind has no adapter.
    """
    if config.kind == ProviderKind.OPENAI_COMPAT:
        return OpenAICompatProvider(
            config.provider_id,
            config.api_key,
            model=config.model,
            base_url=config.base_url,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
    if config.kind == ProviderKind.ANTHROPIC:
        kwargs: dict[str, str] = {}
        if config.model:
            kwargs["model"] = config.model
        if config.base_url:
            kwargs["base_url"] = config.base_url
        return AnthropicProvider(
            config.api_key,
            provider_id=config.provider_id,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            **kwargs,
        )
    if config.kind == ProviderKind.OLLAMA:
        return OllamaProvider(
            provider_id=config.provider_id,
            model=config.model or "llama3.1",
            base_url=config.base_url or "http://localhost:11434",
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
    if config.kind == ProviderKind.MOCK:
        return MockProvider(config.provider_id, model=config.model or "mock")
    raise ConfigurationError(f"Unsupported provider kind: {config.kind!r}")


def build_providers(configs: list[ProviderConfig]) -> dict[str, ProviderClient]:
    """Create one client per config, keyed by provider id, in config order.

    Providers that are not configured (e.g. missing API key) are skipped
    with a warning.

    Raises:
        ConfigurationError: On duplicate provider ids.
    """
    providers: dict[str, ProviderClient] = {}
    for cfg in configs:
        if cfg.provider_id in providers:
            raise ConfigurationError(f"Duplicate provider id: {cfg.provider_id!r}")
        client = create_provider(cfg)
        if not client.is_configured():
            logger.warning("provider_not_configured", provider=cfg.provider_id)
            continue
        providers[cfg.provider_id] = client

    logger.info("providers_initialized", providers=list(providers))
    return providers
