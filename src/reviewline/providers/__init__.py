from reviewline.providers.anthropic import AnthropicProvider
from reviewline.providers.base import ProviderClient, ProviderProtocol
from reviewline.providers.factory import build_providers, create_provider
from reviewline.providers.mock import MockProvider
from reviewline.providers.ollama import OllamaProvider
from reviewline.providers.openai_compat import OpenAICompatProvider

__all__ = [
    "AnthropicProvider",
    "MockProvider",
    "OllamaProvider",
    "OpenAICompatProvider",
    "ProviderClient",
    "ProviderProtocol",
    "build_providers",
    "create_provider",
]
