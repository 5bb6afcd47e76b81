from marginalia.exceptions import ConfigurationError
from marginalia.providers.anthropic import AnthropicProvider
from marginalia.providers.base import BackendProvider
from marginalia.providers.openai import OpenAIProvider

PROVIDERS: dict[str, type[BackendProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
}


def get_provider(model_string: str, **kwargs) -> BackendProvider:
    """Build the provider for a ``"<backend>/<model>"`` string.

    Extra keyword arguments go to the provider constructor.
    """
    backend, _, model = model_string.partition("/")
    provider_cls = PROVIDERS.get(backend)
    if provider_cls is None or not model:
        raise ConfigurationError(f"Unsupported LLM provider: {model_string}")
    return provider_cls(model=model, **kwargs)


__all__ = [
    "AnthropicProvider",
    "BackendProvider",
    "OpenAIProvider",
    "PROVIDERS",
    "get_provider",
]
