"""
Provider adapters. Each adapter implements BaseProvider.invoke (and poll for
providers with async jobs).
"""

from providers.base_provider import BaseProvider, InvalidPayloadError
from providers.fal_provider import FalProvider
from providers.gemini_provider import GeminiProvider
from providers.modelslab_provider import ModelsLabProvider
from providers.openai_compatible import BASE_URLS, OpenAICompatibleProvider
from providers.replicate_provider import ReplicateProvider
from providers.stability_provider import StabilityProvider


def build_default_providers() -> dict[str, BaseProvider]:
    """Adapter instance for every provider id known to the catalog."""
    adapters: dict[str, BaseProvider] = {
        provider_id: OpenAICompatibleProvider(provider_id) for provider_id in BASE_URLS
    }
    for adapter in (GeminiProvider(), FalProvider(), ReplicateProvider(), StabilityProvider(), ModelsLabProvider()):
        adapters[adapter.provider_id] = adapter
    return adapters


__all__ = [
    "BaseProvider",
    "FalProvider",
    "GeminiProvider",
    "InvalidPayloadError",
    "ModelsLabProvider",
    "OpenAICompatibleProvider",
    "ReplicateProvider",
    "StabilityProvider",
    "build_default_providers",
]
