from typing import Dict, List, Optional, Type

from parley.providers.anthropic_provider import AnthropicProvider
from parley.providers.base import BaseProvider, ModelInfo
from parley.providers.gemini_provider import GeminiProvider
from parley.providers.openai_provider import OpenAIProvider
from parley.providers.usage import PricingTable
from parley.session.models import Provider
from parley.utils.errors import ConfigurationError
from parley.utils.logging import get_logger

logger = get_logger(__name__)


class ProviderManager:
    """Builds provider adapters from configuration"""

    # Registry of available provider classes
    PROVIDER_CLASSES: Dict[Provider, Type[BaseProvider]] = {
        Provider.OPENAI: OpenAIProvider,
        Provider.ANTHROPIC: AnthropicProvider,
        Provider.GEMINI: GeminiProvider,
    }

    def __init__(self, config_manager, pricing: Optional[PricingTable] = None):
        self.config_manager = config_manager
        self.pricing = pricing or PricingTable.with_overrides(config_manager.get("pricing", {}))

    def create(self, provider: Provider) -> BaseProvider:
        """Build a fresh adapter.

        Adapters hold per-stream usage state, so every completion gets its own.
        """
        provider = Provider(provider)
        provider_class = self.PROVIDER_CLASSES[provider]
        provider_config = self.config_manager.get_provider_config(provider.value)
        if not provider_config:
            raise ConfigurationError(
                f"Provider '{provider.value}' is missing from the configuration",
                hint=f"Add a providers.{provider.value} section to {self.config_manager.config_path}",
            )
        if not provider_config.get("enabled", False):
            raise ConfigurationError(f"Provider '{provider.value}' is disabled")
        logger.debug(f"Creating provider adapter: {provider.value}")
        return provider_class(provider_config, pricing=self.pricing)

    def display_name(self, provider: Provider, model: str) -> str:
        return self.PROVIDER_CLASSES[Provider(provider)].known_models.get(model, model)

    def list_providers(self) -> List[str]:
        """List all provider names enabled in config"""
        return [
            provider.value
            for provider in self.PROVIDER_CLASSES
            if self.config_manager.get_provider_config(provider.value).get("enabled", False)
        ]

    def is_configured(self, provider: Provider) -> bool:
        return bool(self.config_manager.get_api_key(Provider(provider).value))

    async def list_all_models(self) -> Dict[str, List[ModelInfo]]:
        """Known models of every enabled provider"""
        all_models = {}
        for name in self.list_providers():
            adapter = self.create(Provider(name))
            try:
                all_models[name] = await adapter.list_models()
            finally:
                await adapter.aclose()
        return all_models
