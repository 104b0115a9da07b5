"""
Provider routing.

Maps a request's ProviderConfig onto concrete backends for the three
kinds of work the pipeline does: mapping (synthesis), vision (OCR) and
embeddings. Hybrid rules live here as explicit tables:

- EMBEDDING_FALLBACK: backends without embeddings embed through another
  backend using that backend's process-default key.
- settings.vision_provider: optional pin that sends all OCR to one
  backend regardless of the selected mapping provider.
"""

from typing import Callable, Mapping, Optional

import structlog

from config import Settings, get_settings
from integrations.base import AIProvider, resolve_api_key
from integrations.anthropic_provider import AnthropicProvider
from integrations.gemini_provider import GeminiProvider
from integrations.openai_provider import OpenAIProvider
from models.provider import ProviderConfig, ProviderName

logger = structlog.get_logger(__name__)


ProviderFactory = Callable[[str, Settings], AIProvider]

PROVIDER_CLASSES: dict[ProviderName, ProviderFactory] = {
    ProviderName.GEMINI: GeminiProvider,
    ProviderName.OPENAI: OpenAIProvider,
    ProviderName.ANTHROPIC: AnthropicProvider,
}

EMBEDDING_FALLBACK: dict[ProviderName, ProviderName] = {
    ProviderName.ANTHROPIC: ProviderName.GEMINI,
}


class ProviderRouter:
    """
    Build authenticated providers for a ProviderConfig.

    Instances are cached per (provider, key) so repeated calls within a
    run share one SDK client.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        factories: Optional[Mapping[ProviderName, ProviderFactory]] = None,
        defaults: Optional[Mapping[str, Optional[str]]] = None
    ):
        self.settings = settings or get_settings()
        self.factories = dict(factories or PROVIDER_CLASSES)
        self.defaults = dict(defaults) if defaults is not None else self.settings.default_api_keys()
        self._cache: dict[tuple[ProviderName, str], AIProvider] = {}

    def _build(self, config: ProviderConfig) -> AIProvider:
        api_key = resolve_api_key(config, self.defaults)
        cache_key = (config.provider, api_key)
        provider = self._cache.get(cache_key)
        if provider is None:
            provider = self.factories[config.provider](api_key, self.settings)
            self._cache[cache_key] = provider
            logger.debug("provider_created", provider=config.provider.value)
        return provider

    def _derive(self, config: ProviderConfig, target: ProviderName) -> ProviderConfig:
        """Config for a different backend; the explicit key only belongs to the selected one."""
        if target == config.provider:
            return config
        return ProviderConfig(provider=target)

    def for_mapping(self, config: ProviderConfig) -> AIProvider:
        """Backend that adjudicates matches."""
        return self._build(config)

    def for_vision(self, config: ProviderConfig) -> AIProvider:
        """Backend that reads invoice images."""
        pinned = self.settings.vision_provider
        if pinned:
            return self._build(self._derive(config, ProviderName(pinned)))
        return self._build(config)

    def for_embedding(self, config: ProviderConfig) -> AIProvider:
        """Backend that embeds catalog records and queries."""
        target = EMBEDDING_FALLBACK.get(config.provider, config.provider)
        return self._build(self._derive(config, target))


# Singleton instance
_router: Optional[ProviderRouter] = None


def get_provider_router() -> ProviderRouter:
    """Get or create ProviderRouter instance."""
    global _router
    if _router is None:
        _router = ProviderRouter()
    return _router
