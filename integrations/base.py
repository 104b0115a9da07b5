"""
Common interface for AI backends.

Every backend exposes the same two capabilities: a vision/text
completion and a text embedding. Request shapes differ a lot between
vendors; those differences stay inside the concrete providers.
"""

from abc import ABC, abstractmethod
from typing import Mapping, Optional, Sequence

from config import Settings
from exceptions import ConfigurationError
from models.provider import ProviderConfig, ProviderName


# Leading base64 characters of common image formats
_MEDIA_SIGNATURES = {
    "/9j/": "image/jpeg",
    "iVBOR": "image/png",
    "UklGR": "image/webp",
    "R0lGOD": "image/gif",
}


def detect_media_type(image_b64: str, default: str = "image/jpeg") -> str:
    """Guess the image MIME type from the start of a base64 payload."""
    for prefix, media_type in _MEDIA_SIGNATURES.items():
        if image_b64.startswith(prefix):
            return media_type
    return default


def strip_data_url(image_b64: str) -> str:
    """Remove a `data:image/...;base64,` prefix if present."""
    if image_b64.startswith("data:") and "," in image_b64:
        return image_b64.split(",", 1)[1]
    return image_b64


def resolve_api_key(
    config: ProviderConfig,
    defaults: Mapping[str, Optional[str]]
) -> str:
    """
    Pick the credential for a provider config.

    Args:
        config: Invocation config; an explicit key wins
        defaults: Process-level default key per provider name

    Returns:
        The effective API key

    Raises:
        ConfigurationError: If neither source has a key
    """
    if config.api_key:
        return config.api_key

    default_key = defaults.get(config.provider.value)
    if default_key:
        return default_key

    raise ConfigurationError(
        f"API key required for {config.provider.value}",
        provider=config.provider.value
    )


class AIProvider(ABC):
    """
    One authenticated AI backend.

    Class attributes carry the static rate policy of the backend; the
    pipeline reads them instead of branching on provider identity.
    """

    name: ProviderName

    # Embedding indexer batching
    indexing_batch_size: int = 1
    indexing_delay_ms: int = 200

    # Synthesis batching
    synthesis_chunk_size: int = 8
    concurrent_synthesis: bool = False

    supports_embeddings: bool = True

    def __init__(self, api_key: str, settings: Settings):
        self.api_key = api_key
        self.settings = settings

    @abstractmethod
    async def complete_vision(
        self,
        images: Sequence[str],
        prompt: str,
        *,
        json_output: bool = False,
        response_schema: Optional[dict] = None
    ) -> str:
        """
        Send zero or more base64 images plus a prompt, return the model text.

        Args:
            images: Base64 image payloads (may be empty for text-only calls)
            prompt: Instruction text
            json_output: Ask the backend for a JSON response where supported
            response_schema: JSON schema for backends that constrain output

        Returns:
            Raw response text
        """

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Return the embedding vector for one string."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name.value}>"
