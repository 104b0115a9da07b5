"""
Anthropic Claude backend.

Base64 image source blocks, free-text responses parsed downstream.
Anthropic has no embedding endpoint; the provider router sends this
backend's embedding work to Gemini.
"""

from typing import Optional, Sequence

import anthropic
import structlog

from config import Settings
from exceptions import ConfigurationError, TransientProviderError
from integrations.base import AIProvider, detect_media_type, strip_data_url
from models.provider import ProviderName

logger = structlog.get_logger(__name__)


class AnthropicProvider(AIProvider):
    """Claude vision and text calls."""

    name = ProviderName.ANTHROPIC

    synthesis_chunk_size = 8
    concurrent_synthesis = True

    supports_embeddings = False

    def __init__(self, api_key: str, settings: Settings):
        super().__init__(api_key, settings)
        self.client = anthropic.AsyncAnthropic(api_key=api_key)

    async def complete_vision(
        self,
        images: Sequence[str],
        prompt: str,
        *,
        json_output: bool = False,
        response_schema: Optional[dict] = None
    ) -> str:
        content = []
        for image in images:
            data = strip_data_url(image)
            content.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": detect_media_type(data),
                    "data": data
                }
            })

        text_prompt = prompt
        if json_output or response_schema:
            text_prompt += "\n\nReturn ONLY a JSON object, no markdown, no explanation."
        content.append({"type": "text", "text": text_prompt})

        try:
            response = await self.client.messages.create(
                model=self.settings.anthropic_model,
                max_tokens=self.settings.anthropic_max_tokens,
                messages=[{"role": "user", "content": content}]
            )
        except anthropic.APIStatusError as e:
            # 529 (overloaded) is outside the generic retryable status set
            if e.status_code == 529:
                raise TransientProviderError(self.name.value, str(e), status=529) from e
            raise

        logger.debug(
            "claude_response_received",
            images=len(images),
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens
        )

        return "".join(
            block.text for block in response.content if hasattr(block, "text")
        )

    async def embed(self, text: str) -> list[float]:
        raise ConfigurationError(
            "Anthropic does not provide embeddings; route embedding calls elsewhere",
            provider=self.name.value
        )
