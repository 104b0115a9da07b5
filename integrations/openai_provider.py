"""
OpenAI backend.

Chat completions with data-URL image parts and `json_object` response
format; embeddings via `text-embedding-3-small`. Rate limits are
generous enough for concurrent indexing and parallel synthesis chunks.
"""

from typing import Optional, Sequence

import structlog
from openai import AsyncOpenAI

from config import Settings
from integrations.base import AIProvider, detect_media_type, strip_data_url
from models.provider import ProviderName

logger = structlog.get_logger(__name__)


class OpenAIProvider(AIProvider):
    """OpenAI vision, text and embedding calls."""

    name = ProviderName.OPENAI

    indexing_batch_size = 20
    indexing_delay_ms = 10

    synthesis_chunk_size = 8
    concurrent_synthesis = True

    SYSTEM_PROMPT = "You are a precise invoice processing agent."

    def __init__(self, api_key: str, settings: Settings):
        super().__init__(api_key, settings)
        self.client = AsyncOpenAI(api_key=api_key)

    async def complete_vision(
        self,
        images: Sequence[str],
        prompt: str,
        *,
        json_output: bool = False,
        response_schema: Optional[dict] = None
    ) -> str:
        content: list[dict] = [{"type": "text", "text": prompt}]
        for image in images:
            data = strip_data_url(image)
            content.append({
                "type": "image_url",
                "image_url": {"url": f"data:{detect_media_type(data)};base64,{data}"}
            })

        kwargs = {
            "model": self.settings.openai_model,
            "messages": [
                {"role": "system", "content": self.SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
        }
        # json_object mode also covers schema requests; the prompt carries the shape
        if json_output or response_schema:
            kwargs["response_format"] = {"type": "json_object"}

        response = await self.client.chat.completions.create(**kwargs)
        text = response.choices[0].message.content or ""
        logger.debug(
            "openai_response_received",
            images=len(images),
            response_length=len(text)
        )
        return text

    async def embed(self, text: str) -> list[float]:
        response = await self.client.embeddings.create(
            model=self.settings.openai_embedding_model,
            input=text,
        )
        return list(response.data[0].embedding)
