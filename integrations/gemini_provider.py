"""
Google Gemini backend.

Uses the google-genai async client. JSON calls are schema-constrained
through `response_mime_type`/`response_schema`. The free tier has a tight
per-minute quota, so indexing runs one record at a time and synthesis
chunks run sequentially.
"""

import base64
from typing import Optional, Sequence

import structlog
from google import genai
from google.genai import types

from config import Settings
from integrations.base import AIProvider, detect_media_type, strip_data_url
from models.provider import ProviderName

logger = structlog.get_logger(__name__)


class GeminiProvider(AIProvider):
    """Gemini vision, text and embedding calls."""

    name = ProviderName.GEMINI

    indexing_batch_size = 1
    indexing_delay_ms = 200

    synthesis_chunk_size = 10
    concurrent_synthesis = False

    def __init__(self, api_key: str, settings: Settings):
        super().__init__(api_key, settings)
        self.client = genai.Client(api_key=api_key)

    async def complete_vision(
        self,
        images: Sequence[str],
        prompt: str,
        *,
        json_output: bool = False,
        response_schema: Optional[dict] = None
    ) -> str:
        parts = []
        for image in images:
            data = strip_data_url(image)
            parts.append(types.Part.from_bytes(
                data=base64.b64decode(data),
                mime_type=detect_media_type(data)
            ))
        parts.append(types.Part.from_text(text=prompt))

        config = None
        if json_output or response_schema:
            config = types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=response_schema,
            )

        response = await self.client.aio.models.generate_content(
            model=self.settings.gemini_model,
            contents=parts,
            config=config,
        )
        text = response.text or ""
        logger.debug(
            "gemini_response_received",
            images=len(images),
            response_length=len(text)
        )
        return text

    async def embed(self, text: str) -> list[float]:
        response = await self.client.aio.models.embed_content(
            model=self.settings.gemini_embedding_model,
            contents=text,
        )
        if not response.embeddings:
            return []
        return list(response.embeddings[0].values or [])
