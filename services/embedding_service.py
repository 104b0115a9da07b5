"""
Embedding indexer.

Computes and caches an embedding for every catalog record that lacks
one. Batching follows the embedding backend's rate policy: generous
backends embed a batch of records concurrently with a short pause,
strict ones go one record at a time with a longer pause. Batches that
are already fully indexed cost nothing, so re-indexing after a catalog
update only pays for new records.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Sequence

import structlog

from config import get_settings
from exceptions import EmbeddingFailure
from integrations import AIProvider, ProviderRouter, get_provider_router
from models.catalog import ProductRecord
from models.provider import ProviderConfig
from services.retry_service import RetryPolicy

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[int, int], None]


class EmbeddingService:
    """
    Catalog indexing and query embedding.

    Handles the embedding half of retrieval; similarity search lives in
    retrieval_service.
    """

    def __init__(
        self,
        router: Optional[ProviderRouter] = None,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.router = router or get_provider_router()
        self.retry = retry or RetryPolicy.from_settings(get_settings())
        self.sleep = sleep

    # ===================
    # CATALOG INDEXING
    # ===================

    async def index_catalog(
        self,
        catalog: Sequence[ProductRecord],
        config: ProviderConfig,
        on_progress: Optional[ProgressCallback] = None
    ) -> list[ProductRecord]:
        """
        Embed every record without an embedding.

        Records are updated in place. A failure on one record is logged and
        skipped; that record simply yields no retrieval hits later.

        Args:
            catalog: Catalog records
            config: Provider selection for this run
            on_progress: Called with (processed, total) after each batch

        Returns:
            The same records, as a list

        Raises:
            ConfigurationError: If no embedding credential is available
        """
        records = list(catalog)
        total = len(records)
        missing = sum(1 for r in records if not r.has_embedding)

        if missing == 0:
            logger.debug("catalog_already_indexed", total=total)
            return records

        provider = self.router.for_embedding(config)
        batch_size = max(1, provider.indexing_batch_size)

        logger.info(
            "catalog_indexing_started",
            provider=provider.name.value,
            total=total,
            missing=missing,
            batch_size=batch_size
        )

        indexed = 0
        failed = 0

        for start in range(0, total, batch_size):
            batch = records[start:start + batch_size]
            pending = [r for r in batch if not r.has_embedding]

            if pending:
                results = await asyncio.gather(
                    *(self._index_record(provider, r) for r in pending)
                )
                indexed += sum(1 for ok in results if ok is True)
                failed += sum(1 for ok in results if ok is False)

            processed = min(start + batch_size, total)
            if on_progress:
                on_progress(processed, total)

            if pending and processed < total:
                await self.sleep(provider.indexing_delay_ms / 1000)

        logger.info(
            "catalog_indexing_completed",
            provider=provider.name.value,
            indexed=indexed,
            failed=failed,
            total=total
        )
        return records

    async def _index_record(self, provider: AIProvider, record: ProductRecord) -> Optional[bool]:
        """
        Embed one record in place.

        Returns:
            True on success, False on failure, None if there was nothing to embed
        """
        text = record.embedding_text()
        if not text:
            logger.debug("record_skipped_empty_text", product_id=record.id)
            return None

        try:
            vector = await self.retry.run(
                lambda: provider.embed(text),
                label="embed_record"
            )
        except Exception as e:
            logger.warning(
                "record_embedding_failed",
                product_id=record.id,
                error=str(e)[:200],
                error_type=type(e).__name__
            )
            return False

        if not vector:
            logger.warning("record_embedding_empty", product_id=record.id)
            return False

        record.embedding = vector
        return True

    # ===================
    # QUERY EMBEDDING
    # ===================

    async def embed_query(self, text: str, config: ProviderConfig) -> list[float]:
        """
        Embed free text for a similarity search.

        Raises:
            ConfigurationError: If no embedding credential is available
            EmbeddingFailure: If the embedding call fails after retries
        """
        provider = self.router.for_embedding(config)
        try:
            return await self.retry.run(
                lambda: provider.embed(text),
                label="embed_query"
            )
        except Exception as e:
            raise EmbeddingFailure(subject=text[:80], message=str(e)[:200]) from e


# Singleton instance
_embedding_service: Optional[EmbeddingService] = None


def get_embedding_service() -> EmbeddingService:
    """Get or create EmbeddingService instance."""
    global _embedding_service
    if _embedding_service is None:
        _embedding_service = EmbeddingService()
    return _embedding_service
