"""
Catalog API routes.

Records arrive already parsed (JSON); file parsing belongs to the client.
"""

from typing import Optional

from fastapi import APIRouter, Body, Query
import structlog

from config import settings
from models.catalog import CatalogIndexResponse, CatalogUpdateSummary, ProductRecord
from models.provider import ProviderConfig
from routes.errors import handle_error
from services.catalog_service import get_catalog_service
from services.embedding_service import get_embedding_service

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/catalog", tags=["Catalog"])


def default_config(config: Optional[ProviderConfig]) -> ProviderConfig:
    """Request config, or the configured default provider with no explicit key."""
    return config or ProviderConfig(provider=settings.default_provider)


@router.get("")
async def list_catalog(
    include_embeddings: bool = Query(False, description="Include embedding vectors")
):
    """List catalog records."""
    try:
        service = get_catalog_service()
        exclude = None if include_embeddings else {"embedding"}
        return [
            {**r.model_dump(mode="json", exclude=exclude), "indexed": r.has_embedding}
            for r in service.get_all()
        ]
    except Exception as e:
        return handle_error(e)


@router.put("", response_model=CatalogUpdateSummary)
async def upload_catalog(records: list[ProductRecord]):
    """
    Replace the catalog.

    Embeddings of records already known (by id, then by name) are kept,
    so only new records need indexing.
    """
    try:
        service = get_catalog_service()
        return service.replace(records)
    except Exception as e:
        return handle_error(e)


@router.post("/index", response_model=CatalogIndexResponse)
async def index_catalog(config: Optional[ProviderConfig] = Body(None)):
    """
    Compute embeddings for records that lack one.

    Raises:
        400: No API key for the embedding provider
    """
    try:
        catalog = get_catalog_service()
        progress = []

        await get_embedding_service().index_catalog(
            catalog.records,
            default_config(config),
            on_progress=lambda done, total: progress.append(done)
        )

        indexed = sum(1 for r in catalog.records if r.has_embedding)
        logger.info("catalog_index_request_completed", batches=len(progress), indexed=indexed)
        return CatalogIndexResponse(
            total=len(catalog),
            indexed=indexed,
            missing=len(catalog) - indexed
        )
    except Exception as e:
        return handle_error(e)


@router.delete("", status_code=204)
async def clear_catalog():
    """Remove all catalog records."""
    try:
        get_catalog_service().clear()
    except Exception as e:
        return handle_error(e)
