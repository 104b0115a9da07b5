"""
In-process product catalog.

The catalog lives in memory for the life of the process. Uploading a
new version merges it with the current one, carrying over embeddings
for records that already had them so only new records are re-indexed.
"""

from typing import Optional, Sequence

import structlog

from models.catalog import CatalogUpdateSummary, ProductRecord

logger = structlog.get_logger(__name__)


def merge_catalog(
    current: Sequence[ProductRecord],
    incoming: Sequence[ProductRecord]
) -> tuple[list[ProductRecord], CatalogUpdateSummary]:
    """
    Merge an uploaded catalog into the current one.

    Incoming records replace current ones. An incoming record without an
    embedding inherits one from the current catalog, matched by id first
    and by name second. When several current records share an id or a
    name, the last one wins.

    Args:
        current: Catalog in memory
        incoming: Newly uploaded records

    Returns:
        (merged records, summary)
    """
    by_id: dict[str, list[float]] = {}
    by_name: dict[str, list[float]] = {}
    for record in current:
        if not record.embedding:
            continue
        by_id[record.id] = record.embedding
        if record.name:
            by_name[record.name] = record.embedding

    merged = []
    preserved = 0
    for record in incoming:
        if record.embedding:
            merged.append(record)
            continue

        inherited = by_id.get(record.id) or by_name.get(record.name)
        if inherited:
            preserved += 1
            merged.append(record.model_copy(update={"embedding": list(inherited)}))
        else:
            merged.append(record)

    summary = CatalogUpdateSummary(
        total=len(merged),
        preserved_embeddings=preserved,
        needs_indexing=sum(1 for r in merged if not r.has_embedding),
    )
    return merged, summary


class CatalogService:
    """Holds the current catalog."""

    def __init__(self, records: Optional[Sequence[ProductRecord]] = None):
        self._records: list[ProductRecord] = list(records or [])

    @property
    def records(self) -> list[ProductRecord]:
        return self._records

    def __len__(self) -> int:
        return len(self._records)

    def get_all(self) -> list[ProductRecord]:
        return list(self._records)

    def get_by_id(self, product_id: str) -> Optional[ProductRecord]:
        """First record with this id, or None."""
        for record in self._records:
            if record.id == product_id:
                return record
        return None

    def replace(self, incoming: Sequence[ProductRecord]) -> CatalogUpdateSummary:
        """Merge an uploaded catalog into the current one."""
        merged, summary = merge_catalog(self._records, incoming)
        self._records = merged

        duplicate_ids = len(merged) - len({r.id for r in merged})
        logger.info(
            "catalog_updated",
            total=summary.total,
            preserved_embeddings=summary.preserved_embeddings,
            needs_indexing=summary.needs_indexing,
            duplicate_ids=duplicate_ids
        )
        return summary

    def needs_indexing(self) -> bool:
        return any(not r.has_embedding for r in self._records)

    def clear(self) -> None:
        self._records = []


# Singleton instance
_catalog_service: Optional[CatalogService] = None


def get_catalog_service() -> CatalogService:
    """Get or create CatalogService instance."""
    global _catalog_service
    if _catalog_service is None:
        _catalog_service = CatalogService()
    return _catalog_service
