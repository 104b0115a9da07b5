"""
Product catalog schemas.

The catalog is the reference set invoice lines are mapped onto. Extra
columns from the source file land in `metadata`, whose keys vary per
catalog.
"""

from typing import Optional
from pydantic import Field, field_validator

from models.base import BaseSchema


class ProductRecord(BaseSchema):
    """
    One catalog entry.

    `id` is assumed unique but not enforced; duplicate ids make later
    lookups ambiguous.
    """

    id: str = Field(..., min_length=1, description="Stable catalog key")
    name: str = Field(..., description="Canonical (English-style) name")
    local_name: str = Field(
        default="",
        alias="localName",
        description="Alternate or native-script name"
    )
    unit: str = Field(default="pcs", description="Unit of measure")
    category: Optional[str] = Field(None, description="Product category")
    metadata: dict[str, str] = Field(
        default_factory=dict,
        description="Extra catalog columns (brand, size, origin...)"
    )
    embedding: Optional[list[float]] = Field(
        None,
        description="Vector embedding, absent until indexed"
    )

    @field_validator("metadata", mode="before")
    @classmethod
    def stringify_metadata(cls, v):
        """Coerce metadata values to strings and drop empty ones."""
        if not v:
            return {}
        return {
            str(key): str(value).strip()
            for key, value in dict(v).items()
            if value is not None and str(value).strip()
        }

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    def embedding_text(self) -> str:
        """Text used to compute this record's embedding."""
        parts = [self.name, self.local_name, self.category or ""]
        parts.extend(self.metadata.values())
        return " ".join(p for p in parts if p).strip()


class CatalogUpdateSummary(BaseSchema):
    """Result of merging an uploaded catalog into the current one."""

    total: int = Field(..., ge=0)
    preserved_embeddings: int = Field(..., ge=0)
    needs_indexing: int = Field(..., ge=0)


class CatalogIndexResponse(BaseSchema):
    """Result of an indexing run."""

    total: int = Field(..., ge=0)
    indexed: int = Field(..., ge=0, description="Records with an embedding after the run")
    missing: int = Field(..., ge=0, description="Records still without an embedding")
