"""
Invoice schemas.

Covers the pipeline's intermediate records (raw extracted lines,
candidate sets), the terminal mapped line, user feedback and the
per-invoice processing state.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4
from pydantic import Field

from models.base import BaseSchema, FrozenSchema
from models.catalog import ProductRecord
from models.provider import ProviderConfig


class InvoiceStatus(str, Enum):
    """Invoice processing status values."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


# Allowed transitions. Finished invoices may be re-submitted.
STATUS_TRANSITIONS = {
    InvoiceStatus.PENDING: {InvoiceStatus.PROCESSING},
    InvoiceStatus.PROCESSING: {InvoiceStatus.COMPLETED, InvoiceStatus.ERROR},
    InvoiceStatus.COMPLETED: {InvoiceStatus.PROCESSING},
    InvoiceStatus.ERROR: {InvoiceStatus.PROCESSING},
}


def is_valid_invoice_status_transition(current: InvoiceStatus, new: InvoiceStatus) -> bool:
    """Check if an invoice status transition is allowed."""
    return new in STATUS_TRANSITIONS[current]


# ===================
# PIPELINE RECORDS
# ===================

class RawLineItem(FrozenSchema):
    """One invoice line as read by OCR, before mapping."""

    raw_name: str = Field(..., description="Text exactly as extracted")
    raw_quantity: float = Field(default=1, description="Quantity, 1 if unreadable")
    raw_price: float = Field(default=0, description="Line total, 0 if unreadable")

    @property
    def unit_price(self) -> float:
        """Line total divided by quantity, or the total when quantity is 0."""
        if not self.raw_quantity:
            return self.raw_price
        return self.raw_price / self.raw_quantity


class CandidateSet(BaseSchema):
    """A raw line with its retrieved catalog candidates, best first."""

    item: RawLineItem
    candidates: list[ProductRecord] = Field(default_factory=list)


class MappedInvoiceItem(BaseSchema):
    """Final result for one invoice line."""

    raw_name: str
    raw_quantity: float = 1
    raw_price: float = 0
    matched_product_id: Optional[str] = Field(
        None,
        description="Catalog id of the chosen product, None when nothing matched"
    )
    reasoning: str = Field(default="", description="Why the match was accepted or rejected")
    confidence_score: Optional[float] = Field(None, ge=0.0, le=1.0)
    candidates: list[ProductRecord] = Field(
        default_factory=list,
        description="Candidates the decision was made from"
    )

    @classmethod
    def unmatched(cls, candidate_set: CandidateSet, reasoning: str) -> "MappedInvoiceItem":
        item = candidate_set.item
        return cls(
            raw_name=item.raw_name,
            raw_quantity=item.raw_quantity,
            raw_price=item.raw_price,
            matched_product_id=None,
            reasoning=reasoning,
            candidates=candidate_set.candidates,
        )


# ===================
# FEEDBACK
# ===================

class FeedbackSet(BaseSchema):
    """Items from a previous run that the user marked as incorrect."""

    incorrect_items: list[MappedInvoiceItem] = Field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.incorrect_items)

    def extraction_hints(self) -> list[dict]:
        """Raw extractions the OCR step should look at again."""
        return [
            {"raw_name": i.raw_name, "raw_price": i.raw_price}
            for i in self.incorrect_items
        ]

    def mapping_hints(self) -> list[dict]:
        """Mappings the synthesis step should not repeat."""
        return [
            {"raw_name": i.raw_name, "previous_match_id": i.matched_product_id}
            for i in self.incorrect_items
        ]


# ===================
# INVOICE STATE
# ===================

class ProcessedInvoice(BaseSchema):
    """An invoice moving through the pipeline."""

    id: str = Field(default_factory=lambda: uuid4().hex[:12])
    file_name: str = Field(default="invoice")
    status: InvoiceStatus = Field(default=InvoiceStatus.PENDING)
    items: list[MappedInvoiceItem] = Field(default_factory=list)
    image_chunks: list[str] = Field(
        default_factory=list,
        description="Base64 image slices, top to bottom"
    )
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None


# ===================
# API SCHEMAS
# ===================

class InvoiceCreate(BaseSchema):
    """Register an invoice for processing."""

    file_name: str = Field(default="invoice", max_length=255)
    image_chunks: list[str] = Field(..., min_length=1)


class InvoiceSummary(BaseSchema):
    """Invoice without image payload or candidate vectors."""

    id: str
    file_name: str
    status: InvoiceStatus
    created_at: datetime
    error: Optional[str] = None
    item_count: int = 0
    matched_count: int = 0

    @classmethod
    def from_invoice(cls, invoice: ProcessedInvoice) -> "InvoiceSummary":
        return cls(
            id=invoice.id,
            file_name=invoice.file_name,
            status=invoice.status,
            created_at=invoice.created_at,
            error=invoice.error,
            item_count=len(invoice.items),
            matched_count=sum(1 for i in invoice.items if i.matched_product_id),
        )


class InvoiceRetryRequest(BaseSchema):
    """Re-run an invoice with some of its items flagged as incorrect."""

    config: Optional[ProviderConfig] = None
    incorrect_item_indexes: list[int] = Field(
        default_factory=list,
        description="Positions in the invoice's current items list"
    )
