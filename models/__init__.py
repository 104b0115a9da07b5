"""
Pydantic models for validation and serialization.
"""

from models.base import BaseSchema, FrozenSchema
from models.catalog import (
    ProductRecord,
    CatalogUpdateSummary,
    CatalogIndexResponse,
)
from models.provider import ProviderName, ProviderConfig
from models.invoice import (
    InvoiceStatus,
    is_valid_invoice_status_transition,
    RawLineItem,
    CandidateSet,
    MappedInvoiceItem,
    FeedbackSet,
    ProcessedInvoice,
    InvoiceCreate,
    InvoiceSummary,
    InvoiceRetryRequest,
)

__all__ = [
    # Base
    "BaseSchema",
    "FrozenSchema",

    # Catalog
    "ProductRecord",
    "CatalogUpdateSummary",
    "CatalogIndexResponse",

    # Provider
    "ProviderName",
    "ProviderConfig",

    # Invoice
    "InvoiceStatus",
    "is_valid_invoice_status_transition",
    "RawLineItem",
    "CandidateSet",
    "MappedInvoiceItem",
    "FeedbackSet",
    "ProcessedInvoice",
    "InvoiceCreate",
    "InvoiceSummary",
    "InvoiceRetryRequest",
]
