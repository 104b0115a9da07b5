"""
Invoice API routes.

Invoices are submitted as base64 image chunks (already sliced by the
client), processed in batches and can be re-run with feedback.
"""

from typing import Optional

from fastapi import APIRouter, Body, Query
import structlog

from exceptions import ValidationError
from models.invoice import (
    InvoiceCreate,
    InvoiceRetryRequest,
    InvoiceStatus,
    InvoiceSummary,
    ProcessedInvoice,
)
from models.provider import ProviderConfig
from routes.catalog import default_config
from routes.errors import handle_error
from services import invoice_store_service
from services.catalog_service import get_catalog_service
from services.pipeline_service import get_pipeline_service

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/invoices", tags=["Invoices"])


def invoice_detail(invoice: ProcessedInvoice) -> dict:
    """Full invoice without image payload or candidate vectors."""
    return invoice.model_dump(
        mode="json",
        exclude={
            "image_chunks": True,
            "items": {"__all__": {"candidates": {"__all__": {"embedding"}}}},
        }
    )


@router.post("", response_model=InvoiceSummary, status_code=201)
async def create_invoice(data: InvoiceCreate):
    """Register an invoice as pending."""
    try:
        invoice = invoice_store_service.add_invoice(ProcessedInvoice(
            file_name=data.file_name,
            image_chunks=data.image_chunks,
        ))
        logger.info("invoice_registered", invoice_id=invoice.id, chunks=len(invoice.image_chunks))
        return InvoiceSummary.from_invoice(invoice)
    except Exception as e:
        return handle_error(e)


@router.get("", response_model=list[InvoiceSummary])
async def list_invoices(
    status: Optional[InvoiceStatus] = Query(None, description="Filter by status")
):
    """List invoices."""
    try:
        return [
            InvoiceSummary.from_invoice(inv)
            for inv in invoice_store_service.list_invoices(status)
        ]
    except Exception as e:
        return handle_error(e)


@router.post("/process", response_model=list[InvoiceSummary])
async def process_invoices(config: Optional[ProviderConfig] = Body(None)):
    """
    Process all pending invoices.

    Indexes the catalog first if needed.

    Raises:
        400: No API key for the selected provider
        422: No catalog loaded
    """
    try:
        processed = await get_pipeline_service().process_pending(
            invoice_store_service.list_invoices(InvoiceStatus.PENDING),
            get_catalog_service().records,
            default_config(config)
        )
        return [InvoiceSummary.from_invoice(inv) for inv in processed]
    except Exception as e:
        return handle_error(e)


@router.get("/{invoice_id}")
async def get_invoice(invoice_id: str):
    """
    Get one invoice with its mapped items.

    Raises:
        404: Invoice not found
    """
    try:
        return invoice_detail(invoice_store_service.get_invoice(invoice_id))
    except Exception as e:
        return handle_error(e)


@router.post("/{invoice_id}/retry")
async def retry_invoice(invoice_id: str, data: InvoiceRetryRequest):
    """
    Re-run a finished invoice, using the flagged items as feedback.

    Raises:
        404: Invoice not found
        422: Invoice not finished, bad item index, or no catalog
    """
    try:
        invoice = invoice_store_service.get_invoice(invoice_id)

        bad = [i for i in data.incorrect_item_indexes if not 0 <= i < len(invoice.items)]
        if bad:
            raise ValidationError(
                "Item index out of range",
                code="INVALID_ITEM_INDEX",
                details={"indexes": bad, "item_count": len(invoice.items)}
            )
        incorrect = [invoice.items[i] for i in data.incorrect_item_indexes]

        invoice = await get_pipeline_service().retry_invoice(
            invoice,
            get_catalog_service().records,
            default_config(data.config),
            incorrect
        )
        return invoice_detail(invoice)
    except Exception as e:
        return handle_error(e)


@router.delete("/{invoice_id}", status_code=204)
async def delete_invoice(invoice_id: str):
    """
    Remove an invoice.

    Raises:
        404: Invoice not found
    """
    try:
        invoice_store_service.delete_invoice(invoice_id)
    except Exception as e:
        return handle_error(e)
