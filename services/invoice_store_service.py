"""
In-memory registry of submitted invoices.
Transient: nothing survives a restart.
"""
from typing import Optional

from exceptions import InvoiceNotFoundError
from models.invoice import InvoiceStatus, ProcessedInvoice

_invoices: dict[str, ProcessedInvoice] = {}


def add_invoice(invoice: ProcessedInvoice) -> ProcessedInvoice:
    """Register an invoice, return it."""
    _invoices[invoice.id] = invoice
    return invoice


def get_invoice(invoice_id: str) -> ProcessedInvoice:
    """Look up an invoice or raise InvoiceNotFoundError."""
    invoice = _invoices.get(invoice_id)
    if invoice is None:
        raise InvoiceNotFoundError(invoice_id)
    return invoice


def list_invoices(status: Optional[InvoiceStatus] = None) -> list[ProcessedInvoice]:
    """All invoices in submission order, optionally filtered by status."""
    invoices = list(_invoices.values())
    if status is not None:
        invoices = [inv for inv in invoices if inv.status == status]
    return invoices


def delete_invoice(invoice_id: str) -> None:
    """Remove an invoice; raise if it does not exist."""
    if _invoices.pop(invoice_id, None) is None:
        raise InvoiceNotFoundError(invoice_id)


def clear() -> None:
    """Remove all invoices."""
    _invoices.clear()
