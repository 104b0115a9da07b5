"""
Invoice pipeline orchestration.

Runs Extraction then Synthesis for each invoice and tracks the invoice
state machine:

    pending → processing → completed | error
    completed | error → processing   (re-run with user feedback)

Pending invoices run in small concurrent batches. The catalog is
indexed, and that indexing awaited, before any invoice starts, so
pipelines only ever read embeddings.
"""

import asyncio
from typing import Optional, Sequence

import structlog

from config import get_settings
from exceptions import (
    AppError,
    CatalogEmptyError,
    InvalidStatusTransitionError,
    NoImageDataError,
)
from models.catalog import ProductRecord
from models.invoice import (
    FeedbackSet,
    InvoiceStatus,
    MappedInvoiceItem,
    ProcessedInvoice,
    is_valid_invoice_status_transition,
)
from models.provider import ProviderConfig
from services.embedding_service import (
    EmbeddingService,
    ProgressCallback,
    get_embedding_service,
)
from services.extraction_service import ExtractionService, get_extraction_service
from services.synthesis_service import SynthesisService, get_synthesis_service

logger = structlog.get_logger(__name__)


class PipelineService:
    """
    Invoice processing workflow.

    Depends only on the phase services; provider choice is carried in the
    ProviderConfig and resolved further down.
    """

    def __init__(
        self,
        extraction: Optional[ExtractionService] = None,
        synthesis: Optional[SynthesisService] = None,
        embeddings: Optional[EmbeddingService] = None,
        batch_size: Optional[int] = None
    ):
        self.extraction = extraction or get_extraction_service()
        self.synthesis = synthesis or get_synthesis_service()
        self.embeddings = embeddings or get_embedding_service()
        self.batch_size = batch_size or get_settings().invoice_batch_size

    # ===================
    # SINGLE INVOICE
    # ===================

    async def process_invoice(
        self,
        image_chunks: Sequence[str],
        catalog: Sequence[ProductRecord],
        config: ProviderConfig,
        feedback: Optional[FeedbackSet] = None
    ) -> list[MappedInvoiceItem]:
        """
        Extract and map one invoice.

        Returns:
            Mapped items; empty when extraction found no rows
        """
        raw_items = await self.extraction.extract(image_chunks, config, catalog, feedback)
        if not raw_items:
            logger.info("pipeline_no_items_extracted", chunks=len(image_chunks))
            return []

        return await self.synthesis.synthesize(raw_items, catalog, config, feedback)

    def _transition(self, invoice: ProcessedInvoice, new_status: InvoiceStatus) -> None:
        if not is_valid_invoice_status_transition(invoice.status, new_status):
            raise InvalidStatusTransitionError(invoice.status.value, new_status.value)
        logger.debug(
            "invoice_status_changed",
            invoice_id=invoice.id,
            from_status=invoice.status.value,
            to_status=new_status.value
        )
        invoice.status = new_status

    async def run_invoice(
        self,
        invoice: ProcessedInvoice,
        catalog: Sequence[ProductRecord],
        config: ProviderConfig,
        feedback: Optional[FeedbackSet] = None
    ) -> ProcessedInvoice:
        """
        Move one invoice through processing.

        Any failure inside the phases ends in status `error` with the
        message kept on the invoice; it is not raised to the caller.

        Raises:
            InvalidStatusTransitionError: If the invoice is already processing
        """
        self._transition(invoice, InvoiceStatus.PROCESSING)
        return await self._run_claimed(invoice, catalog, config, feedback)

    async def _run_claimed(
        self,
        invoice: ProcessedInvoice,
        catalog: Sequence[ProductRecord],
        config: ProviderConfig,
        feedback: Optional[FeedbackSet] = None
    ) -> ProcessedInvoice:
        """Run the phases for an invoice already moved to processing."""
        invoice.error = None

        logger.info(
            "invoice_processing_started",
            invoice_id=invoice.id,
            file_name=invoice.file_name,
            chunks=len(invoice.image_chunks),
            has_feedback=bool(feedback)
        )

        try:
            if not invoice.image_chunks:
                raise NoImageDataError(invoice.id)

            items = await self.process_invoice(invoice.image_chunks, catalog, config, feedback)
        except Exception as e:
            message = e.message if isinstance(e, AppError) else str(e)
            logger.error(
                "invoice_processing_failed",
                invoice_id=invoice.id,
                error=message,
                error_type=type(e).__name__
            )
            invoice.error = message or type(e).__name__
            self._transition(invoice, InvoiceStatus.ERROR)
            return invoice

        invoice.items = items
        self._transition(invoice, InvoiceStatus.COMPLETED)

        logger.info(
            "invoice_processing_completed",
            invoice_id=invoice.id,
            items=len(items),
            matched=sum(1 for i in items if i.matched_product_id)
        )
        return invoice

    async def retry_invoice(
        self,
        invoice: ProcessedInvoice,
        catalog: Sequence[ProductRecord],
        config: ProviderConfig,
        incorrect_items: Sequence[MappedInvoiceItem]
    ) -> ProcessedInvoice:
        """
        Re-run a finished invoice, steering away from flagged items.

        Raises:
            CatalogEmptyError: If there is no catalog
            InvalidStatusTransitionError: If the invoice is not finished
        """
        if not catalog:
            raise CatalogEmptyError()
        if invoice.status not in (InvoiceStatus.COMPLETED, InvoiceStatus.ERROR):
            raise InvalidStatusTransitionError(invoice.status.value, InvoiceStatus.PROCESSING.value)

        await self.ensure_indexed(catalog, config)
        feedback = FeedbackSet(incorrect_items=list(incorrect_items))
        return await self.run_invoice(invoice, catalog, config, feedback)

    # ===================
    # BATCHES
    # ===================

    async def ensure_indexed(
        self,
        catalog: Sequence[ProductRecord],
        config: ProviderConfig,
        on_progress: Optional[ProgressCallback] = None
    ) -> None:
        """Index the catalog if any record lacks an embedding."""
        if any(not r.has_embedding for r in catalog):
            await self.embeddings.index_catalog(catalog, config, on_progress)

    def _claim_batch(
        self,
        invoices: Sequence[ProcessedInvoice]
    ) -> tuple[list[ProcessedInvoice], list[ProcessedInvoice]]:
        """
        Move up to batch_size still-pending invoices to processing.

        Runs without awaiting, so a concurrent run cannot claim the same
        invoice. Invoices another run already took are skipped.

        Returns:
            (claimed batch, invoices left to scan)
        """
        batch: list[ProcessedInvoice] = []
        position = 0
        while position < len(invoices) and len(batch) < self.batch_size:
            invoice = invoices[position]
            position += 1
            if invoice.status == InvoiceStatus.PENDING:
                self._transition(invoice, InvoiceStatus.PROCESSING)
                batch.append(invoice)
        return batch, list(invoices[position:])

    async def process_pending(
        self,
        invoices: Sequence[ProcessedInvoice],
        catalog: Sequence[ProductRecord],
        config: ProviderConfig,
        on_index_progress: Optional[ProgressCallback] = None
    ) -> list[ProcessedInvoice]:
        """
        Process every pending invoice in bounded concurrent batches.

        Returns:
            The invoices this call processed, in their final state

        Raises:
            CatalogEmptyError: If there is no catalog
            ConfigurationError: If the catalog cannot be indexed for lack of a key
        """
        if not catalog:
            raise CatalogEmptyError()

        await self.ensure_indexed(catalog, config, on_index_progress)

        logger.info(
            "pending_invoices_processing",
            count=sum(1 for inv in invoices if inv.status == InvoiceStatus.PENDING),
            batch_size=self.batch_size
        )

        pending: list[ProcessedInvoice] = []
        remaining = list(invoices)
        while True:
            batch, remaining = self._claim_batch(remaining)
            if not batch:
                break
            pending.extend(batch)
            await asyncio.gather(
                *(self._run_claimed(invoice, catalog, config) for invoice in batch)
            )

        logger.info(
            "pending_invoices_processed",
            completed=sum(1 for i in pending if i.status == InvoiceStatus.COMPLETED),
            failed=sum(1 for i in pending if i.status == InvoiceStatus.ERROR)
        )
        return pending


# Singleton instance
_pipeline_service: Optional[PipelineService] = None


def get_pipeline_service() -> PipelineService:
    """Get or create PipelineService instance."""
    global _pipeline_service
    if _pipeline_service is None:
        _pipeline_service = PipelineService()
    return _pipeline_service
