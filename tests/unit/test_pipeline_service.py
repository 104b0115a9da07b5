"""
Unit tests for PipelineService.

Run: pytest tests/unit/test_pipeline_service.py -v
"""

import asyncio
import pytest

from exceptions import CatalogEmptyError, ConfigurationError, InvalidStatusTransitionError
from models.invoice import InvoiceStatus, is_valid_invoice_status_transition
from models.provider import ProviderConfig, ProviderName
from services.embedding_service import EmbeddingService
from services.extraction_service import ExtractionService
from services.pipeline_service import PipelineService
from services.synthesis_service import SynthesisService
from tests.factories import InvoiceFactory, ProductRecordFactory
from tests.fakes import StatusError, index_records, invoice_responder, make_router, table


GEMINI = ProviderConfig(provider=ProviderName.GEMINI)


def build_catalog(indexed: bool = True):
    catalog = [
        ProductRecordFactory.create(id="P1", name="Tomato"),
        ProductRecordFactory.create(id="P2", name="Onion"),
    ]
    return index_records(catalog) if indexed else catalog


def keyless_pipeline(fake_providers, test_settings, retry, sleep_recorder) -> PipelineService:
    """Pipeline whose router has no default keys."""
    router = make_router(fake_providers, test_settings, defaults={})
    embeddings = EmbeddingService(router=router, retry=retry, sleep=sleep_recorder)
    return PipelineService(
        extraction=ExtractionService(router=router, retry=retry, vocabulary_limit=10),
        synthesis=SynthesisService(router=router, embeddings=embeddings, retry=retry, top_k=5),
        embeddings=embeddings,
        batch_size=2,
    )


class TestStatusTransitions:
    """Tests for is_valid_invoice_status_transition()"""

    def test_allowed(self):
        """Should allow the forward path and re-runs of finished invoices."""
        assert is_valid_invoice_status_transition(InvoiceStatus.PENDING, InvoiceStatus.PROCESSING)
        assert is_valid_invoice_status_transition(InvoiceStatus.PROCESSING, InvoiceStatus.COMPLETED)
        assert is_valid_invoice_status_transition(InvoiceStatus.PROCESSING, InvoiceStatus.ERROR)
        assert is_valid_invoice_status_transition(InvoiceStatus.COMPLETED, InvoiceStatus.PROCESSING)
        assert is_valid_invoice_status_transition(InvoiceStatus.ERROR, InvoiceStatus.PROCESSING)

    def test_rejected(self):
        """Should reject skipping processing or leaving it twice."""
        assert not is_valid_invoice_status_transition(InvoiceStatus.PENDING, InvoiceStatus.COMPLETED)
        assert not is_valid_invoice_status_transition(InvoiceStatus.PROCESSING, InvoiceStatus.PROCESSING)
        assert not is_valid_invoice_status_transition(InvoiceStatus.COMPLETED, InvoiceStatus.ERROR)


class TestRunInvoice:
    """Tests for PipelineService.run_invoice()"""

    def test_completes_with_mapped_items(self, pipeline, fake_providers):
        """Should extract, map and mark the invoice completed."""
        fake_providers[ProviderName.GEMINI].responder = invoice_responder(
            {"/9j/a": table(("Tomato", 2, 40), ("Onion", 1, 20))},
            {"Tomato": "P1", "Onion": "P2"}
        )
        invoice = InvoiceFactory.create(image_chunks=["/9j/a"])

        result = asyncio.run(pipeline.run_invoice(invoice, build_catalog(), GEMINI))

        assert result.status == InvoiceStatus.COMPLETED
        assert result.error is None
        assert [(i.raw_name, i.matched_product_id) for i in result.items] == [
            ("Tomato", "P1"), ("Onion", "P2")
        ]

    def test_empty_extraction_completes_without_synthesis(self, pipeline, fake_providers):
        """Should complete with no items and make no mapping call."""
        provider = fake_providers[ProviderName.GEMINI]
        provider.responder = invoice_responder({"/9j/a": "No items found."}, {})
        invoice = InvoiceFactory.create(image_chunks=["/9j/a"])

        result = asyncio.run(pipeline.run_invoice(invoice, build_catalog(), GEMINI))

        assert result.status == InvoiceStatus.COMPLETED
        assert result.items == []
        assert len(provider.vision_calls) == 1

    def test_no_image_data_marks_error(self, pipeline):
        """Should fail an invoice without image chunks."""
        invoice = InvoiceFactory.create(image_chunks=[])

        result = asyncio.run(pipeline.run_invoice(invoice, build_catalog(), GEMINI))

        assert result.status == InvoiceStatus.ERROR
        assert result.error == "No image data"

    def test_provider_failure_marks_error(self, pipeline, fake_providers):
        """Should keep the error message on the invoice instead of raising."""
        fake_providers[ProviderName.GEMINI].responses = [StatusError(401, "invalid api key")]
        invoice = InvoiceFactory.create()

        result = asyncio.run(pipeline.run_invoice(invoice, build_catalog(), GEMINI))

        assert result.status == InvoiceStatus.ERROR
        assert result.error == "invalid api key"

    def test_missing_key_marks_error(self, fake_providers, test_settings, retry, sleep_recorder):
        """Should fail the invoice when no credential can be resolved."""
        pipeline = keyless_pipeline(fake_providers, test_settings, retry, sleep_recorder)
        invoice = InvoiceFactory.create()

        result = asyncio.run(pipeline.run_invoice(invoice, build_catalog(), GEMINI))

        assert result.status == InvoiceStatus.ERROR
        assert result.error == "API key required for gemini"

    def test_processing_invoice_cannot_start_again(self, pipeline):
        """Should reject running an invoice that is already processing."""
        invoice = InvoiceFactory.create(status=InvoiceStatus.PROCESSING)

        with pytest.raises(InvalidStatusTransitionError):
            asyncio.run(pipeline.run_invoice(invoice, build_catalog(), GEMINI))


class TestRetryInvoice:
    """Tests for PipelineService.retry_invoice()"""

    def test_rerun_sends_feedback_to_both_phases(self, pipeline, fake_providers):
        """Should pass flagged items to the OCR and mapping prompts."""
        provider = fake_providers[ProviderName.GEMINI]
        provider.responder = invoice_responder(
            {"/9j/a": table(("Tomato", 2, 40))},
            {"Tomato": "P1"}
        )
        catalog = build_catalog()
        invoice = asyncio.run(pipeline.run_invoice(InvoiceFactory.create(image_chunks=["/9j/a"]), catalog, GEMINI))
        provider.vision_calls.clear()

        result = asyncio.run(pipeline.retry_invoice(invoice, catalog, GEMINI, invoice.items))

        ocr_prompt, mapping_prompt = (c["prompt"] for c in provider.vision_calls)
        assert result.status == InvoiceStatus.COMPLETED
        assert "PREVIOUS MISTAKES" in ocr_prompt
        assert "PREVIOUS WRONG MAPPINGS" in mapping_prompt
        assert '"previous_match_id": "P1"' in mapping_prompt

    def test_failed_invoice_can_be_retried(self, pipeline, fake_providers):
        """Should re-run an invoice in error and clear its error."""
        fake_providers[ProviderName.GEMINI].responder = invoice_responder(
            {"/9j/chunk-1": table(("Onion", 1, 20))},
            {"Onion": "P2"}
        )
        invoice = InvoiceFactory.create(status=InvoiceStatus.ERROR)
        invoice.error = "earlier failure"

        result = asyncio.run(pipeline.retry_invoice(invoice, build_catalog(), GEMINI, []))

        assert result.status == InvoiceStatus.COMPLETED
        assert result.error is None
        assert result.items[0].matched_product_id == "P2"

    def test_pending_invoice_cannot_be_retried(self, pipeline):
        """Should only re-run finished invoices."""
        with pytest.raises(InvalidStatusTransitionError):
            asyncio.run(pipeline.retry_invoice(InvoiceFactory.create(), build_catalog(), GEMINI, []))

    def test_empty_catalog_raises(self, pipeline):
        """Should refuse to run without a catalog."""
        invoice = InvoiceFactory.create(status=InvoiceStatus.COMPLETED)

        with pytest.raises(CatalogEmptyError):
            asyncio.run(pipeline.retry_invoice(invoice, [], GEMINI, []))


class TestProcessPending:
    """Tests for PipelineService.process_pending()"""

    def test_indexes_then_processes_pending_only(self, pipeline, fake_providers):
        """Should index the catalog first and run only pending invoices."""
        provider = fake_providers[ProviderName.GEMINI]
        provider.responder = invoice_responder(
            {"/9j/chunk-1": table(("Tomato", 1, 10))},
            {"Tomato": "P1"}
        )
        catalog = build_catalog(indexed=False)
        pending = [InvoiceFactory.create() for _ in range(3)]
        done = InvoiceFactory.create(status=InvoiceStatus.COMPLETED)
        progress = []

        result = asyncio.run(pipeline.process_pending(
            pending + [done],
            catalog,
            GEMINI,
            on_index_progress=lambda n, total: progress.append(n)
        ))

        assert all(r.has_embedding for r in catalog)
        assert progress == [1, 2]
        assert result == pending
        assert all(inv.status == InvoiceStatus.COMPLETED for inv in pending)
        assert done.items == []

    def test_one_failure_does_not_stop_the_batch(self, pipeline, fake_providers):
        """Should finish the other invoices when one fails."""
        fake_providers[ProviderName.GEMINI].responder = invoice_responder(
            {"/9j/good": table(("Onion", 1, 20))},
            {"Onion": "P2"}
        )
        good = InvoiceFactory.create(image_chunks=["/9j/good"])
        bad = InvoiceFactory.create(image_chunks=[])

        asyncio.run(pipeline.process_pending([bad, good], build_catalog(), GEMINI))

        assert bad.status == InvoiceStatus.ERROR
        assert good.status == InvoiceStatus.COMPLETED

    def test_overlapping_runs_share_the_pending_invoices(self, pipeline, fake_providers):
        """Should run each pending invoice once when two runs overlap."""
        provider = fake_providers[ProviderName.GEMINI]
        provider.responder = invoice_responder(
            {"/9j/chunk-1": table(("Tomato", 1, 10))},
            {"Tomato": "P1"}
        )
        catalog = build_catalog()
        invoices = [InvoiceFactory.create() for _ in range(4)]

        async def overlap():
            return await asyncio.gather(
                pipeline.process_pending(invoices, catalog, GEMINI),
                pipeline.process_pending(invoices, catalog, GEMINI),
                return_exceptions=True
            )

        first, second = asyncio.run(overlap())

        assert isinstance(first, list)
        assert isinstance(second, list)
        assert sorted(inv.id for inv in first + second) == sorted(inv.id for inv in invoices)
        assert all(inv.status == InvoiceStatus.COMPLETED for inv in invoices)
        assert len(provider.vision_calls) == 8

    def test_skips_invoices_claimed_elsewhere(self, pipeline, fake_providers):
        """Should skip invoices that left pending after the list was taken."""
        fake_providers[ProviderName.GEMINI].responder = invoice_responder(
            {"/9j/chunk-1": table(("Tomato", 1, 10))},
            {"Tomato": "P1"}
        )
        claimed = InvoiceFactory.create(status=InvoiceStatus.PROCESSING)
        waiting = InvoiceFactory.create()

        result = asyncio.run(pipeline.process_pending([claimed, waiting], build_catalog(), GEMINI))

        assert result == [waiting]
        assert claimed.status == InvoiceStatus.PROCESSING
        assert waiting.status == InvoiceStatus.COMPLETED

    def test_empty_catalog_raises(self, pipeline):
        """Should refuse to run without a catalog."""
        with pytest.raises(CatalogEmptyError):
            asyncio.run(pipeline.process_pending([InvoiceFactory.create()], [], GEMINI))

    def test_indexing_without_key_raises(self, fake_providers, test_settings, retry, sleep_recorder):
        """Should surface a missing key before any invoice starts."""
        pipeline = keyless_pipeline(fake_providers, test_settings, retry, sleep_recorder)
        invoice = InvoiceFactory.create()

        with pytest.raises(ConfigurationError):
            asyncio.run(pipeline.process_pending([invoice], build_catalog(indexed=False), GEMINI))

        assert invoice.status == InvoiceStatus.PENDING
