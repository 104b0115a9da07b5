"""
API tests for the catalog and invoice routes.

Run: pytest tests/unit/test_routes.py -v
"""

import pytest
from fastapi.testclient import TestClient

import routes.catalog as catalog_routes
import routes.invoices as invoice_routes
from main import app
from models.provider import ProviderName
from tests.fakes import invoice_responder, table


CATALOG = [
    {"id": "P1", "name": "Tomato"},
    {"id": "P2", "name": "Onion", "localName": "Ulli", "metadata": {"origin": "Nashik"}},
]

GEMINI_BODY = {"provider": "gemini"}


@pytest.fixture
def client(monkeypatch, pipeline, embedding_service):
    """TestClient whose pipeline runs against fake providers."""
    monkeypatch.setattr(invoice_routes, "get_pipeline_service", lambda: pipeline)
    monkeypatch.setattr(catalog_routes, "get_embedding_service", lambda: embedding_service)
    return TestClient(app)


@pytest.fixture
def gemini(fake_providers):
    provider = fake_providers[ProviderName.GEMINI]
    provider.responder = invoice_responder(
        {"/9j/a": table(("Tomato", 2, 40))},
        {"Tomato": "P1"}
    )
    return provider


def create_invoice(client) -> str:
    response = client.post("/api/invoices", json={"file_name": "a.jpg", "image_chunks": ["/9j/a"]})
    assert response.status_code == 201
    return response.json()["id"]


class TestAppRoutes:
    """Tests for /health and /"""

    def test_health(self, client):
        """Should report catalog size."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["catalog"]["records"] == 0

    def test_root_lists_endpoints(self, client):
        """Should list the API areas."""
        response = client.get("/")

        assert response.json()["endpoints"] == {
            "catalog": "/api/catalog",
            "invoices": "/api/invoices"
        }


class TestCatalogRoutes:
    """Tests for /api/catalog"""

    def test_upload_and_list(self, client):
        """Should store records and list them without vectors."""
        upload = client.put("/api/catalog", json=CATALOG)
        listing = client.get("/api/catalog")

        assert upload.status_code == 200
        assert upload.json() == {"total": 2, "preserved_embeddings": 0, "needs_indexing": 2}
        records = listing.json()
        assert [r["id"] for r in records] == ["P1", "P2"]
        assert records[1]["local_name"] == "Ulli"
        assert records[0]["indexed"] is False
        assert "embedding" not in records[0]

    def test_index(self, client, gemini):
        """Should embed every record."""
        client.put("/api/catalog", json=CATALOG)

        response = client.post("/api/catalog/index", json=GEMINI_BODY)

        assert response.status_code == 200
        assert response.json() == {"total": 2, "indexed": 2, "missing": 0}
        assert gemini.embed_calls == ["Tomato", "Onion Ulli Nashik"]

    def test_invalid_record_rejected(self, client):
        """Should reject a record without an id."""
        response = client.put("/api/catalog", json=[{"name": "Tomato"}])

        assert response.status_code == 422


class TestInvoiceRoutes:
    """Tests for /api/invoices"""

    def test_create_and_list(self, client):
        """Should register a pending invoice."""
        invoice_id = create_invoice(client)

        pending = client.get("/api/invoices", params={"status": "pending"}).json()
        completed = client.get("/api/invoices", params={"status": "completed"}).json()

        assert [i["id"] for i in pending] == [invoice_id]
        assert pending[0]["status"] == "pending"
        assert completed == []

    def test_create_requires_image_chunks(self, client):
        """Should reject an invoice without images."""
        response = client.post("/api/invoices", json={"file_name": "a.jpg", "image_chunks": []})

        assert response.status_code == 422

    def test_get_missing_invoice(self, client):
        """Should return 404 with the standard error body."""
        response = client.get("/api/invoices/nope")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "INVOICE_NOT_FOUND"

    def test_process_without_catalog(self, client):
        """Should refuse to process before a catalog is uploaded."""
        create_invoice(client)

        response = client.post("/api/invoices/process", json=GEMINI_BODY)

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "CATALOG_EMPTY"

    def test_process_and_fetch(self, client, gemini):
        """Should process pending invoices and return mapped items."""
        client.put("/api/catalog", json=CATALOG)
        invoice_id = create_invoice(client)

        processed = client.post("/api/invoices/process", json=GEMINI_BODY)
        detail = client.get(f"/api/invoices/{invoice_id}").json()

        assert processed.status_code == 200
        assert processed.json()[0]["status"] == "completed"
        assert processed.json()[0]["matched_count"] == 1
        assert detail["items"][0]["matched_product_id"] == "P1"
        assert "image_chunks" not in detail
        assert "embedding" not in detail["items"][0]["candidates"][0]

    def test_retry_with_flagged_item(self, client, gemini):
        """Should re-run a completed invoice with feedback."""
        client.put("/api/catalog", json=CATALOG)
        invoice_id = create_invoice(client)
        client.post("/api/invoices/process", json=GEMINI_BODY)

        response = client.post(
            f"/api/invoices/{invoice_id}/retry",
            json={"config": GEMINI_BODY, "incorrect_item_indexes": [0]}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert "PREVIOUS WRONG MAPPINGS" in gemini.vision_calls[-1]["prompt"]

    def test_retry_rejects_bad_index(self, client, gemini):
        """Should reject item indexes outside the invoice."""
        client.put("/api/catalog", json=CATALOG)
        invoice_id = create_invoice(client)
        client.post("/api/invoices/process", json=GEMINI_BODY)

        response = client.post(
            f"/api/invoices/{invoice_id}/retry",
            json={"incorrect_item_indexes": [5]}
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "INVALID_ITEM_INDEX"

    def test_delete(self, client):
        """Should remove the invoice."""
        invoice_id = create_invoice(client)

        deleted = client.delete(f"/api/invoices/{invoice_id}")
        missing = client.get(f"/api/invoices/{invoice_id}")

        assert deleted.status_code == 204
        assert missing.status_code == 404
