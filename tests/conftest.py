"""
Shared test fixtures.

AI backends are replaced by FakeProvider (see tests/fakes.py), injected
through ProviderRouter factories. Nothing here touches the network.
"""

import sys
from pathlib import Path

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

import pytest

from config import Settings
from integrations.router import ProviderRouter
from models.provider import ProviderName
from services import invoice_store_service
from services.catalog_service import get_catalog_service
from services.embedding_service import EmbeddingService
from services.extraction_service import ExtractionService
from services.pipeline_service import PipelineService
from services.retry_service import RetryPolicy
from services.synthesis_service import SynthesisService
from tests.fakes import FakeProvider, SleepRecorder, make_router


# ===================
# FIXTURES
# ===================

@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        gemini_api_key=None,
        openai_api_key=None,
        anthropic_api_key=None,
        vision_provider=None,
    )


@pytest.fixture
def fake_providers() -> dict:
    """One FakeProvider per backend, keyed by ProviderName."""
    return {name: FakeProvider(name=name) for name in ProviderName}


@pytest.fixture
def router(fake_providers, test_settings) -> ProviderRouter:
    return make_router(fake_providers, test_settings)


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def retry(sleep_recorder) -> RetryPolicy:
    return RetryPolicy(sleep=sleep_recorder)


@pytest.fixture
def embedding_service(router, retry, sleep_recorder) -> EmbeddingService:
    return EmbeddingService(router=router, retry=retry, sleep=sleep_recorder)


@pytest.fixture
def extraction_service(router, retry) -> ExtractionService:
    return ExtractionService(router=router, retry=retry, vocabulary_limit=200)


@pytest.fixture
def synthesis_service(router, embedding_service, retry) -> SynthesisService:
    return SynthesisService(router=router, embeddings=embedding_service, retry=retry, top_k=5)


@pytest.fixture
def pipeline(extraction_service, synthesis_service, embedding_service) -> PipelineService:
    return PipelineService(
        extraction=extraction_service,
        synthesis=synthesis_service,
        embeddings=embedding_service,
        batch_size=2,
    )


@pytest.fixture(autouse=True)
def reset_state():
    """Empty the in-memory invoice store and catalog around each test."""
    invoice_store_service.clear()
    get_catalog_service().clear()
    yield
    invoice_store_service.clear()
    get_catalog_service().clear()
