"""
Business logic services.

Each service handles one stage of the invoice mapping pipeline.
"""

from services.retry_service import with_retry, is_retryable_error, RetryPolicy
from services.retrieval_service import nearest, cosine_similarity
from services.embedding_service import EmbeddingService, get_embedding_service
from services.extraction_service import ExtractionService, get_extraction_service
from services.synthesis_service import SynthesisService, get_synthesis_service
from services.pipeline_service import PipelineService, get_pipeline_service
from services.catalog_service import CatalogService, get_catalog_service

__all__ = [
    "with_retry",
    "is_retryable_error",
    "RetryPolicy",
    "nearest",
    "cosine_similarity",
    "EmbeddingService",
    "get_embedding_service",
    "ExtractionService",
    "get_extraction_service",
    "SynthesisService",
    "get_synthesis_service",
    "PipelineService",
    "get_pipeline_service",
    "CatalogService",
    "get_catalog_service",
]
