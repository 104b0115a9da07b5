"""
Custom exceptions module.
"""

from exceptions.errors import (
    # Base exceptions
    AppError,
    NotFoundError,
    ValidationError,
    ExternalServiceError,

    # Providers
    ConfigurationError,
    TransientProviderError,
    MalformedResponseError,
    EmbeddingFailure,

    # Catalog
    CatalogEmptyError,

    # Invoices
    InvoiceNotFoundError,
    NoImageDataError,
    InvalidStatusTransitionError,
)

__all__ = [
    # Base
    "AppError",
    "NotFoundError",
    "ValidationError",
    "ExternalServiceError",

    # Providers
    "ConfigurationError",
    "TransientProviderError",
    "MalformedResponseError",
    "EmbeddingFailure",

    # Catalog
    "CatalogEmptyError",

    # Invoices
    "InvoiceNotFoundError",
    "NoImageDataError",
    "InvalidStatusTransitionError",
]
