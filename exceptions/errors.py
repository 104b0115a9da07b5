"""
Custom exception classes for the application.

Provider SDK errors are not wrapped here; they reach the retry harness
with their own status codes. These classes cover the failures the
pipeline itself detects.
"""

from typing import Optional, Any
from datetime import datetime, timezone


class AppError(Exception):
    """
    Base exception for all application errors.

    All custom exceptions inherit from this.

    Attributes:
        code: Error code (e.g., "INVOICE_NOT_FOUND")
        message: Human-readable message
        status_code: HTTP status code
        details: Additional context
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to API response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "timestamp": self.timestamp
            }
        }


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(
        self,
        resource: str,
        identifier: str,
        code: Optional[str] = None
    ):
        super().__init__(
            code=code or f"{resource.upper()}_NOT_FOUND",
            message=f"{resource} not found",
            status_code=404,
            details={"id": identifier}
        )


class ValidationError(AppError):
    """Validation failed (422)."""

    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=422,
            details=details
        )


class ExternalServiceError(AppError):
    """External service failure (503)."""

    def __init__(
        self,
        service: str,
        message: str,
        details: Optional[dict] = None
    ):
        super().__init__(
            code=f"{service.upper()}_ERROR",
            message=message,
            status_code=503,
            details={"service": service, **(details or {})}
        )


# ===================
# PROVIDER ERRORS
# ===================

class ConfigurationError(AppError):
    """No usable credential or provider setup (fatal)."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(
            code="CONFIGURATION_ERROR",
            message=message,
            status_code=400,
            details={"provider": provider} if provider else None
        )


class TransientProviderError(ExternalServiceError):
    """Rate limit or 5xx from a provider. Always retryable."""

    def __init__(self, provider: str, message: str, status: Optional[int] = None):
        super().__init__(
            service=provider,
            message=message,
            details={"status": status} if status else None
        )
        self.status = status


class MalformedResponseError(AppError):
    """Model output could not be decoded into the expected structure."""

    def __init__(self, message: str, preview: Optional[str] = None):
        super().__init__(
            code="MALFORMED_RESPONSE",
            message=message,
            status_code=502,
            details={"preview": preview[:300]} if preview else None
        )


class EmbeddingFailure(AppError):
    """Embedding call for one record or query failed."""

    def __init__(self, subject: str, message: str):
        super().__init__(
            code="EMBEDDING_FAILED",
            message=f"Embedding failed for {subject}: {message}",
            status_code=502,
            details={"subject": subject}
        )


# ===================
# CATALOG ERRORS
# ===================

class CatalogEmptyError(ValidationError):
    """Operation needs a catalog but none is loaded."""

    def __init__(self):
        super().__init__(
            code="CATALOG_EMPTY",
            message="Upload a product catalog before processing invoices"
        )


# ===================
# INVOICE ERRORS
# ===================

class InvoiceNotFoundError(NotFoundError):
    """Invoice not found."""

    def __init__(self, invoice_id: str):
        super().__init__(
            resource="Invoice",
            identifier=invoice_id,
            code="INVOICE_NOT_FOUND"
        )


class NoImageDataError(ValidationError):
    """Invoice has no image chunks to extract from."""

    def __init__(self, invoice_id: str):
        super().__init__(
            code="NO_IMAGE_DATA",
            message="No image data",
            details={"invoice_id": invoice_id}
        )


class InvalidStatusTransitionError(ValidationError):
    """Invalid invoice status transition."""

    def __init__(self, current_status: str, new_status: str):
        super().__init__(
            code="INVALID_STATUS_TRANSITION",
            message=f"Cannot transition from {current_status} to {new_status}",
            details={
                "current_status": current_status,
                "requested_status": new_status
            }
        )
