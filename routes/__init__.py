"""
API route modules.

Each module defines routes for one domain area.
"""

from routes.catalog import router as catalog_router
from routes.invoices import router as invoices_router

__all__ = [
    "catalog_router",
    "invoices_router",
]
