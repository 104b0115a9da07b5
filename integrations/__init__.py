"""
External AI backends.

Each backend implements AIProvider; ProviderRouter picks the backend
for a given kind of work.
"""

from integrations.base import AIProvider, resolve_api_key, detect_media_type
from integrations.router import (
    ProviderRouter,
    get_provider_router,
    EMBEDDING_FALLBACK,
)

__all__ = [
    "AIProvider",
    "resolve_api_key",
    "detect_media_type",
    "ProviderRouter",
    "get_provider_router",
    "EMBEDDING_FALLBACK",
]
