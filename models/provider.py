"""
Provider selection schemas.
"""

from enum import Enum
from typing import Optional
from pydantic import Field

from models.base import FrozenSchema


class ProviderName(str, Enum):
    """Supported AI backends."""
    GEMINI = "gemini"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class ProviderConfig(FrozenSchema):
    """
    Backend selection for one pipeline invocation.

    When `api_key` is empty the process-level default for the provider
    is used. Immutable for the duration of the invocation.
    """

    provider: ProviderName = Field(default=ProviderName.GEMINI)
    api_key: Optional[str] = Field(
        None,
        alias="apiKey",
        repr=False,
        description="Explicit key; falls back to the process default"
    )
