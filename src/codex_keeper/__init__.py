"""Documentation cache with versioned storage, line search and relevance-ranked queries."""

from __future__ import annotations

from typing import TYPE_CHECKING

from codex_keeper.errors import (
    KeeperError,
    NetworkError,
    NotFoundError,
    ProviderRateLimitError,
    RateLimitExceededError,
    StorageError,
    ValidationError,
)

if TYPE_CHECKING:
    from codex_keeper.service.documentation_service import DocumentationService

__version__ = "0.1.0"

__all__ = [
    "DocumentationService",
    "KeeperError",
    "NetworkError",
    "NotFoundError",
    "ProviderRateLimitError",
    "RateLimitExceededError",
    "StorageError",
    "ValidationError",
]


def __getattr__(name: str):
    if name == "DocumentationService":
        from codex_keeper.service.documentation_service import DocumentationService as _DocumentationService

        return _DocumentationService
    raise AttributeError(name)
