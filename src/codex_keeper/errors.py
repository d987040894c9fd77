from __future__ import annotations

from typing import Optional


class KeeperError(Exception):
    """Base class for every error the keeper surfaces to callers."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is None:
            return self.message
        return f"{self.message}: {self.cause}"


class StorageError(KeeperError):
    """Disk I/O, permission or corruption failure."""


class NetworkError(KeeperError):
    """Connection failure or HTTP error status."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.status = status


class FetchTimeoutError(NetworkError):
    pass


class ProviderRateLimitError(NetworkError):
    """An upstream provider refused the request because its rate limit is exhausted."""

    def __init__(
        self,
        message: str,
        *,
        reset_at: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, status=403, cause=cause)
        self.reset_at = reset_at


class ValidationError(KeeperError):
    """Disallowed URL scheme, oversized content or malformed request."""


class NotFoundError(KeeperError):
    """Unknown document name or missing version/backup."""


class RateLimitExceededError(KeeperError):
    def __init__(self, client_id: str, retry_after: float) -> None:
        super().__init__(f"Rate limit exceeded for client {client_id}, retry after {retry_after:.3f}s")
        self.client_id = client_id
        self.retry_after = retry_after


__all__ = [
    "FetchTimeoutError",
    "KeeperError",
    "NetworkError",
    "NotFoundError",
    "ProviderRateLimitError",
    "RateLimitExceededError",
    "StorageError",
    "ValidationError",
]
