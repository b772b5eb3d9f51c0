"""Exceptions shared by the receipt cache, the ERP client and the sync engine."""
from typing import Optional


class ReceiptSyncError(Exception):
    """Base class for receipt synchronization failures."""


class RemoteError(ReceiptSyncError):
    """The remote receipt collection could not be read."""

    retryable = False

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RateLimited(RemoteError):
    """The remote asked us to slow down; the same request may be retried."""

    retryable = True

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None,
                 status: Optional[int] = 429):
        super().__init__(message, status=status)
        self.retry_after = retry_after


class StoreError(ReceiptSyncError):
    """Local cache read or write failed."""


class NotInitialized(ReceiptSyncError):
    """The cache (or the service owning it) was used before open()."""
