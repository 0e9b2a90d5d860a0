"""Failure taxonomy for the ledger and its remote mirror."""

from typing import Optional

class LedgerError(Exception):
    """Base class for every ledger failure."""

class RemoteStoreError(LedgerError):
    """A remote store call did not succeed."""

class NotFoundError(RemoteStoreError):
    """The remote object does not exist."""

class ConflictError(RemoteStoreError):
    """The remote object moved past the version the write was based on."""

class TransientIOError(RemoteStoreError):
    """Network or service failure; the caller may retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

class DecodeError(LedgerError):
    """Persisted ledger content could not be understood."""

class UnknownCatalogItemError(LedgerError, ValueError):
    """A product, option category or option selection is not in the catalog."""
