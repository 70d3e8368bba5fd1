"""
Exception types for Library Sync Service.
"""

from dataclasses import dataclass
from typing import Optional


class LibrarySyncError(Exception):
    """Base class for library sync failures."""


@dataclass
class CatalogUnavailableError(LibrarySyncError):
    """Raised when the external catalog cannot be opened or queried."""
    message: str
    path: Optional[str] = None

    def __str__(self) -> str:
        return f"Failed to connect to Calibre database: {self.message}"


@dataclass
class InvalidRecordError(LibrarySyncError):
    """Raised when a catalog record carries a value that cannot be normalized."""
    message: str
    book_id: Optional[int] = None
    field_name: Optional[str] = None

    def __str__(self) -> str:
        if self.book_id is not None:
            return f"Invalid catalog record {self.book_id}: {self.message}"
        return f"Invalid catalog record: {self.message}"


class ConfigurationError(LibrarySyncError):
    """Raised when required configuration is missing."""
