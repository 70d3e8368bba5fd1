"""
Data models for sync operations.
"""

from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

DEFAULT_CHUNK_SIZE = 500


@dataclass
class SyncOptions:
    """Options controlling a single sync pass."""
    detect_orphans: bool = True
    chunk_size: int = DEFAULT_CHUNK_SIZE

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be a positive integer")


@dataclass
class OrphanedBook:
    """Summary of a book that was marked orphaned during a sync."""
    id: int
    calibre_id: Optional[int]
    title: str
    authors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "calibreId": self.calibre_id,
            "title": self.title,
            "authors": list(self.authors),
        }


@dataclass
class SyncResult:
    """Result of a complete sync pass."""
    success: bool
    synced_count: int = 0
    updated_count: int = 0
    removed_count: int = 0
    total_books: int = 0
    orphaned_books: Optional[List[OrphanedBook]] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> "SyncResult":
        """A failed result with every count zeroed."""
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        """Render the result in the shape callers of the HTTP API expect."""
        data: Dict[str, Any] = {
            "success": self.success,
            "syncedCount": self.synced_count,
            "updatedCount": self.updated_count,
            "removedCount": self.removed_count,
            "totalBooks": self.total_books,
        }
        if self.orphaned_books is not None:
            data["orphanedBooks"] = [book.to_dict() for book in self.orphaned_books]
        if self.error is not None:
            data["error"] = self.error
        return data
