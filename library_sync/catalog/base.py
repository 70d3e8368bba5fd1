"""
Catalog source interface.

A catalog source is a read-only view of an external library. Every source
can list books and look up a book's tags; batch tag lookup and paginated
listing are optional capabilities, declared by also subclassing
``SupportsBatchTags`` and/or ``SupportsPagination``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, List, Dict, Union, Iterable

DateValue = Union[str, datetime, date, None]


@dataclass(frozen=True)
class CatalogBook:
    """A book as the external catalog reports it."""
    id: int
    title: str
    authors: Optional[str]
    path: str
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    series: Optional[str] = None
    series_index: Optional[float] = None
    description: Optional[str] = None
    rating: Optional[float] = None  # 1-5 stars
    pubdate: DateValue = None
    has_cover: bool = False
    timestamp: DateValue = None  # when the book was added to the catalog
    last_modified: DateValue = None


class CatalogSource(ABC):
    """Read-only access to an external book catalog."""

    @abstractmethod
    def get_all_books(
        self,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[CatalogBook]:
        """
        List catalog books.

        Without ``limit``/``offset`` the entire catalog is returned.
        """

    @abstractmethod
    def get_book_tags(self, book_id: int) -> List[str]:
        """Tags of a single book."""

    def close(self) -> None:
        """Release any connection held by the source."""

    def health_check(self) -> str:
        """
        Report whether the source can be read.

        Returns:
            "healthy" or "unavailable"
        """
        return "healthy"


class SupportsBatchTags(ABC):
    """Capability: fetch tags for many books in one call."""

    @abstractmethod
    def get_all_book_tags(self, book_ids: Optional[Iterable[int]] = None) -> Dict[int, List[str]]:
        """
        Tags keyed by book id.

        Only ``book_ids`` are looked up when given; books without tags may
        be absent from the result.
        """


class SupportsPagination(ABC):
    """Capability: count the catalog so it can be fetched page by page."""

    @abstractmethod
    def get_books_count(self) -> int:
        """Total number of books in the catalog."""


def supports_batch_tags(source: CatalogSource) -> bool:
    return isinstance(source, SupportsBatchTags)


def supports_pagination(source: CatalogSource) -> bool:
    return isinstance(source, SupportsPagination)
