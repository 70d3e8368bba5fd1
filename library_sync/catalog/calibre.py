"""
Calibre catalog source.

Reads a Calibre library's metadata.db. The database is opened read-only
and never written to; Calibre owns its schema.
"""

import os
from typing import Optional, List, Dict, Any, Iterable, Set

from sqlalchemy import create_engine, text, bindparam
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from library_sync.catalog.base import (
    CatalogBook,
    CatalogSource,
    SupportsBatchTags,
    SupportsPagination,
)
from library_sync.errors import CatalogUnavailableError
from library_sync.utils.logging import get_logger

logger = get_logger(__name__)

# Calibre stores "no date" as 0101-01-01
UNDEFINED_DATE_PREFIX = "0101-01-01"


def _calibre_date(value: Any) -> Any:
    if isinstance(value, str) and value.startswith(UNDEFINED_DATE_PREFIX):
        return None
    return value


def _calibre_rating(value: Optional[int]) -> Optional[float]:
    """Calibre rates 0-10 in half-star steps; 0 means unrated."""
    if not value:
        return None
    return value / 2


class CalibreCatalog(CatalogSource, SupportsBatchTags, SupportsPagination):
    """
    Catalog source over a Calibre metadata.db.

    Supports batch tag lookup and paginated listing, so the sync engine
    can stream large libraries in chunks.
    """

    def __init__(self, db_path: str):
        """
        Args:
            db_path: Path to the library's metadata.db
        """
        self.db_path = db_path
        self._engine: Optional[Engine] = None
        self._tables: Optional[Set[str]] = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            if not os.path.isfile(self.db_path):
                raise CatalogUnavailableError(f"{self.db_path} does not exist", path=self.db_path)

            self._engine = create_engine(
                f"sqlite:///file:{os.path.abspath(self.db_path)}?mode=ro&uri=true",
                poolclass=NullPool,
            )
            logger.debug("Opened Calibre database", path=self.db_path)
        return self._engine

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
        self._tables = None

    def health_check(self) -> str:
        """
        Check Calibre database connectivity.

        Returns:
            "healthy" if a trivial query succeeds, "unavailable" otherwise
        """
        try:
            with self.engine.connect() as conn:
                ok = conn.execute(text("SELECT 1")).scalar() == 1
            return "healthy" if ok else "unavailable"
        except (CatalogUnavailableError, SQLAlchemyError) as e:
            logger.warning("Calibre health check failed", error=str(e))
            return "unavailable"

    def _table_names(self) -> Set[str]:
        if self._tables is None:
            with self.engine.connect() as conn:
                rows = conn.execute(text("SELECT name FROM sqlite_master WHERE type = 'table'"))
                self._tables = {row[0] for row in rows}
        return self._tables

    def _books_query(self, paginated: bool) -> str:
        """
        Build the book listing query for the tables this library has.

        Libraries created by older Calibre versions, or trimmed copies, may
        lack some of the optional link tables.
        """
        tables = self._table_names()
        columns = [
            "b.id", "b.title", "b.timestamp", "b.pubdate", "b.series_index",
            "b.path", "b.has_cover", "b.last_modified",
            "GROUP_CONCAT(DISTINCT a.name) AS authors",
        ]
        joins = [
            "LEFT JOIN books_authors_link bal ON b.id = bal.book",
            "LEFT JOIN authors a ON bal.author = a.id",
        ]

        if {"books_publishers_link", "publishers"} <= tables:
            columns.append("MAX(p.name) AS publisher")
            joins.append("LEFT JOIN books_publishers_link bpl ON b.id = bpl.book")
            joins.append("LEFT JOIN publishers p ON bpl.publisher = p.id")
        else:
            columns.append("NULL AS publisher")

        if {"books_series_link", "series"} <= tables:
            columns.append("MAX(s.name) AS series")
            joins.append("LEFT JOIN books_series_link bsl ON b.id = bsl.book")
            joins.append("LEFT JOIN series s ON bsl.series = s.id")
        else:
            columns.append("NULL AS series")

        if "identifiers" in tables:
            columns.append("GROUP_CONCAT(DISTINCT i.val) AS isbn")
            joins.append("LEFT JOIN identifiers i ON b.id = i.book AND i.type = 'isbn'")
        else:
            columns.append("NULL AS isbn")

        if "comments" in tables:
            columns.append("MAX(c.text) AS description")
            joins.append("LEFT JOIN comments c ON b.id = c.book")
        else:
            columns.append("NULL AS description")

        if {"books_ratings_link", "ratings"} <= tables:
            columns.append("MAX(r.rating) AS rating")
            joins.append("LEFT JOIN books_ratings_link brl ON b.id = brl.book")
            joins.append("LEFT JOIN ratings r ON brl.rating = r.id")
        else:
            columns.append("NULL AS rating")

        query = (
            f"SELECT {', '.join(columns)} FROM books b "
            f"{' '.join(joins)} "
            "GROUP BY b.id ORDER BY b.id"
        )
        if paginated:
            query += " LIMIT :limit OFFSET :offset"
        return query

    def _to_catalog_book(self, row: Dict[str, Any]) -> CatalogBook:
        return CatalogBook(
            id=row["id"],
            title=row["title"],
            authors=row["authors"],
            path=row["path"],
            isbn=row["isbn"],
            publisher=row["publisher"],
            series=row["series"],
            series_index=row["series_index"] if row["series"] else None,
            description=row["description"],
            rating=_calibre_rating(row["rating"]),
            pubdate=_calibre_date(row["pubdate"]),
            has_cover=bool(row["has_cover"]),
            timestamp=_calibre_date(row["timestamp"]),
            last_modified=_calibre_date(row["last_modified"]),
        )

    def get_all_books(
        self,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[CatalogBook]:
        paginated = limit is not None
        query = self._books_query(paginated)
        params = {"limit": limit, "offset": offset or 0} if paginated else {}

        with self.engine.connect() as conn:
            rows = conn.execute(text(query), params).mappings().all()

        return [self._to_catalog_book(row) for row in rows]

    def get_books_count(self) -> int:
        with self.engine.connect() as conn:
            return int(conn.execute(text("SELECT COUNT(*) FROM books")).scalar() or 0)

    def get_book_tags(self, book_id: int) -> List[str]:
        query = text(
            "SELECT t.name FROM tags t "
            "JOIN books_tags_link btl ON t.id = btl.tag "
            "WHERE btl.book = :book_id ORDER BY t.name"
        )
        with self.engine.connect() as conn:
            return [row[0] for row in conn.execute(query, {"book_id": book_id})]

    def get_all_book_tags(self, book_ids: Optional[Iterable[int]] = None) -> Dict[int, List[str]]:
        base = (
            "SELECT btl.book, t.name FROM tags t "
            "JOIN books_tags_link btl ON t.id = btl.tag"
        )
        params: Dict[str, Any] = {}

        if book_ids is None:
            query = text(f"{base} ORDER BY btl.book, t.name")
        else:
            ids = list(book_ids)
            if not ids:
                return {}
            query = text(
                f"{base} WHERE btl.book IN :book_ids ORDER BY btl.book, t.name"
            ).bindparams(bindparam("book_ids", expanding=True))
            params["book_ids"] = ids

        tags: Dict[int, List[str]] = {}
        with self.engine.connect() as conn:
            for book_id, name in conn.execute(query, params):
                tags.setdefault(book_id, []).append(name)
        return tags
