"""
Repositories over the tracking store.

Book writes are sequence-safe: callers resolve existence first and then
use ``bulk_insert`` for new rows or ``bulk_update`` for existing ones.
Only ``bulk_insert`` may advance the ``books`` identity sequence.
"""

from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable, Collection

from sqlalchemy import text
from sqlalchemy.orm import Session

from library_sync.db.database import get_db_session
from library_sync.db.models import Book, ReadingSession, DEFAULT_SESSION_STATUS
from library_sync.utils.logging import get_logger

logger = get_logger(__name__)


def _bootstrap_sessions(session: Session, book_ids: Iterable[int]) -> List[ReadingSession]:
    reading_sessions = [
        ReadingSession(
            book_id=book_id,
            session_number=1,
            status=DEFAULT_SESSION_STATUS,
            is_active=True,
        )
        for book_id in book_ids
    ]
    session.add_all(reading_sessions)
    return reading_sessions


class BookRepository:
    """Persistence operations on tracked books."""

    def find_by_id(self, book_id: int) -> Optional[Book]:
        with get_db_session() as session:
            return session.get(Book, book_id)

    def find_by_external_id(self, calibre_id: int) -> Optional[Book]:
        """Find the book mirrored from a Calibre book id."""
        with get_db_session() as session:
            return session.query(Book).filter(Book.calibre_id == calibre_id).first()

    def find_by_external_ids(self, calibre_ids: Collection[int]) -> Dict[int, int]:
        """
        Resolve which Calibre ids are already tracked.

        Returns:
            Mapping of calibre id to book id for the ids that exist
        """
        if not calibre_ids:
            return {}

        with get_db_session() as session:
            rows = session.query(Book.calibre_id, Book.id).filter(
                Book.calibre_id.in_(list(calibre_ids))
            ).all()
            return {calibre_id: book_id for calibre_id, book_id in rows}

    def find_not_in_external_ids(self, calibre_ids: Collection[int]) -> List[Book]:
        """
        Find active books whose Calibre id is not in ``calibre_ids``.

        An empty id set returns no books. Treating it as "nothing is
        excluded" would flag every tracked book as removed.
        """
        if not calibre_ids:
            return []

        present = set(calibre_ids)
        with get_db_session() as session:
            # Filtered in Python: the observed set can exceed SQLite's bound-parameter limit
            candidates = session.query(Book).filter(
                Book.calibre_id.isnot(None),
                Book.orphaned.is_(False),
            ).order_by(Book.calibre_id).all()
            return [book for book in candidates if book.calibre_id not in present]

    def find_orphaned(self) -> List[Book]:
        with get_db_session() as session:
            return session.query(Book).filter(
                Book.orphaned.is_(True)
            ).order_by(Book.orphaned_at.desc()).all()

    def count(self) -> int:
        with get_db_session() as session:
            return session.query(Book).count()

    def count_tracked(self) -> int:
        """Count active (not orphaned) books that mirror a Calibre record."""
        with get_db_session() as session:
            return session.query(Book).filter(
                Book.calibre_id.isnot(None),
                Book.orphaned.is_(False),
            ).count()

    def create(self, **values: Any) -> Book:
        """Create a single book without a reading session."""
        with get_db_session() as session:
            book = Book(**values)
            session.add(book)
            session.flush()
            return book

    def bulk_insert(self, records: List[Dict[str, Any]]) -> List[Book]:
        """
        Insert brand-new books and their bootstrap reading sessions.

        The identity sequence advances by exactly ``len(records)``.

        Args:
            records: Book column values, without ``id``

        Returns:
            The created books, with ids assigned
        """
        if not records:
            return []

        now = datetime.utcnow()
        with get_db_session() as session:
            books = []
            for record in records:
                values = {key: value for key, value in record.items() if key != "id"}
                if values.get("added_to_library") is None:
                    values["added_to_library"] = now
                books.append(Book(**values))

            session.add_all(books)
            session.flush()
            _bootstrap_sessions(session, [book.id for book in books])

        logger.debug("Inserted books", count=len(books))
        return books

    def bulk_update(self, records: List[Dict[str, Any]]) -> int:
        """
        Update existing books in place by primary key.

        Never inserts, so the identity sequence does not move. Reading
        sessions are not touched.

        Args:
            records: Book column values, each including the book's ``id``

        Returns:
            Number of books updated
        """
        if not records:
            return 0

        mappings = []
        for record in records:
            if record.get("id") is None:
                raise ValueError("bulk_update requires the id of an existing book")
            mapping = dict(record)
            if mapping.get("added_to_library") is None:
                mapping.pop("added_to_library", None)
            mapping["updated_at"] = datetime.utcnow()
            mappings.append(mapping)

        with get_db_session() as session:
            session.bulk_update_mappings(Book, mappings)

        logger.debug("Updated books", count=len(mappings))
        return len(mappings)

    def mark_orphaned(self, book_id: int, orphaned_at: Optional[datetime] = None) -> Optional[Book]:
        """Flag a book as no longer present in Calibre. The row is kept."""
        with get_db_session() as session:
            book = session.get(Book, book_id)
            if book is None:
                return None
            book.orphaned = True
            book.orphaned_at = orphaned_at or datetime.utcnow()
            return book

    def get_sequence_value(self) -> int:
        """
        Current value of the books identity sequence.

        SQLite only: the value is read from ``sqlite_sequence``, which the
        ``AUTOINCREMENT`` on ``books.id`` maintains. Returns 0 when no book
        has ever been inserted.
        """
        with get_db_session() as session:
            dialect = session.get_bind().dialect.name
            if dialect != "sqlite":
                raise NotImplementedError(f"Sequence inspection not supported for {dialect}")
            value = session.execute(
                text("SELECT seq FROM sqlite_sequence WHERE name = :name"),
                {"name": Book.__tablename__},
            ).scalar()
            return int(value or 0)


class SessionRepository:
    """Persistence operations on reading sessions."""

    def create(self, **values: Any) -> ReadingSession:
        with get_db_session() as session:
            reading_session = ReadingSession(**values)
            session.add(reading_session)
            session.flush()
            return reading_session

    def find_active_by_book_id(self, book_id: int) -> Optional[ReadingSession]:
        with get_db_session() as session:
            return session.query(ReadingSession).filter(
                ReadingSession.book_id == book_id,
                ReadingSession.is_active.is_(True),
            ).order_by(ReadingSession.session_number.desc()).first()

    def count_by_book_id(self, book_id: int) -> int:
        with get_db_session() as session:
            return session.query(ReadingSession).filter(
                ReadingSession.book_id == book_id
            ).count()

    def count(self) -> int:
        with get_db_session() as session:
            return session.query(ReadingSession).count()
