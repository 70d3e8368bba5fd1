"""
Library sync engine.

Mirrors an external catalog into the tracking store: fetches the catalog
chunk by chunk, inserts new books, updates known ones, and marks books
that disappeared from the catalog as orphaned when it is safe to do so.
"""

import threading
import uuid
from datetime import datetime
from typing import Optional, List, Dict, Iterator, Set

from library_sync.catalog.base import (
    CatalogBook,
    CatalogSource,
    supports_batch_tags,
    supports_pagination,
)
from library_sync.db.repositories import BookRepository
from library_sync.sync.guard import DEFAULT_ORPHAN_THRESHOLD, decide
from library_sync.sync.models import OrphanedBook, SyncOptions, SyncResult
from library_sync.sync.normalizer import normalize_record
from library_sync.utils.logging import get_logger, SyncLogger

logger = get_logger(__name__)

SYNC_IN_PROGRESS_ERROR = "Sync already in progress"
EMPTY_CATALOG_ERROR = (
    "No books found in Calibre database. Sync aborted to prevent orphaning "
    "your library. Check that CALIBRE_DB_PATH points at a valid, readable library."
)


class LibrarySyncEngine:
    """
    Single-flight sync controller.

    At most one sync runs per engine; a call made while another is running
    is rejected immediately rather than queued.
    """

    def __init__(
        self,
        book_repository: Optional[BookRepository] = None,
        orphan_threshold: float = DEFAULT_ORPHAN_THRESHOLD,
    ):
        self.books = book_repository or BookRepository()
        self.orphan_threshold = orphan_threshold

        self._lock = threading.Lock()
        self._last_sync_time: Optional[datetime] = None

    def is_sync_in_progress(self) -> bool:
        return self._lock.locked()

    @property
    def last_sync_time(self) -> Optional[datetime]:
        """When the last successful sync finished, if any."""
        return self._last_sync_time

    def sync(self, source: CatalogSource, options: Optional[SyncOptions] = None) -> SyncResult:
        """
        Run a full sync pass against ``source``.

        Never raises: every failure is reported through the result's
        ``success`` and ``error`` fields.
        """
        options = options or SyncOptions()

        if not self._lock.acquire(blocking=False):
            logger.warning("Sync requested while another sync is running")
            return SyncResult.failure(SYNC_IN_PROGRESS_ERROR)

        sync_logger = SyncLogger(str(uuid.uuid4())[:8], catalog=type(source).__name__)
        try:
            return self._run(source, options, sync_logger)
        except Exception as e:
            sync_logger.exception("Sync failed", error=str(e))
            return SyncResult.failure(str(e))
        finally:
            self._lock.release()

    def _run(self, source: CatalogSource, options: SyncOptions, sync_logger: SyncLogger) -> SyncResult:
        sync_logger.info(
            "Starting library sync",
            chunk_size=options.chunk_size,
            detect_orphans=options.detect_orphans,
        )

        synced_at = datetime.utcnow()
        observed_ids: Set[int] = set()
        synced_count = 0
        updated_count = 0

        for chunk_number, chunk in enumerate(self._iter_chunks(source, options.chunk_size), start=1):
            chunk = self._dedupe(chunk, observed_ids, sync_logger)
            if not chunk:
                continue

            book_ids = [book.id for book in chunk]
            observed_ids.update(book_ids)
            tags = self._fetch_tags(source, book_ids)

            created, updated = self._persist_chunk(chunk, tags, synced_at)
            synced_count += created
            updated_count += updated

            sync_logger.debug(
                "Processed chunk",
                chunk=chunk_number,
                books=len(chunk),
                created=created,
                updated=updated,
            )

        total_books = len(observed_ids)
        if total_books == 0:
            sync_logger.warning("Catalog returned no books, aborting sync")
            return SyncResult.failure(EMPTY_CATALOG_ERROR)

        result = SyncResult(
            success=True,
            synced_count=synced_count,
            updated_count=updated_count,
            total_books=total_books,
        )

        if options.detect_orphans:
            self._detect_orphans(observed_ids, result, sync_logger)
            if not result.success:
                return result

        self._last_sync_time = datetime.utcnow()
        sync_logger.info(
            "Library sync completed",
            total=result.total_books,
            created=result.synced_count,
            updated=result.updated_count,
            orphaned=result.removed_count,
        )
        return result

    def _iter_chunks(self, source: CatalogSource, chunk_size: int) -> Iterator[List[CatalogBook]]:
        """Yield the catalog one page at a time, or whole when it cannot be paged."""
        if not supports_pagination(source):
            yield source.get_all_books()
            return

        count = source.get_books_count()
        for offset in range(0, count, chunk_size):
            yield source.get_all_books(limit=chunk_size, offset=offset)

    def _dedupe(
        self,
        chunk: List[CatalogBook],
        observed_ids: Set[int],
        sync_logger: SyncLogger,
    ) -> List[CatalogBook]:
        unique: Dict[int, CatalogBook] = {}
        for book in chunk:
            if book.id in observed_ids or book.id in unique:
                sync_logger.warning("Skipping duplicate catalog record", calibre_id=book.id)
                continue
            unique[book.id] = book
        return list(unique.values())

    def _fetch_tags(self, source: CatalogSource, book_ids: List[int]) -> Dict[int, List[str]]:
        """Tags for exactly ``book_ids``: one batched call when supported, else one call per book."""
        if supports_batch_tags(source):
            tag_map = source.get_all_book_tags(book_ids)
            return {book_id: list(tag_map.get(book_id, [])) for book_id in book_ids}

        return {book_id: list(source.get_book_tags(book_id)) for book_id in book_ids}

    def _persist_chunk(
        self,
        chunk: List[CatalogBook],
        tags: Dict[int, List[str]],
        synced_at: datetime,
    ) -> tuple:
        """
        Write one chunk.

        Existence is resolved up front so new books go through an insert
        and known books through an update by primary key.

        Returns:
            (created, updated) counts
        """
        records = [normalize_record(book, tags.get(book.id, []), synced_at) for book in chunk]
        existing = self.books.find_by_external_ids([record["calibre_id"] for record in records])

        new_records = []
        changed_records = []
        for record in records:
            book_id = existing.get(record["calibre_id"])
            if book_id is None:
                new_records.append(record)
            else:
                changed_records.append(dict(record, id=book_id))

        created = len(self.books.bulk_insert(new_records))
        updated = self.books.bulk_update(changed_records)
        return created, updated

    def _detect_orphans(self, observed_ids: Set[int], result: SyncResult, sync_logger: SyncLogger) -> None:
        candidates = self.books.find_not_in_external_ids(observed_ids)
        if not candidates:
            return

        decision = decide(len(candidates), self.books.count_tracked(), self.orphan_threshold)
        if not decision.accepted:
            sync_logger.error(
                "Orphan safety check rejected sync",
                candidates=len(candidates),
                percentage=round(decision.percentage * 100, 1),
                threshold=self.orphan_threshold,
            )
            result.success = False
            result.error = decision.message
            return

        orphaned_at = datetime.utcnow()
        orphaned_books = []
        for book in candidates:
            if self.books.mark_orphaned(book.id, orphaned_at) is None:
                continue
            orphaned_books.append(OrphanedBook(
                id=book.id,
                calibre_id=book.calibre_id,
                title=book.title,
                authors=list(book.authors or []),
            ))
            sync_logger.info("Marked book as orphaned", book_id=book.id, calibre_id=book.calibre_id, title=book.title)

        result.removed_count = len(orphaned_books)
        result.orphaned_books = orphaned_books or None
