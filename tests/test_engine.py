"""Tests for the library sync engine."""

import threading

from library_sync.sync.engine import LibrarySyncEngine
from library_sync.sync.models import SyncOptions

from fakes import (
    BatchTagSource,
    BlockingSource,
    DANCE_WITH_DRAGONS,
    FailingSource,
    ListSource,
    PaginatedSource,
    make_book,
)


class TestCreateAndUpdate:

    def test_creates_new_book_with_bootstrap_session(self, engine, book_repository, session_repository):
        source = ListSource([DANCE_WITH_DRAGONS], tags={1: ["Fantasy", "Epic"]})

        result = engine.sync(source)

        assert result.success is True
        assert result.synced_count == 1
        assert result.updated_count == 0
        assert result.removed_count == 0
        assert result.total_books == 1
        assert result.error is None

        book = book_repository.find_by_external_id(1)
        assert book.title == "A Dance with Dragons"
        assert book.authors == ["George R. R. Martin"]
        assert book.tags == ["Fantasy", "Epic"]
        assert book.rating == 4.5
        assert book.last_synced is not None

        reading_session = session_repository.find_active_by_book_id(book.id)
        assert reading_session.status == "to-read"
        assert reading_session.session_number == 1

    def test_updates_existing_book_without_touching_sessions(
        self, engine, book_repository, session_repository
    ):
        book = book_repository.create(calibre_id=1, title="Old Title", authors=["Old Author"], tags=[])
        session_repository.create(book_id=book.id, session_number=1, status="reading", is_active=True)

        result = engine.sync(ListSource([DANCE_WITH_DRAGONS], tags={1: ["Fantasy"]}))

        assert result.success is True
        assert result.synced_count == 0
        assert result.updated_count == 1

        stored = book_repository.find_by_id(book.id)
        assert stored.title == "A Dance with Dragons"
        assert stored.authors == ["George R. R. Martin"]
        assert stored.tags == ["Fantasy"]
        assert session_repository.count_by_book_id(book.id) == 1
        assert session_repository.find_active_by_book_id(book.id).status == "reading"

    def test_resync_is_idempotent(self, engine, book_repository, session_repository):
        source = ListSource([make_book(i) for i in range(1, 6)])

        first = engine.sync(source)
        sequence = book_repository.get_sequence_value()
        second = engine.sync(source)
        third = engine.sync(source)

        assert first.synced_count == 5
        assert second.synced_count == 0
        assert second.updated_count == 5
        assert third.updated_count == 5
        assert book_repository.get_sequence_value() == sequence
        assert book_repository.count() == 5
        assert session_repository.count() == 5

    def test_only_new_books_consume_ids(self, engine, book_repository):
        engine.sync(ListSource([make_book(i) for i in range(1, 4)]))
        sequence = book_repository.get_sequence_value()

        result = engine.sync(ListSource([make_book(i) for i in range(1, 6)]))

        assert result.synced_count == 2
        assert result.updated_count == 3
        assert book_repository.get_sequence_value() == sequence + 2

    def test_duplicate_catalog_records_are_skipped(self, engine, book_repository):
        source = PaginatedSource([make_book(1), make_book(2), make_book(2), make_book(3)])

        result = engine.sync(source, SyncOptions(chunk_size=2))

        assert result.success is True
        assert result.synced_count == 3
        assert result.total_books == 3
        assert book_repository.count() == 3

    def test_invalid_record_fails_the_sync(self, engine, book_repository):
        source = ListSource([make_book(1), make_book(2, pubdate="the year 2000")])

        result = engine.sync(source)

        assert result.success is False
        assert "Invalid catalog record 2" in result.error
        assert book_repository.count() == 0


class TestOrphanDetection:

    def test_marks_missing_books_as_orphaned(self, engine, book_repository, tracked_books):
        tracked_books(100)

        result = engine.sync(ListSource([make_book(i) for i in range(1, 96)]))

        assert result.success is True
        assert result.updated_count == 95
        assert result.removed_count == 5
        assert [book.calibre_id for book in result.orphaned_books] == [96, 97, 98, 99, 100]
        assert sorted(b.calibre_id for b in book_repository.find_orphaned()) == [96, 97, 98, 99, 100]
        assert book_repository.find_by_external_id(96).orphaned_at is not None
        assert book_repository.find_by_external_id(1).orphaned is False

    def test_rejects_sync_that_would_orphan_too_much(self, engine, book_repository, tracked_books):
        tracked_books(100)

        result = engine.sync(ListSource([make_book(i) for i in range(1, 86)]))

        assert result.success is False
        assert "would orphan 15 books" in result.error
        assert "15.0%" in result.error
        assert result.removed_count == 0
        assert result.orphaned_books is None
        assert book_repository.find_orphaned() == []
        # Upserts already applied are kept and reported
        assert result.updated_count == 85
        assert engine.last_sync_time is None

    def test_custom_threshold(self, book_repository, tracked_books):
        tracked_books(100)
        engine = LibrarySyncEngine(book_repository=book_repository, orphan_threshold=0.20)

        result = engine.sync(ListSource([make_book(i) for i in range(1, 86)]))

        assert result.success is True
        assert result.removed_count == 15

    def test_already_orphaned_books_are_not_reorphaned(self, engine, book_repository, tracked_books):
        books = tracked_books(20)
        book_repository.mark_orphaned(books[19].id)
        orphaned_at = book_repository.find_by_id(books[19].id).orphaned_at

        result = engine.sync(ListSource([make_book(i) for i in range(1, 20)]))

        assert result.success is True
        assert result.removed_count == 0
        assert result.orphaned_books is None
        assert book_repository.find_by_id(books[19].id).orphaned_at == orphaned_at

    def test_book_back_in_catalog_is_no_longer_orphaned(self, engine, book_repository, tracked_books):
        tracked_books(20)
        engine.sync(ListSource([make_book(i) for i in range(1, 20)]))
        assert book_repository.find_by_external_id(20).orphaned is True

        result = engine.sync(ListSource([make_book(i) for i in range(1, 21)]))

        restored = book_repository.find_by_external_id(20)
        assert result.success is True
        assert result.removed_count == 0
        assert restored.orphaned is False
        assert restored.orphaned_at is None
        assert book_repository.find_orphaned() == []
        assert book_repository.count_tracked() == 20

    def test_detection_can_be_disabled(self, engine, book_repository, tracked_books):
        tracked_books(10)

        result = engine.sync(ListSource([make_book(1)]), SyncOptions(detect_orphans=False))

        assert result.success is True
        assert result.removed_count == 0
        assert book_repository.find_orphaned() == []

    def test_empty_catalog_aborts_before_any_change(self, engine, book_repository, tracked_books):
        tracked_books(2)

        result = engine.sync(ListSource([]))

        assert result.success is False
        assert "No books found in Calibre database" in result.error
        assert result.synced_count == 0
        assert result.updated_count == 0
        assert result.removed_count == 0
        assert book_repository.find_orphaned() == []
        assert engine.last_sync_time is None

    def test_empty_paginated_catalog_is_never_listed(self, engine, tracked_books):
        tracked_books(2)
        source = PaginatedSource([])

        result = engine.sync(source)

        assert result.success is False
        assert "No books found in Calibre database" in result.error
        assert source.fetch_calls == []


class TestChunking:

    def test_fetches_pages_and_tags_per_chunk(self, engine, book_repository):
        books = [make_book(i) for i in range(1, 11)]
        tags = {i: [f"tag-{i}"] for i in range(1, 11)}
        source = PaginatedSource(books, tags)

        result = engine.sync(source, SyncOptions(chunk_size=3))

        assert result.synced_count == 10
        assert source.fetch_calls == [
            {"limit": 3, "offset": 0},
            {"limit": 3, "offset": 3},
            {"limit": 3, "offset": 6},
            {"limit": 3, "offset": 9},
        ]
        assert source.batch_calls == [[1, 2, 3], [4, 5, 6], [7, 8, 9], [10]]
        assert source.tag_calls == []
        assert book_repository.find_by_external_id(7).tags == ["tag-7"]

    def test_empty_page_is_skipped(self, engine):
        source = PaginatedSource([make_book(i) for i in range(1, 7)], count=9)

        result = engine.sync(source, SyncOptions(chunk_size=3))

        assert result.success is True
        assert result.synced_count == 6
        assert len(source.fetch_calls) == 3

    def test_unpaginated_source_is_fetched_once(self, engine):
        source = BatchTagSource([make_book(i) for i in range(1, 4)], {2: ["Classic"]})

        result = engine.sync(source, SyncOptions(chunk_size=2))

        assert result.synced_count == 3
        assert source.fetch_calls == [{"limit": None, "offset": None}]
        assert source.batch_calls == [[1, 2, 3]]

    def test_falls_back_to_per_book_tags(self, engine, book_repository):
        source = ListSource([make_book(1), make_book(2)], {1: ["Mystery"]})

        engine.sync(source)

        assert source.tag_calls == [1, 2]
        assert book_repository.find_by_external_id(1).tags == ["Mystery"]
        assert book_repository.find_by_external_id(2).tags == []


class TestErrorsAndConcurrency:

    def test_source_failure_is_reported(self, engine):
        result = engine.sync(FailingSource("Calibre database unavailable"))

        assert result.success is False
        assert result.error == "Calibre database unavailable"
        assert result.synced_count == 0
        assert result.updated_count == 0
        assert result.removed_count == 0
        assert engine.is_sync_in_progress() is False

    def test_engine_is_reusable_after_failure(self, engine):
        engine.sync(FailingSource("boom"))

        result = engine.sync(ListSource([make_book(1)]))

        assert result.success is True

    def test_concurrent_sync_is_rejected(self, engine, book_repository):
        source = BlockingSource([make_book(1)])
        results = {}
        worker = threading.Thread(target=lambda: results.setdefault("first", engine.sync(source)))
        worker.start()
        try:
            assert source.entered.wait(timeout=5)
            assert engine.is_sync_in_progress() is True

            second = engine.sync(ListSource([make_book(2)]))

            assert second.success is False
            assert second.error == "Sync already in progress"
            assert second.synced_count == 0
        finally:
            source.release.set()
            worker.join(timeout=10)

        assert results["first"].success is True
        assert engine.is_sync_in_progress() is False
        assert book_repository.find_by_external_id(2) is None

    def test_engines_do_not_share_the_lock(self, book_repository):
        first = LibrarySyncEngine(book_repository=book_repository)
        second = LibrarySyncEngine(book_repository=book_repository)
        source = BlockingSource([make_book(1)])
        worker = threading.Thread(target=first.sync, args=(source,))
        worker.start()
        try:
            assert source.entered.wait(timeout=5)
            assert first.is_sync_in_progress() is True
            assert second.is_sync_in_progress() is False
        finally:
            source.release.set()
            worker.join(timeout=10)

    def test_last_sync_time_is_set_on_success(self, engine):
        assert engine.last_sync_time is None

        engine.sync(ListSource([make_book(1)]))

        assert engine.last_sync_time is not None
