"""Shared pytest fixtures."""

from typing import Generator

import pytest

from library_sync.db.database import init_db, close_db
from library_sync.db.repositories import BookRepository, SessionRepository
from library_sync.sync.engine import LibrarySyncEngine


@pytest.fixture
def db(tmp_path) -> Generator[None, None, None]:
    """A fresh SQLite tracking store for each test."""
    init_db(f"sqlite:///{tmp_path / 'tracker.db'}")
    yield
    close_db()


@pytest.fixture
def book_repository(db) -> BookRepository:
    return BookRepository()


@pytest.fixture
def session_repository(db) -> SessionRepository:
    return SessionRepository()


@pytest.fixture
def engine(book_repository) -> LibrarySyncEngine:
    return LibrarySyncEngine(book_repository=book_repository)


@pytest.fixture
def tracked_books(book_repository):
    """Factory creating ``count`` tracked books with calibre ids 1..count."""
    def create(count: int):
        return [
            book_repository.create(
                calibre_id=i,
                title=f"Book {i}",
                authors=[f"Author {i}"],
                tags=[],
                path=f"Author{i}/Book{i}",
            )
            for i in range(1, count + 1)
        ]
    return create
