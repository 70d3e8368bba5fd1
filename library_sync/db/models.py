"""
SQLAlchemy database models for Library Sync Service.
"""

from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Text, JSON, Boolean, ForeignKey,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

DEFAULT_SESSION_STATUS = "to-read"


class Book(Base):
    """A book tracked locally, mirrored from the Calibre library."""
    __tablename__ = 'books'
    # AUTOINCREMENT keeps ids monotonic and never reused; the sequence lives in sqlite_sequence
    __table_args__ = {'sqlite_autoincrement': True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    calibre_id = Column(Integer, unique=True, index=True, nullable=True)
    title = Column(String(1000), nullable=False)
    authors = Column(JSON, nullable=False, default=list)
    tags = Column(JSON, nullable=False, default=list)
    path = Column(String(2000), nullable=True)
    isbn = Column(String(255), nullable=True)
    publisher = Column(String(500), nullable=True)
    series = Column(String(500), nullable=True)
    series_index = Column(Float, nullable=True)
    description = Column(Text, nullable=True)
    rating = Column(Float, nullable=True)  # 1-5 stars
    pub_date = Column(DateTime, nullable=True)
    has_cover = Column(Boolean, default=False, nullable=False)
    orphaned = Column(Boolean, default=False, nullable=False, index=True)
    orphaned_at = Column(DateTime, nullable=True)
    last_synced = Column(DateTime, nullable=True)
    added_to_library = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    sessions = relationship("ReadingSession", back_populates="book")

    def __repr__(self) -> str:
        return f"<Book id={self.id} calibre_id={self.calibre_id} title={self.title!r}>"


class ReadingSession(Base):
    """A single read-through of a book."""
    __tablename__ = 'reading_sessions'

    id = Column(Integer, primary_key=True)
    book_id = Column(Integer, ForeignKey('books.id'), index=True, nullable=False)
    session_number = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default=DEFAULT_SESSION_STATUS)  # to-read, reading, read, dnf
    is_active = Column(Boolean, nullable=False, default=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    book = relationship("Book", back_populates="sessions")
