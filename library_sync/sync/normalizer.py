"""
Normalization of catalog records into tracked-book column values.
"""

import re
from datetime import date, datetime, timezone
from typing import Optional, List, Dict, Any

from library_sync.catalog.base import CatalogBook, DateValue
from library_sync.errors import InvalidRecordError

# Comma and pipe are equivalent author separators
AUTHOR_SEPARATORS = re.compile(r"[,|]")


def parse_authors(raw: Optional[str]) -> List[str]:
    """
    Split a raw author string into names.

    >>> parse_authors("Author One, Author Two | Author Three")
    ['Author One', 'Author Two', 'Author Three']
    """
    if not raw:
        return []
    return [name.strip() for name in AUTHOR_SEPARATORS.split(raw) if name.strip()]


def parse_date(value: DateValue, field_name: str = "date") -> Optional[datetime]:
    """
    Parse a catalog date.

    None and empty strings stay None. Anything else that is not a
    recognizable ISO date raises InvalidRecordError.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise InvalidRecordError(
            f"unparseable {field_name} {value!r}",
            field_name=field_name,
        ) from None

    # Stored naive, in UTC
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def normalize_record(
    record: CatalogBook,
    tags: List[str],
    synced_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Map a catalog record and its tags onto Book column values.

    ``added_to_library`` is None when the catalog has no timestamp; the
    repository fills it in for new books and leaves existing ones alone.
    """
    synced_at = synced_at or datetime.utcnow()

    try:
        pub_date = parse_date(record.pubdate, "pubdate")
        added_to_library = parse_date(record.timestamp, "timestamp")
    except InvalidRecordError as e:
        e.book_id = record.id
        raise

    return {
        "calibre_id": record.id,
        "title": record.title,
        "authors": parse_authors(record.authors),
        "tags": list(tags or []),
        "path": record.path,
        "isbn": record.isbn,
        "publisher": record.publisher,
        "series": record.series,
        "series_index": record.series_index,
        "description": record.description,
        "rating": record.rating,
        "pub_date": pub_date,
        "has_cover": bool(record.has_cover),
        "added_to_library": added_to_library,
        "last_synced": synced_at,
        # Present in the catalog, so never orphaned
        "orphaned": False,
        "orphaned_at": None,
    }
