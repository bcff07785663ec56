"""Catalog Search over registered books."""

import logging
from typing import List, Optional

from book import Book
from config import Settings, settings as default_settings
from database import Database

logger = logging.getLogger(__name__)


def matches(book: Book, needle: str) -> bool:
    """Title contains ``needle`` (case-insensitive) or any ISBN entry contains it."""
    if needle in book.title.casefold():
        return True
    return any(needle in isbn.casefold() for isbn in book.isbns)


class CatalogSearch:

    def __init__(self, database: Database, settings: Optional[Settings] = None) -> None:
        self.database = database
        self.settings = settings or default_settings

    def search(self, text: str, limit: Optional[int] = None, filter_by_availability: bool = True) -> List[Book]:
        """Find books by title substring or ISBN, ordered by title.

        Candidates are filtered in SQL and read ``search_fetch_limit`` rows at a
        time until ``limit`` books match or the catalog runs out.
        """
        needle = (text or "").strip().casefold()
        if not needle:
            return []
        if limit is None:
            limit = self.settings.search_default_limit
        if limit <= 0:
            return []

        # isbns is a JSON array, so a hit there is re-checked against the parsed entries
        clauses = ["(instr(casefold(title), ?) > 0 OR instr(casefold(isbns), ?) > 0)"]
        if filter_by_availability:
            clauses.append("available_quantity > 0")
        sql = f"SELECT * FROM books WHERE {' AND '.join(clauses)} ORDER BY title COLLATE NOCASE, rowid LIMIT ? OFFSET ?"
        page_size = max(1, self.settings.search_fetch_limit)

        results: List[Book] = []
        offset = 0
        while len(results) < limit:
            rows = self.database.fetch_all(sql, (needle, needle, page_size, offset))
            for row in rows:
                book = Book.from_row(row)
                if matches(book, needle):
                    results.append(book)
                    if len(results) >= limit:
                        break
            if len(rows) < page_size:
                break
            offset += page_size
        logger.debug(f"Search '{text}' returned {len(results)} books")
        return results
