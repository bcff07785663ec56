"""Book Registry: the canonical record for every known title.

Descriptive fields are merged here. Counter changes are always handed to
the inventory coordinator, inside the same transaction.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from book import DESCRIPTIVE_FIELDS, Book
from config import Settings, settings as default_settings
from database import Database, Transaction
from errors import NotFoundError, UpstreamError, ValidationError
from utils.validators import ISBNValidator

if TYPE_CHECKING:
    from inventory import InventoryCoordinator
    from open_library import OpenLibraryClient

logger = logging.getLogger(__name__)

_LIST_COLUMNS = ("authors", "isbns")


def read_book(tx: Transaction, key: str) -> Optional[Book]:
    row = tx.fetch_one("SELECT * FROM books WHERE key = ?", (key,))
    return Book.from_row(row) if row else None


def _to_column(name: str, value: Any) -> Any:
    if name in _LIST_COLUMNS:
        return json.dumps(list(value or []), ensure_ascii=False)
    return value


def _merge_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only descriptive fields that carry a value; the rest leave the stored value alone."""
    merged = {}
    for name in DESCRIPTIVE_FIELDS:
        value = fields.get(name)
        if value is None or (name in _LIST_COLUMNS and not value):
            continue
        if name == "title":
            value = str(value).strip()
            if not value:
                continue
        merged[name] = value
    return merged


class BookRegistry:
    """Creates, merges and reads Book records."""

    def __init__(self, database: Database, inventory: "InventoryCoordinator",
                 lookup: Optional["OpenLibraryClient"] = None, settings: Optional[Settings] = None) -> None:
        self.database = database
        self.inventory = inventory
        self.lookup = lookup
        self.settings = settings or default_settings

    # ------------------------- Writes ------------------------- #
    def _insert(self, tx: Transaction, key: str, values: Dict[str, Any],
                quantity: Optional[int] = None) -> None:
        if "title" not in values:
            raise ValidationError(f"A title is required to create book '{key}'.", field="title")
        columns = ["key", *values.keys(), "quantity", "available_quantity", "last_accessed_at", "created_at"]
        params = [key, *(_to_column(n, v) for n, v in values.items()), quantity, quantity,
                  tx.timestamp, tx.timestamp]
        placeholders = ", ".join("?" for _ in columns)
        tx.execute(f"INSERT INTO books ({', '.join(columns)}) VALUES ({placeholders})", params)

    def _merge(self, tx: Transaction, key: str, values: Dict[str, Any]) -> None:
        # Column names come from DESCRIPTIVE_FIELDS only
        assignments = [f"{name} = ?" for name in values] + ["last_accessed_at = ?"]
        params = [_to_column(n, v) for n, v in values.items()] + [tx.timestamp, key]
        tx.execute(f"UPDATE books SET {', '.join(assignments)} WHERE key = ?", params)

    def register_or_update(self, source_id: str, fields: Dict[str, Any], quantity: Optional[int] = None) -> Book:
        """Create the book or merge new metadata into it.

        A first registration with a quantity starts fully available. On an
        existing book a supplied quantity is applied by the coordinator
        (see ``InventoryCoordinator.apply_quantity``); the counters are
        never part of the metadata merge.
        """
        key = (source_id or "").strip()
        if not key:
            raise ValidationError("Book identifier is required.", field="key")
        if quantity is not None:
            self.inventory.validate_quantity(quantity)
        values = _merge_values(fields)

        def _write(tx: Transaction) -> Book:
            existing = read_book(tx, key)
            if existing is None:
                self._insert(tx, key, values, quantity)
            else:
                self._merge(tx, key, values)
                if quantity is not None:
                    self.inventory.apply_quantity(tx, existing, quantity)
            return read_book(tx, key)

        book = self.database.run_in_transaction(_write)
        logger.info(f"Book {key} registered/updated (quantity={book.quantity}, available={book.available_quantity})")
        return book

    def register_by_isbn(self, isbn: str, quantity: Optional[int] = None) -> Book:
        """Fetch metadata for ``isbn`` from Open Library and register the title."""
        normalized = ISBNValidator.normalize_isbn(isbn)
        if not normalized:
            raise ValidationError("ISBN cannot be empty.", field="isbn")
        if not ISBNValidator.is_valid_isbn(normalized):
            raise ValidationError(f"Invalid ISBN: {isbn}.", field="isbn")
        if quantity is not None:
            self.inventory.validate_quantity(quantity)
        if self.lookup is None:
            raise UpstreamError("No bibliographic lookup is configured.")

        details = self.lookup.get_book_details(normalized)
        if not details:
            raise NotFoundError("book", normalized, f"No bibliographic record found for ISBN {normalized}.")
        key, fields = self.lookup.parse_details(normalized, details)
        return self.register_or_update(key, fields, quantity)

    def ensure_exists_in(self, tx: Transaction, book: Book) -> None:
        """Create a stub for ``book`` or merge its metadata. Counters are never written."""
        key = (book.key or "").strip()
        if not key:
            raise ValidationError("Book identifier is required.", field="key")
        values = _merge_values(book.descriptive_fields())
        if read_book(tx, key) is None:
            self._insert(tx, key, values)
        else:
            self._merge(tx, key, values)

    def ensure_exists(self, book: Book) -> Book:
        def _ensure(tx: Transaction) -> Book:
            self.ensure_exists_in(tx, book)
            return read_book(tx, book.key.strip())

        return self.database.run_in_transaction(_ensure)

    def touch(self, source_id: str) -> None:
        def _touch(tx: Transaction) -> None:
            cursor = tx.execute("UPDATE books SET last_accessed_at = ? WHERE key = ?", (tx.timestamp, source_id))
            if cursor.rowcount == 0:
                raise NotFoundError("book", source_id)

        self.database.run_in_transaction(_touch)

    # ------------------------- Reads ------------------------- #
    def find(self, source_id: str) -> Optional[Book]:
        row = self.database.fetch_one("SELECT * FROM books WHERE key = ?", ((source_id or "").strip(),))
        return Book.from_row(row) if row else None

    def get(self, source_id: str) -> Book:
        book = self.find(source_id)
        if book is None:
            raise NotFoundError("book", source_id)
        return book

    def get_many(self, keys: Iterable[str], batch_size: Optional[int] = None) -> Dict[str, Book]:
        """Look up many books, at most ``batch_size`` keys per query."""
        size = batch_size or self.settings.multi_get_batch_size
        unique = list(dict.fromkeys(keys))
        found: Dict[str, Book] = {}
        for start in range(0, len(unique), size):
            chunk = unique[start:start + size]
            placeholders = ", ".join("?" for _ in chunk)
            rows = self.database.fetch_all(f"SELECT * FROM books WHERE key IN ({placeholders})", chunk)
            for row in rows:
                book = Book.from_row(row)
                found[book.key] = book
        return found

    def list_all(self) -> List[Book]:
        rows = self.database.fetch_all("SELECT * FROM books ORDER BY title COLLATE NOCASE, rowid")
        return [Book.from_row(row) for row in rows]

    def statistics(self) -> Dict[str, int]:
        row = self.database.fetch_one(
            """
            SELECT COUNT(*) AS total_titles,
                   COUNT(quantity) AS registered_titles,
                   COALESCE(SUM(quantity), 0) AS total_copies,
                   COALESCE(SUM(available_quantity), 0) AS available_copies
            FROM books
            """
        )
        active = self.database.fetch_one("SELECT COUNT(*) FROM loans WHERE status = 'active'")
        stats = dict(row)
        stats["stub_titles"] = stats["total_titles"] - stats["registered_titles"]
        stats["active_loans"] = int(active[0])
        return stats
