"""Favorites Index: per-user set of favorited books."""

import logging
from typing import List, Optional

from book import Book
from cache_manager import CacheManager
from config import Settings, settings as default_settings
from database import Database, Transaction
from errors import LibraryError, ValidationError
from registry import BookRegistry, read_book

logger = logging.getLogger(__name__)


def _require_user(user_id: str) -> str:
    user_id = (user_id or "").strip()
    if not user_id:
        raise ValidationError("User id is required.", field="user_id")
    return user_id


class FavoritesIndex:
    """Favorites stored in the ``favorites`` table, with each user's keys cached."""

    def __init__(self, database: Database, registry: BookRegistry, cache: CacheManager,
                 settings: Optional[Settings] = None) -> None:
        self.database = database
        self.registry = registry
        self.cache = cache
        self.settings = settings or default_settings

    @staticmethod
    def _cache_key(user_id: str) -> str:
        return f"favorites:{user_id}"

    def _load_keys(self, user_id: str) -> List[str]:
        rows = self.database.fetch_all(
            "SELECT book_key FROM favorites WHERE user_id = ? ORDER BY favorited_at DESC, rowid DESC",
            (user_id,),
        )
        return [row["book_key"] for row in rows]

    def _reconcile(self, user_id: str) -> List[str]:
        keys = self._load_keys(user_id)
        self.cache.set(self._cache_key(user_id), keys)
        return keys

    def _mutate(self, user_id: str, fn):
        try:
            result = self.database.run_in_transaction(fn)
        except LibraryError:
            # The store state is unknown from here; force the next read to go to it
            self.cache.delete(self._cache_key(user_id))
            raise
        self._reconcile(user_id)
        return result

    def add(self, user_id: str, book: Book) -> Book:
        """Favorite ``book``, creating a stub record for it when it is not in the catalog yet."""
        user_id = _require_user(user_id)
        if book is None or not (book.key or "").strip():
            raise ValidationError("Book identifier is required.", field="key")

        def _add(tx: Transaction) -> Book:
            self.registry.ensure_exists_in(tx, book)
            tx.execute(
                """
                INSERT INTO favorites (user_id, book_key, favorited_at) VALUES (?, ?, ?)
                ON CONFLICT(user_id, book_key) DO UPDATE SET favorited_at = excluded.favorited_at
                """,
                (user_id, book.key, tx.timestamp),
            )
            return read_book(tx, book.key)

        stored = self._mutate(user_id, _add)
        logger.info(f"User {user_id} favorited {book.key}")
        return stored

    def remove(self, user_id: str, book_key: str) -> bool:
        """Unfavorite. Returns False when the pair did not exist."""
        user_id = _require_user(user_id)
        book_key = (book_key or "").strip()
        if not book_key:
            raise ValidationError("Book identifier is required.", field="key")

        def _remove(tx: Transaction) -> bool:
            cursor = tx.execute("DELETE FROM favorites WHERE user_id = ? AND book_key = ?", (user_id, book_key))
            return cursor.rowcount > 0

        removed = self._mutate(user_id, _remove)
        if removed:
            logger.info(f"User {user_id} removed favorite {book_key}")
        return removed

    def favorite_keys(self, user_id: str) -> List[str]:
        user_id = _require_user(user_id)
        cached = self.cache.get(self._cache_key(user_id))
        if cached is not None:
            return cached
        return self._reconcile(user_id)

    def is_favorite(self, user_id: str, book_key: str) -> bool:
        """Answered from the store; a cached key list that disagrees is refreshed."""
        user_id = _require_user(user_id)
        book_key = (book_key or "").strip()
        row = self.database.fetch_one(
            "SELECT 1 FROM favorites WHERE user_id = ? AND book_key = ?", (user_id, book_key),
        )
        favorite = row is not None
        cached = self.cache.get(self._cache_key(user_id))
        if cached is not None and (book_key in cached) != favorite:
            self._reconcile(user_id)
        return favorite

    def list(self, user_id: str) -> List[Book]:
        """Favorited books, most recently favorited first."""
        user_id = _require_user(user_id)
        keys = self._reconcile(user_id)
        books = self.registry.get_many(keys, self.settings.multi_get_batch_size)
        return [books[key] for key in keys if key in books]
