from datetime import datetime
from typing import Any, Callable, Dict, Optional

from cache_manager import CacheManager
from config import Settings, settings as default_settings
from database import Database
from favorites import FavoritesIndex
from inventory import InventoryCoordinator
from loans import LoanLedger
from open_library import OpenLibraryClient
from registry import BookRegistry
from search import CatalogSearch


class Library:
    """Wires the catalog components around one database file."""

    def __init__(self, db_file: Optional[str] = None, settings: Optional[Settings] = None,
                 lookup: Optional[OpenLibraryClient] = None, cache: Optional[CacheManager] = None,
                 clock: Optional[Callable[[], datetime]] = None) -> None:
        self.settings = settings or default_settings
        self.database = Database(db_file, self.settings, clock)
        self.database.initialize()  # Ensure DB and tables exist

        self.lookup = lookup if lookup is not None else OpenLibraryClient(self.settings)
        self.cache = cache if cache is not None else CacheManager(self.settings.redis_url, self.settings.cache_ttl)
        self.ledger = LoanLedger(self.database)
        self.inventory = InventoryCoordinator(self.database, self.ledger, self.settings)
        self.registry = BookRegistry(self.database, self.inventory, self.lookup, self.settings)
        self.search = CatalogSearch(self.database, self.settings)
        self.favorites = FavoritesIndex(self.database, self.registry, self.cache, self.settings)

    def get_statistics(self) -> Dict[str, Any]:
        """Catalog counters plus the number of loans ever made."""
        stats = self.registry.statistics()
        row = self.database.fetch_one("SELECT COUNT(*) FROM loans")
        stats["total_loans"] = int(row[0])
        return stats

    def close(self) -> None:
        self.lookup.close()
