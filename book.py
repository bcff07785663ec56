from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

# Fields a metadata refresh may write. Counters are deliberately absent.
DESCRIPTIVE_FIELDS = (
    "title",
    "authors",
    "first_publish_year",
    "isbns",
    "cover_id",
    "olid",
    "cover_url_small",
    "cover_url_medium",
    "cover_url_large",
    "description",
)


def _json_list(value: Any) -> List[str]:
    """Normalise a list column coming back from SQLite as JSON text."""
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return [value] if value else []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


class Book:
    """A single title in the catalog, keyed by its Open Library id."""

    def __init__(self, key: str, title: str, authors: List[str] | None = None,
                 first_publish_year: int | None = None, isbns: List[str] | None = None,
                 cover_id: int | None = None, olid: str | None = None,
                 cover_url_small: str | None = None, cover_url_medium: str | None = None,
                 cover_url_large: str | None = None, description: str | None = None,
                 # Inventory counters; None on stub records
                 quantity: int | None = None, available_quantity: int | None = None,
                 last_accessed_at: str | None = None, created_at: str | None = None) -> None:
        self.key = key.strip()
        self.title = title.strip()
        self.authors = list(authors or [])
        self.first_publish_year = first_publish_year
        self.isbns = list(isbns or [])
        self.cover_id = cover_id
        self.olid = olid
        self.cover_url_small = cover_url_small
        self.cover_url_medium = cover_url_medium
        self.cover_url_large = cover_url_large
        self.description = description
        self.quantity = quantity
        self.available_quantity = available_quantity
        self.last_accessed_at = last_accessed_at
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        authors = ", ".join(self.authors) or "Unknown Author"
        return f"{self.title} by {authors} ({self.key})"

    def __repr__(self) -> str:  # pragma: no cover
        return f"Book(key={self.key!r}, title={self.title!r}, quantity={self.quantity}, available={self.available_quantity})"

    @property
    def is_stub(self) -> bool:
        return self.quantity is None

    @property
    def is_available(self) -> bool:
        return self.available_quantity is not None and self.available_quantity > 0

    def descriptive_fields(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in DESCRIPTIVE_FIELDS}

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "title": self.title,
            "authors": self.authors,
            "first_publish_year": self.first_publish_year,
            "isbns": self.isbns,
            "cover_id": self.cover_id,
            "olid": self.olid,
            "cover_url_small": self.cover_url_small,
            "cover_url_medium": self.cover_url_medium,
            "cover_url_large": self.cover_url_large,
            "description": self.description,
            "quantity": self.quantity,
            "available_quantity": self.available_quantity,
            "last_accessed_at": self.last_accessed_at,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # List columns are stored as JSON text in SQLite
        return Book(
            key=data["key"],
            title=data["title"],
            authors=_json_list(data.get("authors")),
            first_publish_year=data.get("first_publish_year"),
            isbns=_json_list(data.get("isbns")),
            cover_id=data.get("cover_id"),
            olid=data.get("olid"),
            cover_url_small=data.get("cover_url_small"),
            cover_url_medium=data.get("cover_url_medium"),
            cover_url_large=data.get("cover_url_large"),
            description=data.get("description"),
            quantity=data.get("quantity"),
            available_quantity=data.get("available_quantity"),
            last_accessed_at=data.get("last_accessed_at"),
            created_at=data.get("created_at"),
        )

    @staticmethod
    def from_row(row: Any) -> "Book":
        return Book.from_dict(dict(row))
