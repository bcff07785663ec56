"""Error kinds raised by the catalog and loan engine.

Callers only ever see these types. Storage and HTTP faults are translated
into them at the database and lookup boundaries.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class LibraryError(Exception):
    """Base class for every error surfaced to callers."""

    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class ValidationError(LibraryError):
    """Bad input. Raised before any storage access."""

    code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class NotFoundError(LibraryError, LookupError):
    code = "not_found"

    def __init__(self, kind: str, key: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"{kind.capitalize()} '{key}' not found.")
        self.kind = kind
        self.key = key

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"kind": self.kind, "key": self.key})
        return data


class UnavailableError(LibraryError):
    """The book has no free copies. A business outcome, not a fault."""

    code = "unavailable"

    def __init__(self, book_key: str, title: Optional[str] = None) -> None:
        label = f'"{title}"' if title else f"'{book_key}'"
        super().__init__(f"Book {label} is not available for loan.")
        self.book_key = book_key
        self.title = title

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["book_key"] = self.book_key
        return data


class ConflictError(LibraryError):
    """The transaction could not be serialized. Safe to retry."""

    code = "conflict"


class UpstreamError(LibraryError):
    """The bibliographic lookup failed or returned malformed data."""

    code = "upstream_error"


class StorageError(LibraryError):
    """Unexpected storage-layer fault."""

    code = "storage_error"
