"""Open Library lookups used to populate the catalog.

Two endpoints are used: the Books API (details for one ISBN, used when an
admin registers a title) and ``search.json`` (free-text search, used to pick
a title to favorite before it exists in the catalog).
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx

from book import Book
from config import Settings, settings as default_settings
from errors import UpstreamError
from http_client import RetryingHTTPClient

logger = logging.getLogger(__name__)

SEARCH_FIELDS = "key,title,author_name,first_publish_year,isbn,cover_i,olid,edition_key"


def _last_segment(key: str) -> str:
    return key.rstrip("/").split("/")[-1]


class OpenLibraryClient:
    """Client for the Open Library Books and Search APIs."""

    def __init__(self, settings: Optional[Settings] = None, http: Optional[RetryingHTTPClient] = None):
        self.settings = settings or default_settings
        self.base_url = self.settings.openlibrary_base_url.rstrip("/")
        self.covers_url = self.settings.openlibrary_covers_url.rstrip("/")
        self.http = http or build_http_client(self.settings)

    def close(self) -> None:
        self.http.close()

    def _get_json(self, url: str, params: Dict[str, Any]) -> Any:
        response = self.http.get(url, params=params)
        if response.status_code != 200:
            logger.error(f"Open Library request failed: {response.status_code} - {response.text[:200]}")
            raise UpstreamError(f"Open Library returned HTTP {response.status_code}.")
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError("Open Library returned a response that is not valid JSON.") from exc

    # ------------------------- Books API ------------------------- #
    def get_book_details(self, isbn: str) -> Optional[dict]:
        """Return the Books API record for ``isbn`` or None when Open Library has none."""
        data = self._get_json(
            f"{self.base_url}/api/books",
            {"bibkeys": f"ISBN:{isbn}", "format": "json", "jscmd": "data"},
        )
        if not isinstance(data, dict):
            raise UpstreamError("Open Library returned an unexpected payload.")
        details = data.get(f"ISBN:{isbn}")
        if not details:
            logger.info(f"No book details found for ISBN: {isbn}")
            return None
        if not isinstance(details, dict):
            raise UpstreamError(f"Open Library returned malformed details for ISBN {isbn}.")
        return details

    @staticmethod
    def parse_details(isbn: str, details: dict) -> Tuple[str, Dict[str, Any]]:
        """Turn a Books API record into ``(key, descriptive fields)``.

        Raises UpstreamError when the record has no key or no title, so a
        half-populated book is never written.
        """
        raw_key = details.get("key")
        title = details.get("title")
        if not isinstance(raw_key, str) or not _last_segment(raw_key):
            raise UpstreamError(f"Open Library record for ISBN {isbn} has no identifier.")
        if not isinstance(title, str) or not title.strip():
            raise UpstreamError(f"Open Library record for ISBN {isbn} has no title.")
        key = _last_segment(raw_key)

        authors = [a["name"] for a in details.get("authors") or [] if isinstance(a, dict) and a.get("name")]

        publish_year = None
        match = re.search(r"\d{4}", str(details.get("publish_date") or ""))
        if match:
            publish_year = int(match.group(0))

        identifiers = details.get("identifiers") or {}
        isbns = identifiers.get("isbn_13") or identifiers.get("isbn_10") or [isbn]

        olid = key if key.startswith("OL") else next(iter(identifiers.get("openlibrary") or []), None)

        notes = details.get("notes")
        if isinstance(notes, dict):
            notes = notes.get("value")
        description = details.get("subtitle") or (notes if isinstance(notes, str) else None)

        cover = details.get("cover") or {}
        fields = {
            "title": title.strip(),
            "authors": authors,
            "first_publish_year": publish_year,
            "isbns": [str(i) for i in isbns],
            "olid": olid,
            "cover_url_small": cover.get("small"),
            "cover_url_medium": cover.get("medium"),
            "cover_url_large": cover.get("large"),
            "description": description,
        }
        return key, fields

    # ------------------------- Search API ------------------------- #
    def cover_urls(self, isbns: Optional[List[str]] = None, cover_id: Optional[int] = None) -> Dict[str, str]:
        if isbns:
            base = f"{self.covers_url}/b/isbn/{isbns[0]}"
        elif cover_id:
            base = f"{self.covers_url}/b/id/{cover_id}"
        else:
            return {}
        return {
            "cover_url_small": f"{base}-S.jpg",
            "cover_url_medium": f"{base}-M.jpg",
            "cover_url_large": f"{base}-L.jpg",
        }

    def search(self, query: str, limit: int = 20) -> List[Book]:
        """Search Open Library and return unsaved Book stubs."""
        if not query or not query.strip():
            return []
        data = self._get_json(
            f"{self.base_url}/search.json",
            {"q": query, "fields": SEARCH_FIELDS, "limit": str(limit)},
        )
        docs = data.get("docs") if isinstance(data, dict) else None
        if not isinstance(docs, list):
            raise UpstreamError("Open Library search returned an unexpected payload.")

        books: List[Book] = []
        for doc in docs:
            if not isinstance(doc, dict) or not doc.get("title"):
                continue
            # Prefer the edition id; fall back to the work id
            edition = next(iter(doc.get("olid") or doc.get("edition_key") or []), None)
            key = edition or (_last_segment(doc["key"]) if doc.get("key") else None)
            if not key:
                continue
            isbns = doc.get("isbn") or []
            books.append(Book(
                key=key,
                title=doc["title"],
                authors=doc.get("author_name") or [],
                first_publish_year=doc.get("first_publish_year"),
                isbns=isbns,
                cover_id=doc.get("cover_i"),
                olid=edition,
                **self.cover_urls(isbns, doc.get("cover_i")),
            ))
        logger.info(f"Found {len(books)} books for query: {query}")
        return books


def build_http_client(settings: Settings, transport: Optional[httpx.BaseTransport] = None) -> RetryingHTTPClient:
    """HTTP client for Open Library; ``transport`` lets tests plug in httpx.MockTransport."""
    if transport is None:
        return RetryingHTTPClient(timeout=settings.openlibrary_timeout, retries=settings.openlibrary_retries)
    return RetryingHTTPClient(
        retries=settings.openlibrary_retries,
        client=httpx.Client(transport=transport, timeout=settings.openlibrary_timeout),
    )
