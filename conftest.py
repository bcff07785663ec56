import threading
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from cache_manager import CacheManager
from config import Settings
from library import Library
from loan import CreateLoanInput, Principal
from open_library import OpenLibraryClient, build_http_client

VALID_CPF = "529.982.247-25"
OTHER_VALID_CPF = "111.444.777-35"
START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

BOOK_DETAILS = {
    "9780140328721": {
        "key": "/books/OL7353617M",
        "title": "Fantastic Mr. Fox",
        "authors": [{"url": "https://openlibrary.org/authors/OL34184A", "name": "Roald Dahl"}],
        "publish_date": "October 1, 1988",
        "identifiers": {"isbn_10": ["0140328726"], "isbn_13": ["9780140328721"], "openlibrary": ["OL7353617M"]},
        "cover": {
            "small": "https://covers.openlibrary.org/b/id/8739161-S.jpg",
            "medium": "https://covers.openlibrary.org/b/id/8739161-M.jpg",
            "large": "https://covers.openlibrary.org/b/id/8739161-L.jpg",
        },
        "notes": {"type": "/type/text", "value": "Puffin edition."},
    },
    "9780261103573": {
        "key": "/books/OL26331930M",
        "title": "The Fellowship of the Ring",
        "subtitle": "Being the first part of The Lord of the Rings",
        "authors": [{"name": "J. R. R. Tolkien"}],
        "publish_date": "2007",
        "identifiers": {"isbn_13": ["9780261103573"]},
    },
}

SEARCH_DOCS = [
    {
        "key": "/works/OL45804W",
        "title": "Fantastic Mr Fox",
        "author_name": ["Roald Dahl"],
        "first_publish_year": 1970,
        "isbn": ["9780140328721", "0140328726"],
        "cover_i": 6498519,
        "edition_key": ["OL7353617M", "OL9999999M"],
    },
    {
        "key": "/works/OL27448W",
        "title": "The Lord of the Rings",
        "author_name": ["J.R.R. Tolkien"],
        "cover_i": 14625765,
    },
]


def open_library_handler(request: httpx.Request) -> httpx.Response:
    """Serves the two Open Library endpoints from the fixtures above."""
    if request.url.path == "/api/books":
        bibkey = request.url.params["bibkeys"]
        details = BOOK_DETAILS.get(bibkey.split(":", 1)[1])
        return httpx.Response(200, json={bibkey: details} if details else {})
    if request.url.path == "/search.json":
        limit = int(request.url.params.get("limit", "20"))
        return httpx.Response(200, json={"numFound": len(SEARCH_DOCS), "docs": SEARCH_DOCS[:limit]})
    return httpx.Response(404, text="not found")


class TickingClock:
    """Deterministic clock that moves forward one millisecond per reading."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            self.now += timedelta(milliseconds=1)
            return self.now

    def advance(self, **kwargs) -> None:
        with self._lock:
            self.now += timedelta(**kwargs)


@pytest.fixture
def test_settings():
    return Settings(
        openlibrary_base_url="https://openlibrary.test",
        openlibrary_covers_url="https://covers.openlibrary.test",
        openlibrary_retries=1,
        transaction_retry_backoff=0.001,
        redis_url=None,
        api_key="test-key",
    )


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def lookup(test_settings):
    return OpenLibraryClient(
        test_settings,
        http=build_http_client(test_settings, httpx.MockTransport(open_library_handler)),
    )


@pytest.fixture
def lib(tmp_path, request, test_settings, lookup, clock):
    # Unique database file per test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file, settings=test_settings, lookup=lookup,
                  cache=CacheManager(default_ttl=60), clock=clock)
    yield lib
    lib.close()


@pytest.fixture
def add_book(lib):
    """Register a book directly, without going through Open Library."""
    def _add(key, title, quantity=None, **fields):
        return lib.registry.register_or_update(key, {"title": title, **fields}, quantity)
    return _add


@pytest.fixture
def loan_input(clock):
    def _make(book_key, **overrides):
        values = dict(
            admin=Principal(id="admin-1", name="Ada Admin", email="ada@example.org"),
            borrower_name="Maria Silva",
            borrower_national_id=VALID_CPF,
            book_key=book_key,
            due_date=clock.now + timedelta(days=14),
        )
        values.update(overrides)
        return CreateLoanInput(**values)
    return _make
