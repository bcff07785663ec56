import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from threading import RLock
from typing import Any, Dict, List, Optional, Union

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from book import Book
from config import settings
from errors import (
    ConflictError,
    LibraryError,
    NotFoundError,
    StorageError,
    UnavailableError,
    UpstreamError,
    ValidationError,
)
from library import Library
from loan import CreateLoanInput, Loan, Principal

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (UnavailableError, 409),
    (ConflictError, 503),
    (UpstreamError, 502),
    (StorageError, 500),
)
RETRY_AFTER_SECONDS = "1"


def status_for(exc: LibraryError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


# --- Models ---
class BookModel(BaseModel):
    key: str
    title: str
    authors: List[str] = []
    first_publish_year: Optional[int] = None
    isbns: List[str] = []
    cover_id: Optional[int] = None
    olid: Optional[str] = None
    cover_url_small: Optional[str] = None
    cover_url_medium: Optional[str] = None
    cover_url_large: Optional[str] = None
    description: Optional[str] = None
    quantity: Optional[int] = None
    available_quantity: Optional[int] = None
    last_accessed_at: Optional[str] = None
    created_at: Optional[str] = None


class BookCreateModel(BaseModel):
    isbn: str = Field(description="ISBN-10 or ISBN-13, fetched from Open Library")
    quantity: Optional[int] = Field(default=None, description="Total copies owned")


class QuantityModel(BaseModel):
    quantity: int


class FavoriteCreateModel(BaseModel):
    """Book metadata as returned by /catalog/search."""
    key: str
    title: str
    authors: List[str] = []
    first_publish_year: Optional[int] = None
    isbns: List[str] = []
    cover_id: Optional[int] = None
    olid: Optional[str] = None
    cover_url_small: Optional[str] = None
    cover_url_medium: Optional[str] = None
    cover_url_large: Optional[str] = None
    description: Optional[str] = None


class FavoriteStatusModel(BaseModel):
    key: str
    favorite: bool


class LoanCreateModel(BaseModel):
    borrower_name: str
    borrower_national_id: str
    book_key: str
    due_date: str = Field(description="YYYY-MM-DD (end of that day, UTC) or an ISO 8601 datetime")


class LoanCreatedModel(BaseModel):
    id: str


class LoanModel(BaseModel):
    id: str
    admin_id: str
    admin_name: Optional[str] = None
    admin_email: Optional[str] = None
    borrower_name: str
    borrower_national_id: str
    book_key: str
    book_title: str
    loan_date: str
    due_date: str
    status: str
    return_date: Optional[str] = None
    created_at: Optional[str] = None


class StatsModel(BaseModel):
    total_titles: int
    registered_titles: int
    stub_titles: int
    total_copies: int
    available_copies: int
    active_loans: int
    total_loans: int


def _book_model(book: Book) -> BookModel:
    return BookModel(**book.to_dict())


def _loan_model(loan: Loan) -> LoanModel:
    return LoanModel(**loan.to_dict())


def _parse_due_date(value: str) -> Union[date, datetime]:
    text = (value or "").strip()
    try:
        if len(text) == 10:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Due date '{value}' is not a valid date.", field="due_date") from None


# --- Dependencies ---
_library_lock = RLock()
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_library(request: Request) -> Library:
    state = request.app.state
    with _library_lock:
        if state.library is None:
            state.library = Library()
    return state.library


def get_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """Dependency that checks the admin API key."""
    if api_key and api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def get_principal(
    x_user_id: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
) -> Principal:
    if not x_user_id or not x_user_id.strip():
        raise ValidationError("X-User-Id header is required.", field="X-User-Id")
    return Principal(id=x_user_id.strip(), name=x_user_name, email=x_user_email)


# --- Application ---
def create_app(library: Optional[Library] = None) -> FastAPI:
    """Build the API. Without ``library`` one is created on first use from settings."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            if app.state.library is not None:
                app.state.library.close()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.library = library

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LibraryError)
    async def library_error_handler(request: Request, exc: LibraryError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        headers = {"Retry-After": RETRY_AFTER_SECONDS} if isinstance(exc, ConflictError) else None
        return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)

    # --- Health ---
    @app.get("/health")
    def health(lib: Library = Depends(get_library)) -> Dict[str, Any]:
        db_ok = lib.database.ping()
        return {
            "status": "healthy" if db_ok else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": settings.app_version,
            "db": db_ok,
            "cache": lib.cache.get_stats(),
        }

    # --- Books ---
    @app.get("/books", response_model=List[BookModel])
    def list_books(lib: Library = Depends(get_library)):
        return [_book_model(b) for b in lib.registry.list_all()]

    @app.get("/books/search", response_model=List[BookModel])
    def search_books(
        q: str = Query(..., description="Title substring or ISBN fragment"),
        limit: int = Query(settings.search_default_limit, ge=1, le=100),
        available: bool = Query(True, description="Only books with free copies"),
        lib: Library = Depends(get_library),
    ):
        return [_book_model(b) for b in lib.search.search(q, limit=limit, filter_by_availability=available)]

    @app.get("/books/{key}", response_model=BookModel)
    def get_book(key: str, lib: Library = Depends(get_library)):
        return _book_model(lib.registry.get(key))

    @app.post("/books", response_model=BookModel, dependencies=[Depends(get_api_key)])
    def register_book(payload: BookCreateModel, lib: Library = Depends(get_library)):
        return _book_model(lib.registry.register_by_isbn(payload.isbn, payload.quantity))

    @app.put("/books/{key}/quantity", response_model=BookModel, dependencies=[Depends(get_api_key)])
    def restock_book(key: str, payload: QuantityModel, lib: Library = Depends(get_library)):
        return _book_model(lib.inventory.set_quantity(key, payload.quantity))

    @app.post("/books/{key}/touch", status_code=204)
    def touch_book(key: str, lib: Library = Depends(get_library)):
        lib.registry.touch(key)

    # --- Open Library ---
    @app.get("/catalog/search", response_model=List[BookModel])
    def search_catalog(
        q: str = Query(..., min_length=1),
        limit: int = Query(20, ge=1, le=100),
        lib: Library = Depends(get_library),
    ):
        return [_book_model(b) for b in lib.lookup.search(q, limit=limit)]

    # --- Favorites ---
    @app.get("/favorites", response_model=List[BookModel])
    def list_favorites(principal: Principal = Depends(get_principal), lib: Library = Depends(get_library)):
        return [_book_model(b) for b in lib.favorites.list(principal.id)]

    @app.post("/favorites", response_model=BookModel)
    def add_favorite(payload: FavoriteCreateModel, principal: Principal = Depends(get_principal),
                     lib: Library = Depends(get_library)):
        return _book_model(lib.favorites.add(principal.id, Book(**payload.model_dump())))

    @app.get("/favorites/{key}", response_model=FavoriteStatusModel)
    def favorite_status(key: str, principal: Principal = Depends(get_principal),
                        lib: Library = Depends(get_library)):
        return FavoriteStatusModel(key=key, favorite=lib.favorites.is_favorite(principal.id, key))

    @app.delete("/favorites/{key}", status_code=204)
    def remove_favorite(key: str, principal: Principal = Depends(get_principal),
                        lib: Library = Depends(get_library)):
        lib.favorites.remove(principal.id, key)

    # --- Loans (admin) ---
    @app.post("/loans", response_model=LoanCreatedModel, status_code=201, dependencies=[Depends(get_api_key)])
    def create_loan(payload: LoanCreateModel, principal: Principal = Depends(get_principal),
                    lib: Library = Depends(get_library)):
        loan_id = lib.inventory.create_loan(CreateLoanInput(
            admin=principal,
            borrower_name=payload.borrower_name,
            borrower_national_id=payload.borrower_national_id,
            book_key=payload.book_key,
            due_date=_parse_due_date(payload.due_date),
        ))
        return LoanCreatedModel(id=loan_id)

    @app.post("/loans/{loan_id}/return", response_model=LoanModel, dependencies=[Depends(get_api_key)])
    def return_loan(loan_id: str, lib: Library = Depends(get_library)):
        return _loan_model(lib.inventory.return_book(loan_id))

    @app.get("/loans", response_model=List[LoanModel], dependencies=[Depends(get_api_key)])
    def list_loans(
        mine: bool = Query(False, description="Only loans created by the calling admin"),
        x_user_id: Optional[str] = Header(None),
        lib: Library = Depends(get_library),
    ):
        if mine:
            if not x_user_id or not x_user_id.strip():
                raise ValidationError("X-User-Id header is required to list your loans.", field="X-User-Id")
            loans = lib.ledger.list_by_admin(x_user_id.strip())
        else:
            loans = lib.ledger.list_all()
        return [_loan_model(loan) for loan in loans]

    @app.get("/loans/{loan_id}", response_model=LoanModel, dependencies=[Depends(get_api_key)])
    def get_loan(loan_id: str, lib: Library = Depends(get_library)):
        return _loan_model(lib.ledger.get(loan_id))

    # --- Stats ---
    @app.get("/stats", response_model=StatsModel)
    def get_library_stats(lib: Library = Depends(get_library)):
        return StatsModel(**lib.get_statistics())

    return app


app = create_app()
