import logging
import os
import subprocess
import sys
import webbrowser
from datetime import datetime
from functools import wraps
from typing import Optional

import typer

from book import Book
from config import settings
from errors import LibraryError, NotFoundError
from library import Library
from loan import CreateLoanInput, Principal
from utils.ui_helpers import (
    print_audit_result,
    print_book_detail,
    print_books,
    print_loans,
    print_stats_result,
    set_output_mode,
)

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.WARNING))

APP_NAME = "Library CLI"


class LibraryManager:
    """Holds the Library used by the CLI commands."""
    _instance: Optional[Library] = None

    @classmethod
    def get_instance(cls) -> Library:
        if cls._instance is None:
            cls._instance = Library()
        return cls._instance

    @classmethod
    def set_instance(cls, library: Optional[Library]) -> None:
        """Use ``library`` for subsequent commands (None resets to a fresh one from settings)."""
        cls._instance = library


def handle_errors(func):
    """Turn library errors into a one-line message and exit code 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LibraryError as e:
            print(f"Error: {e.message}")
            raise typer.Exit(code=1)
    return wrapper


# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)
favorites_app = typer.Typer(help="Manage a user's favorite books")
loans_app = typer.Typer(help="Create, return and list loans")
app.add_typer(favorites_app, name="favorites")
app.add_typer(loans_app, name="loans")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (e.g. output mode)."""
    if output and not set_output_mode(output):
        raise typer.BadParameter(f"Unknown output mode '{output}'. Use plain, json or rich.")


@app.command("list")
@handle_errors
def cli_list():
    """List every book in the catalog."""
    print_books(LibraryManager.get_instance().registry.list_all())


@app.command("find")
@handle_errors
def cli_find(key: str = typer.Argument(..., help="Open Library id of the book")):
    """Show one book."""
    print_book_detail(LibraryManager.get_instance().registry.get(key))


@app.command("search")
@handle_errors
def cli_search(
    text: str = typer.Argument(..., help="Title substring or ISBN fragment"),
    limit: int = typer.Option(settings.search_default_limit, "--limit", "-l", help="Maximum results"),
    include_unavailable: bool = typer.Option(False, "--all", help="Include books with no free copies"),
):
    """Search the catalog by title or ISBN."""
    lib = LibraryManager.get_instance()
    books = lib.search.search(text, limit=limit, filter_by_availability=not include_unavailable)
    print_books(books, empty_message="No books match the search.", title="Search results")


@app.command("register")
@handle_errors
def cli_register(
    isbn: str = typer.Argument(..., help="ISBN-10 or ISBN-13"),
    quantity: Optional[int] = typer.Option(None, "--quantity", "-q", help="Total copies owned"),
):
    """Register a book by ISBN using Open Library metadata."""
    book = LibraryManager.get_instance().registry.register_by_isbn(isbn, quantity)
    print(f"Registered: {book.title} ({book.key}), {book.available_quantity}/{book.quantity} available")


@app.command("restock")
@handle_errors
def cli_restock(key: str, quantity: int):
    """Set the total number of copies of a book, adding it to the catalog from Open Library if needed."""
    lib = LibraryManager.get_instance()
    if lib.registry.find(key) is None:
        lib.registry.ensure_exists(_resolve_book(lib, key))
    book = lib.inventory.set_quantity(key, quantity)
    print(f"Restocked: {book.title} ({book.key}), {book.available_quantity}/{book.quantity} available")


@app.command("stats")
@handle_errors
def cli_stats():
    """Show catalog and loan statistics."""
    print_stats_result(LibraryManager.get_instance().get_statistics())


@app.command("audit")
@handle_errors
def cli_audit():
    """Check every book's counters against its active loans. Exits 1 on discrepancies."""
    problems = LibraryManager.get_instance().inventory.audit()
    print_audit_result(problems)
    if problems:
        raise typer.Exit(code=1)


# --- Favorites ---
def _resolve_book(lib: Library, key: str) -> Book:
    """A catalog book, or the matching Open Library search result."""
    book = lib.registry.find(key)
    if book is not None:
        return book
    for candidate in lib.lookup.search(key, limit=5):
        if candidate.key == key:
            return candidate
    raise NotFoundError("book", key)


@favorites_app.command("add")
@handle_errors
def cli_favorites_add(
    key: str = typer.Argument(..., help="Open Library id of the book"),
    user: str = typer.Option(..., "--user", "-u", help="User id"),
):
    lib = LibraryManager.get_instance()
    book = lib.favorites.add(user, _resolve_book(lib, key))
    print(f"Added to favorites: {book.title} ({book.key})")


@favorites_app.command("remove")
@handle_errors
def cli_favorites_remove(
    key: str = typer.Argument(..., help="Open Library id of the book"),
    user: str = typer.Option(..., "--user", "-u", help="User id"),
):
    if LibraryManager.get_instance().favorites.remove(user, key):
        print(f"Removed from favorites: {key}")
    else:
        print(f"{key} was not a favorite.")


@favorites_app.command("list")
@handle_errors
def cli_favorites_list(user: str = typer.Option(..., "--user", "-u", help="User id")):
    books = LibraryManager.get_instance().favorites.list(user)
    print_books(books, empty_message="No favorites yet.", title="Favorites")


# --- Loans ---
@loans_app.command("create")
@handle_errors
def cli_loans_create(
    book: str = typer.Option(..., "--book", "-b", help="Open Library id of the book"),
    borrower: str = typer.Option(..., "--borrower", help="Borrower full name"),
    national_id: str = typer.Option(..., "--national-id", help="Borrower CPF"),
    due: datetime = typer.Option(..., "--due", formats=["%Y-%m-%d"], help="Due date (YYYY-MM-DD)"),
    admin: str = typer.Option(..., "--admin", help="Administrator id"),
    admin_name: Optional[str] = typer.Option(None, "--admin-name"),
    admin_email: Optional[str] = typer.Option(None, "--admin-email"),
):
    """Lend one copy of a book."""
    loan_id = LibraryManager.get_instance().inventory.create_loan(CreateLoanInput(
        admin=Principal(id=admin, name=admin_name, email=admin_email),
        borrower_name=borrower,
        borrower_national_id=national_id,
        book_key=book,
        due_date=due.date(),
    ))
    print(f"Loan created: {loan_id}")


@loans_app.command("return")
@handle_errors
def cli_loans_return(loan_id: str):
    """Mark a loan as returned."""
    loan = LibraryManager.get_instance().inventory.return_book(loan_id)
    print(f"Loan {loan.id} returned: {loan.book_title}")


@loans_app.command("list")
@handle_errors
def cli_loans_list(admin: Optional[str] = typer.Option(None, "--admin", help="Only loans created by this admin")):
    lib = LibraryManager.get_instance()
    loans = lib.ledger.list_by_admin(admin) if admin else lib.ledger.list_all()
    print_loans(loans, now=lib.database.clock())


@app.command("serve")
def cli_serve(timeout: int = typer.Option(0, "--timeout", help="Seconds to run before stopping (0 = no timeout)")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on {url}")
    webbrowser.open(url)
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if timeout and timeout > 0:
        start_new_session = os.name != "nt"
        proc = subprocess.Popen(args, start_new_session=start_new_session)
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
    else:
        args.append("--reload")
        subprocess.run(args)


if __name__ == "__main__":
    app()
