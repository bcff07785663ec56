import os
import json
from typing import Any, Dict, List, Optional
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"
OUTPUT_MODES = {"plain", "json", "rich"}

_console = Console()


def set_output_mode(mode: str) -> bool:
    """Select the output mode. Returns False (and keeps the current one) for unknown values."""
    mode = (mode or "").lower().strip()
    if mode not in OUTPUT_MODES:
        return False
    os.environ[OUTPUT_MODE_ENV] = mode
    return True


def get_output_mode() -> str:
    mode = os.environ.get(OUTPUT_MODE_ENV, "plain").lower()
    return mode if mode in OUTPUT_MODES else "plain"


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False))


def _copies(book: Any) -> str:
    if book.quantity is None:
        return "not stocked"
    return f"{book.available_quantity}/{book.quantity} available"


def print_books(books: List[Any], empty_message: str = "No books in library.", title: str = "Books") -> None:
    """Print books in the current output mode.
    - plain: 'KEY - Title by Authors [available/quantity]' lines
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if mode == "json":
        _print_json([b.to_dict() for b in books])
        return
    if not books:
        print(empty_message)
        return

    if mode == "rich":
        table = Table(title=f"📚 {title}", show_lines=True, header_style="bold cyan")
        table.add_column("Key", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Authors", style="white")
        table.add_column("Copies", justify="right")
        for b in books:
            table.add_row(b.key, b.title, ", ".join(b.authors) or "Unknown Author", _copies(b))
        _console.print(table)
    else:
        for b in books:
            print(f"{b.key} - {b.title} by {', '.join(b.authors) or 'Unknown Author'} [{_copies(b)}]")


def print_book_detail(book: Any) -> None:
    mode = get_output_mode()
    if mode == "json":
        _print_json(book.to_dict())
        return

    lines = [
        ("Key", book.key),
        ("Title", book.title),
        ("Authors", ", ".join(book.authors) or "Unknown Author"),
        ("First published", book.first_publish_year or "-"),
        ("ISBNs", ", ".join(book.isbns) or "-"),
        ("Copies", _copies(book)),
    ]
    if mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {value}" for label, value in lines)
        _console.print(Panel.fit(content, title="📖 Book", border_style="cyan"))
    else:
        for label, value in lines:
            print(f"{label}: {value}")


def print_loans(loans: List[Any], now: Optional[Any] = None) -> None:
    """Print loans, marking active loans past their due date as overdue."""
    mode = get_output_mode()

    if mode == "json":
        _print_json([loan.to_dict() for loan in loans])
        return
    if not loans:
        print("No loans found.")
        return

    def _state(loan: Any) -> str:
        if now is not None and loan.is_overdue(now):
            return "overdue"
        return loan.status

    if mode == "rich":
        table = Table(title="📋 Loans", header_style="bold cyan")
        table.add_column("Id", style="magenta", no_wrap=True)
        table.add_column("Book")
        table.add_column("Borrower")
        table.add_column("Due", no_wrap=True)
        table.add_column("Status")
        for loan in loans:
            state = _state(loan)
            style = {"active": "green", "overdue": "bold red"}.get(state, "dim")
            table.add_row(loan.id, loan.book_title, loan.borrower_name,
                          loan.due_date.date().isoformat(), f"[{style}]{state}[/]")
        _console.print(table)
    else:
        for loan in loans:
            print(f"{loan.id} - {loan.book_title} - {loan.borrower_name} - "
                  f"due {loan.due_date.date().isoformat()} - {_state(loan)}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = [
        ("Total Titles", "total_titles"),
        ("Registered Titles", "registered_titles"),
        ("Stub Titles", "stub_titles"),
        ("Total Copies", "total_copies"),
        ("Available Copies", "available_copies"),
        ("Active Loans", "active_loans"),
        ("Total Loans", "total_loans"),
    ]
    if mode == "json":
        _print_json(stats)
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for label, key in labels)
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for label, key in labels:
            print(f"{label}: {stats.get(key, 0)}")


def print_audit_result(problems: List[Dict[str, Any]]) -> None:
    mode = get_output_mode()
    if mode == "json":
        _print_json(problems)
        return
    if not problems:
        print("Inventory is consistent.")
        return
    if mode == "rich":
        table = Table(title="⚠️ Inventory discrepancies", header_style="bold red")
        for column in ("Key", "Title", "Quantity", "Available", "Active loans"):
            table.add_column(column)
        for p in problems:
            table.add_row(p["key"], p["title"], str(p["quantity"]), str(p["available_quantity"]),
                          str(p["active_loans"]))
        _console.print(table)
    else:
        for p in problems:
            print(f"{p['key']} - {p['title']}: quantity={p['quantity']} "
                  f"available={p['available_quantity']} active_loans={p['active_loans']}")
