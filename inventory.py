"""Inventory Transaction Coordinator.

Every change to a book's ``quantity`` / ``available_quantity`` happens here,
in the same transaction as the loan write that justifies it. After each
commit, for every book::

    quantity - available_quantity == number of active loans on it
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from book import Book
from config import Settings, settings as default_settings
from database import Database, Transaction
from errors import NotFoundError, UnavailableError, ValidationError
from loan import CreateLoanInput, Loan, LoanStatus
from loans import LoanLedger
from registry import read_book
from utils.validators import TextValidator, is_valid_national_id, validate_due_date

logger = logging.getLogger(__name__)


class InventoryCoordinator:

    def __init__(self, database: Database, ledger: LoanLedger, settings: Optional[Settings] = None) -> None:
        self.database = database
        self.ledger = ledger
        self.settings = settings or default_settings

    # ------------------------- Validation ------------------------- #
    @staticmethod
    def validate_quantity(quantity: Any) -> int:
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError("Quantity must be a whole number.", field="quantity")
        if quantity < 0:
            raise ValidationError("Quantity cannot be negative.", field="quantity")
        return quantity

    def validate_loan_input(self, data: CreateLoanInput) -> Dict[str, Any]:
        """Check a loan request without touching storage. Returns the cleaned values."""
        admin = data.admin
        if admin is None or not (admin.id or "").strip():
            raise ValidationError("Administrator id is required.", field="admin_id")
        name = TextValidator.validate_borrower_name(
            data.borrower_name,
            self.settings.borrower_name_min_length,
            self.settings.borrower_name_max_length,
        )
        if not (data.borrower_national_id or "").strip():
            raise ValidationError("Borrower national id is required.", field="borrower_national_id")
        if not is_valid_national_id(data.borrower_national_id):
            raise ValidationError("Borrower national id is invalid. Please check the digits.",
                                  field="borrower_national_id")
        book_key = (data.book_key or "").strip()
        if not book_key:
            raise ValidationError("No book selected.", field="book_key")
        due = validate_due_date(data.due_date, self.database.clock(), self.settings.max_loan_days)
        return {
            "admin": admin,
            "borrower_name": name,
            "borrower_national_id": data.borrower_national_id.strip(),
            "book_key": book_key,
            "due_date": due,
        }

    # ------------------------- Loans ------------------------- #
    def create_loan(self, data: CreateLoanInput, timeout: Optional[float] = None) -> str:
        """Lend one copy of a book. Returns the new loan id."""
        clean = self.validate_loan_input(data)
        book_key = clean["book_key"]

        def _create(tx: Transaction) -> str:
            book = read_book(tx, book_key)
            if book is None:
                raise NotFoundError("book", book_key)
            # Admission control: checked under the same write lock as the decrement
            if not book.is_available:
                raise UnavailableError(book_key, book.title)
            cursor = tx.execute(
                "UPDATE books SET available_quantity = available_quantity - 1 "
                "WHERE key = ? AND available_quantity > 0",
                (book_key,),
            )
            if cursor.rowcount != 1:
                raise UnavailableError(book_key, book.title)
            admin = clean["admin"]
            loan = Loan(
                id=uuid.uuid4().hex,
                admin_id=admin.id,
                admin_name=admin.name,
                admin_email=admin.email,
                borrower_name=clean["borrower_name"],
                borrower_national_id=clean["borrower_national_id"],
                book_key=book_key,
                book_title=book.title,
                loan_date=tx.now,
                due_date=clean["due_date"],
                status=LoanStatus.ACTIVE.value,
                created_at=tx.now,
            )
            self.ledger.insert(tx, loan)
            return loan.id

        loan_id = self.database.run_in_transaction(_create, timeout=timeout)
        logger.info(f"Loan {loan_id} created for book {book_key} by admin {clean['admin'].id}")
        return loan_id

    def return_book(self, loan_id: str, timeout: Optional[float] = None) -> Loan:
        """Mark a loan returned and put the copy back. Returning twice is a no-op."""
        loan_id = (loan_id or "").strip()
        if not loan_id:
            raise ValidationError("Loan id is required.", field="loan_id")

        def _return(tx: Transaction) -> Loan:
            loan = self.ledger.read(tx, loan_id)
            if loan is None:
                raise NotFoundError("loan", loan_id)
            if loan.status not in (LoanStatus.ACTIVE.value, LoanStatus.RETURNED.value):
                raise ValidationError(f"Loan {loan_id} has an invalid status '{loan.status}'.", field="status")
            if loan.status == LoanStatus.RETURNED.value:
                logger.warning(f"Loan {loan_id} is already marked as returned.")
                return loan

            book = read_book(tx, loan.book_key)
            if book is None:
                raise NotFoundError("book", loan.book_key,
                                    f"Book '{loan.book_key}' referenced by loan '{loan_id}' not found.")
            new_available = (book.available_quantity or 0) + 1
            if book.quantity is not None:
                new_available = min(new_available, book.quantity)
            tx.execute(
                "UPDATE books SET available_quantity = ?, last_accessed_at = ? WHERE key = ?",
                (new_available, tx.timestamp, book.key),
            )
            self.ledger.mark_returned(tx, loan_id)
            return self.ledger.read(tx, loan_id)

        loan = self.database.run_in_transaction(_return, timeout=timeout)
        logger.info(f"Loan {loan_id} returned (book {loan.book_key})")
        return loan

    # ------------------------- Stock ------------------------- #
    def apply_quantity(self, tx: Transaction, book: Book, quantity: int) -> None:
        """Set a new total inside an open transaction.

        Availability moves by the same delta as the total, so copies on loan
        stay accounted for. A stub (no quantity yet) becomes fully available.
        """
        self.validate_quantity(quantity)
        on_loan = self.ledger.count_active(book.key, tx)
        if quantity < on_loan:
            raise ValidationError(
                f"Quantity {quantity} for '{book.title}' is below the {on_loan} copies currently on loan.",
                field="quantity",
            )
        old_quantity = book.quantity or 0
        old_available = book.available_quantity or 0
        available = old_available + (quantity - old_quantity)
        available = max(0, min(available, quantity))
        tx.execute(
            "UPDATE books SET quantity = ?, available_quantity = ?, last_accessed_at = ? WHERE key = ?",
            (quantity, available, tx.timestamp, book.key),
        )

    def set_quantity(self, book_key: str, quantity: int, timeout: Optional[float] = None) -> Book:
        """Admin restock: change a book's total number of copies."""
        self.validate_quantity(quantity)
        book_key = (book_key or "").strip()
        if not book_key:
            raise ValidationError("Book identifier is required.", field="key")

        def _restock(tx: Transaction) -> Book:
            book = read_book(tx, book_key)
            if book is None:
                raise NotFoundError("book", book_key)
            self.apply_quantity(tx, book, quantity)
            return read_book(tx, book_key)

        book = self.database.run_in_transaction(_restock, timeout=timeout)
        logger.info(f"Book {book_key} restocked: quantity={book.quantity}, available={book.available_quantity}")
        return book

    def audit(self) -> List[Dict[str, Any]]:
        """List books whose counters disagree with their active loans. Empty when consistent."""
        rows = self.database.fetch_all(
            """
            SELECT b.key, b.title, b.quantity, b.available_quantity,
                   (SELECT COUNT(*) FROM loans l WHERE l.book_key = b.key AND l.status = 'active') AS active_loans
            FROM books b
            ORDER BY b.title COLLATE NOCASE, b.rowid
            """
        )
        problems = []
        for row in rows:
            quantity, available, active = row["quantity"], row["available_quantity"], row["active_loans"]
            if quantity is None or available is None:
                consistent = active == 0 and quantity is None and available is None
            else:
                consistent = 0 <= available <= quantity and quantity - available == active
            if not consistent:
                problems.append(dict(row))
        return problems
