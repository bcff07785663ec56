"""Loan Ledger: storage of loan records.

Writes take an open :class:`database.Transaction`; the inventory coordinator
is the only component that opens one around loan writes, so status and
return date never change outside a counter update.
"""

from typing import List, Optional

from database import Database, Transaction
from errors import NotFoundError
from loan import Loan, LoanStatus

# Active loans first, newest loan first inside each group
_LISTING_ORDER = (
    "ORDER BY CASE status WHEN 'active' THEN 0 ELSE 1 END, loan_date DESC, rowid DESC"
)


def _iso(value) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value is not None else None


class LoanLedger:

    def __init__(self, database: Database) -> None:
        self.database = database

    # ------------------------- Writes (transaction only) ------------------------- #
    def insert(self, tx: Transaction, loan: Loan) -> None:
        tx.execute(
            """
            INSERT INTO loans (id, admin_id, admin_name, admin_email, borrower_name, borrower_national_id,
                               book_key, book_title, loan_date, due_date, status, return_date, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                loan.id, loan.admin_id, loan.admin_name, loan.admin_email, loan.borrower_name,
                loan.borrower_national_id, loan.book_key, loan.book_title, _iso(loan.loan_date),
                _iso(loan.due_date), loan.status, _iso(loan.return_date), _iso(loan.created_at),
            ),
        )

    def read(self, tx: Transaction, loan_id: str) -> Optional[Loan]:
        row = tx.fetch_one("SELECT * FROM loans WHERE id = ?", (loan_id,))
        return Loan.from_row(row) if row else None

    def mark_returned(self, tx: Transaction, loan_id: str) -> None:
        tx.execute(
            "UPDATE loans SET status = ?, return_date = ? WHERE id = ? AND status = ?",
            (LoanStatus.RETURNED.value, tx.timestamp, loan_id, LoanStatus.ACTIVE.value),
        )

    def count_active(self, book_key: str, tx: Optional[Transaction] = None) -> int:
        sql = "SELECT COUNT(*) FROM loans WHERE book_key = ? AND status = ?"
        params = (book_key, LoanStatus.ACTIVE.value)
        row = tx.fetch_one(sql, params) if tx is not None else self.database.fetch_one(sql, params)
        return int(row[0])

    # ------------------------- Queries ------------------------- #
    def get(self, loan_id: str) -> Loan:
        row = self.database.fetch_one("SELECT * FROM loans WHERE id = ?", (loan_id,))
        if row is None:
            raise NotFoundError("loan", loan_id)
        return Loan.from_row(row)

    def list_by_admin(self, admin_id: str) -> List[Loan]:
        if not admin_id:
            return []
        rows = self.database.fetch_all(f"SELECT * FROM loans WHERE admin_id = ? {_LISTING_ORDER}", (admin_id,))
        return [Loan.from_row(row) for row in rows]

    def list_all(self) -> List[Loan]:
        rows = self.database.fetch_all(f"SELECT * FROM loans {_LISTING_ORDER}")
        return [Loan.from_row(row) for row in rows]
