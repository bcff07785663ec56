from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional, Union


class LoanStatus(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass(frozen=True)
class Principal:
    """Opaque identity handed over by the identity provider. Recorded, never validated."""
    id: str
    name: Optional[str] = None
    email: Optional[str] = None


@dataclass
class CreateLoanInput:
    admin: Principal
    borrower_name: str
    borrower_national_id: str
    book_key: str
    due_date: Union[datetime, date, None]


@dataclass
class Loan:
    """One lending of one copy of a book.

    Admin and borrower display fields are a snapshot taken when the loan is
    created and are not refreshed afterwards.
    """
    id: str
    admin_id: str
    borrower_name: str
    borrower_national_id: str
    book_key: str
    book_title: str
    loan_date: datetime
    due_date: datetime
    status: str = LoanStatus.ACTIVE.value
    admin_name: Optional[str] = None
    admin_email: Optional[str] = None
    return_date: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE.value

    def is_overdue(self, now: datetime) -> bool:
        return self.is_active and self.due_date < now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "admin_id": self.admin_id,
            "admin_name": self.admin_name,
            "admin_email": self.admin_email,
            "borrower_name": self.borrower_name,
            "borrower_national_id": self.borrower_national_id,
            "book_key": self.book_key,
            "book_title": self.book_title,
            "loan_date": self.loan_date.isoformat() if self.loan_date else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "status": self.status,
            "return_date": self.return_date.isoformat() if self.return_date else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @staticmethod
    def from_row(row: Any) -> "Loan":
        data = dict(row)
        return Loan(
            id=data["id"],
            admin_id=data["admin_id"],
            admin_name=data.get("admin_name"),
            admin_email=data.get("admin_email"),
            borrower_name=data["borrower_name"],
            borrower_national_id=data["borrower_national_id"],
            book_key=data["book_key"],
            book_title=data["book_title"],
            loan_date=_parse_dt(data["loan_date"]),
            due_date=_parse_dt(data["due_date"]),
            status=data["status"],
            return_date=_parse_dt(data.get("return_date")),
            created_at=_parse_dt(data.get("created_at")),
        )
