import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union

from errors import ValidationError


class ISBNValidator:
    """ISBN-10 / ISBN-13 normalisation and checksum validation."""

    @staticmethod
    def normalize_isbn(raw: str) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: str) -> bool:
        if not isbn:
            return False
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            total = 0
            for i, ch in enumerate(s[:-1], 1):
                if not ch.isdigit():
                    return False
                total += i * int(ch)
            check = s[-1]
            if check == 'X':
                check_val = 10
            elif check.isdigit():
                check_val = int(check)
            else:
                return False
            # sum(i * d_i) for i in 1..10 must be divisible by 11
            return (total + 10 * check_val) % 11 == 0
        elif len(s) == 13 and s.isdigit():
            total = 0
            for i, ch in enumerate(s[:-1]):
                factor = 1 if i % 2 == 0 else 3
                total += factor * int(ch)
            check_val = (10 - (total % 10)) % 10
            return check_val == int(s[-1])
        return False


class NationalIdValidator:
    """Brazilian CPF checksum: 11 digits, two mod-11 check digits."""

    @staticmethod
    def normalize(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return re.sub(r"\D", "", raw)

    @staticmethod
    def _check_digit(digits: str) -> int:
        weight = len(digits) + 1
        total = sum(int(d) * (weight - i) for i, d in enumerate(digits))
        remainder = total % 11
        return 0 if remainder < 2 else 11 - remainder

    @staticmethod
    def is_valid(value: Optional[str]) -> bool:
        s = NationalIdValidator.normalize(value)
        if len(s) != 11:
            return False
        # 000.000.000-00, 111.111.111-11 ... pass the checksum but are not issued
        if s == s[0] * 11:
            return False
        first = NationalIdValidator._check_digit(s[:9])
        second = NationalIdValidator._check_digit(s[:9] + str(first))
        return s[9:] == f"{first}{second}"


def is_valid_national_id(value: Optional[str]) -> bool:
    return NationalIdValidator.is_valid(value)


class TextValidator:
    """Basic text checks used by loan input validation."""

    @staticmethod
    def validate_borrower_name(name: Optional[str], min_length: int, max_length: int) -> str:
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValidationError("Borrower name is required.", field="borrower_name")
        if len(cleaned) < min_length:
            raise ValidationError(f"Borrower name must have at least {min_length} characters.", field="borrower_name")
        if len(cleaned) > max_length:
            raise ValidationError(f"Borrower name cannot exceed {max_length} characters.", field="borrower_name")
        return cleaned


def validate_due_date(due_date: Union[datetime, date, None], now: datetime, max_days: int) -> datetime:
    """Return the due date as an aware UTC datetime, or raise ValidationError.

    A plain ``date`` means the end of that day (UTC); its horizon is checked
    by calendar day. Naive datetimes are taken as UTC.
    """
    if due_date is None:
        raise ValidationError("Due date is required.", field="due_date")
    horizon = now + timedelta(days=max_days)
    if isinstance(due_date, datetime):
        due = due_date if due_date.tzinfo else due_date.replace(tzinfo=timezone.utc)
        too_far = due > horizon
    elif isinstance(due_date, date):
        due = datetime.combine(due_date, time.max, tzinfo=timezone.utc)
        too_far = due_date > horizon.date()
    else:
        raise ValidationError("Due date is not a valid date.", field="due_date")
    if due <= now:
        raise ValidationError("Due date must be in the future.", field="due_date")
    if too_far:
        raise ValidationError(f"Due date cannot be more than {max_days} days from today.", field="due_date")
    return due
