from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from conftest import OTHER_VALID_CPF, START
from errors import ConflictError, NotFoundError, UnavailableError, ValidationError
from inventory import InventoryCoordinator
from loan import LoanStatus, Principal


def counters(lib, key):
    book = lib.registry.get(key)
    return book.quantity, book.available_quantity


def assert_consistent(lib):
    for book in lib.registry.list_all():
        if book.quantity is None:
            continue
        assert 0 <= book.available_quantity <= book.quantity
        assert book.quantity - book.available_quantity == lib.ledger.count_active(book.key)
    assert lib.inventory.audit() == []


def test_create_and_return_loan(lib, add_book, loan_input, clock):
    add_book("OL1M", "Dune", quantity=3)

    loan_id = lib.inventory.create_loan(loan_input("OL1M"))
    assert counters(lib, "OL1M") == (3, 2)
    loan = lib.ledger.get(loan_id)
    assert loan.status == LoanStatus.ACTIVE.value
    assert loan.book_title == "Dune"
    assert loan.borrower_name == "Maria Silva"
    assert (loan.admin_id, loan.admin_name, loan.admin_email) == ("admin-1", "Ada Admin", "ada@example.org")
    assert loan.loan_date == loan.created_at
    assert START < loan.loan_date <= clock.now
    assert loan.return_date is None
    assert_consistent(lib)

    returned = lib.inventory.return_book(loan_id)
    assert returned.status == LoanStatus.RETURNED.value
    assert returned.return_date is not None and returned.return_date > loan.loan_date
    assert counters(lib, "OL1M") == (3, 3)
    assert_consistent(lib)


def test_borrower_name_is_stored_trimmed(lib, add_book, loan_input):
    add_book("OL1M", "Dune", quantity=1)
    loan_id = lib.inventory.create_loan(loan_input("OL1M", borrower_name="  João Souza "))
    assert lib.ledger.get(loan_id).borrower_name == "João Souza"


def test_unavailable_book_is_rejected(lib, add_book, loan_input):
    add_book("OL1M", "Dune", quantity=0)
    with pytest.raises(UnavailableError) as exc:
        lib.inventory.create_loan(loan_input("OL1M"))
    assert exc.value.book_key == "OL1M"
    assert "Dune" in exc.value.message
    assert counters(lib, "OL1M") == (0, 0)
    assert lib.ledger.list_all() == []


def test_last_copy_then_unavailable(lib, add_book, loan_input):
    add_book("OL1M", "Dune", quantity=1)
    lib.inventory.create_loan(loan_input("OL1M"))
    with pytest.raises(UnavailableError):
        lib.inventory.create_loan(loan_input("OL1M", borrower_national_id=OTHER_VALID_CPF))
    assert counters(lib, "OL1M") == (1, 0)
    assert len(lib.ledger.list_all()) == 1


def test_stub_book_is_not_loanable(lib, add_book, loan_input):
    add_book("OL1M", "Stub")
    with pytest.raises(UnavailableError):
        lib.inventory.create_loan(loan_input("OL1M"))


def test_missing_book(lib, loan_input):
    with pytest.raises(NotFoundError) as exc:
        lib.inventory.create_loan(loan_input("OL404M"))
    assert exc.value.kind == "book"


@pytest.mark.parametrize("overrides, field", [
    ({"admin": Principal(id="  ")}, "admin_id"),
    ({"borrower_name": "Al"}, "borrower_name"),
    ({"borrower_national_id": ""}, "borrower_national_id"),
    ({"borrower_national_id": "529.982.247-24"}, "borrower_national_id"),
    ({"book_key": " "}, "book_key"),
    ({"due_date": None}, "due_date"),
    ({"due_date": START.date() - timedelta(days=1)}, "due_date"),
    ({"due_date": START + timedelta(days=61)}, "due_date"),
])
def test_validation_happens_before_storage(test_settings, loan_input, overrides, field):
    database = MagicMock()
    database.clock.return_value = START
    coordinator = InventoryCoordinator(database, MagicMock(), test_settings)

    with pytest.raises(ValidationError) as exc:
        coordinator.create_loan(loan_input(**{"book_key": "OL1M", **overrides}))
    assert exc.value.field == field
    database.run_in_transaction.assert_not_called()
    database.transaction.assert_not_called()


def test_return_twice_is_idempotent(lib, add_book, loan_input):
    add_book("OL1M", "Dune", quantity=2)
    loan_id = lib.inventory.create_loan(loan_input("OL1M"))

    first = lib.inventory.return_book(loan_id)
    second = lib.inventory.return_book(loan_id)
    assert first.status == second.status == LoanStatus.RETURNED.value
    assert second.return_date == first.return_date
    assert counters(lib, "OL1M") == (2, 2)


def test_return_unknown_or_blank_loan(lib):
    with pytest.raises(NotFoundError):
        lib.inventory.return_book("no-such-loan")
    with pytest.raises(ValidationError):
        lib.inventory.return_book("  ")


def test_return_with_corrupt_status(lib, add_book, loan_input):
    add_book("OL1M", "Dune", quantity=1)
    loan_id = lib.inventory.create_loan(loan_input("OL1M"))
    with lib.database.connection() as conn:
        conn.execute("UPDATE loans SET status = 'lost' WHERE id = ?", (loan_id,))

    with pytest.raises(ValidationError) as exc:
        lib.inventory.return_book(loan_id)
    assert exc.value.field == "status"
    assert counters(lib, "OL1M") == (1, 0)


def test_return_clamps_available_to_quantity(lib, add_book, loan_input):
    add_book("OL1M", "Dune", quantity=2)
    loan_id = lib.inventory.create_loan(loan_input("OL1M"))
    with lib.database.connection() as conn:
        conn.execute("UPDATE books SET available_quantity = quantity WHERE key = 'OL1M'")

    lib.inventory.return_book(loan_id)
    assert counters(lib, "OL1M") == (2, 2)


def test_zero_timeout_applies_nothing(lib, add_book, loan_input):
    add_book("OL1M", "Dune", quantity=1)
    with pytest.raises(ConflictError):
        lib.inventory.create_loan(loan_input("OL1M"), timeout=0)
    assert counters(lib, "OL1M") == (1, 1)
    assert lib.ledger.list_all() == []


def test_failure_inside_transaction_rolls_back(lib, add_book, loan_input, monkeypatch):
    add_book("OL1M", "Dune", quantity=1)

    def broken_insert(tx, loan):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(lib.ledger, "insert", broken_insert)
    with pytest.raises(RuntimeError):
        lib.inventory.create_loan(loan_input("OL1M"))
    assert counters(lib, "OL1M") == (1, 1)


def test_concurrent_loans_never_oversell(lib, add_book, loan_input):
    add_book("OL1M", "Dune", quantity=3)
    requests = [loan_input("OL1M") for _ in range(10)]

    def attempt(data):
        try:
            return lib.inventory.create_loan(data)
        except UnavailableError:
            return None

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(attempt, requests))

    assert len([r for r in results if r]) == 3
    assert len([r for r in results if r is None]) == 7
    assert counters(lib, "OL1M") == (3, 0)
    assert_consistent(lib)


def test_set_quantity(lib, add_book, loan_input):
    add_book("OL1M", "Dune", quantity=2)
    lib.inventory.create_loan(loan_input("OL1M"))

    book = lib.inventory.set_quantity("OL1M", 4)
    assert (book.quantity, book.available_quantity) == (4, 3)
    with pytest.raises(ValidationError):
        lib.inventory.set_quantity("OL1M", 0)
    with pytest.raises(NotFoundError):
        lib.inventory.set_quantity("OL404M", 1)
    assert_consistent(lib)


def test_set_quantity_on_stub(lib, add_book):
    add_book("OL1M", "Stub")
    assert counters(lib, "OL1M") == (None, None)
    lib.inventory.set_quantity("OL1M", 2)
    assert counters(lib, "OL1M") == (2, 2)


def test_audit_reports_discrepancies(lib, add_book, loan_input):
    add_book("OL1M", "Dune", quantity=2)
    add_book("OL2M", "Emma", quantity=1)
    lib.inventory.create_loan(loan_input("OL1M"))
    assert lib.inventory.audit() == []

    with lib.database.connection() as conn:
        conn.execute("UPDATE books SET available_quantity = 2 WHERE key = 'OL1M'")
    problems = lib.inventory.audit()
    assert [p["key"] for p in problems] == ["OL1M"]
    assert problems[0]["active_loans"] == 1


def test_ledger_listing_order(lib, add_book, loan_input):
    add_book("OL1M", "Dune", quantity=5)
    first = lib.inventory.create_loan(loan_input("OL1M"))
    second = lib.inventory.create_loan(loan_input("OL1M"))
    third = lib.inventory.create_loan(loan_input("OL1M", admin=Principal(id="admin-2")))
    lib.inventory.return_book(second)

    assert [loan.id for loan in lib.ledger.list_all()] == [third, first, second]
    assert [loan.id for loan in lib.ledger.list_by_admin("admin-1")] == [first, second]
    assert lib.ledger.list_by_admin("") == []
    assert lib.ledger.count_active("OL1M") == 2


def test_overdue(lib, add_book, loan_input, clock):
    add_book("OL1M", "Dune", quantity=1)
    loan = lib.ledger.get(lib.inventory.create_loan(loan_input("OL1M", due_date=clock.now + timedelta(days=1))))
    assert not loan.is_overdue(clock.now)
    clock.advance(days=2)
    assert loan.is_overdue(clock.now)


def test_get_missing_loan(lib):
    with pytest.raises(NotFoundError) as exc:
        lib.ledger.get("nope")
    assert exc.value.kind == "loan"
