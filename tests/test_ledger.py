import random
import sqlite3
from contextlib import contextmanager
from unittest.mock import MagicMock

import pytest

from library_app.database import get_db_connection
from library_app.errors import (
    BookNotFound,
    BookUnavailable,
    LimitExceeded,
    NoActiveCheckout,
    StoreFailure,
    StudentNotFound,
)
from library_app.ledger import LoanLedger
from library_app.repositories import Repositories, SqliteBookRepository


def _active_rows(db_file, book_id=None, user_id=None):
    conn = get_db_connection(db_file)
    try:
        sql = "SELECT COUNT(*) FROM checkouts WHERE returned_at IS NULL"
        params = []
        if book_id is not None:
            sql += " AND book_id = ?"
            params.append(book_id)
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        return conn.execute(sql, params).fetchone()[0]
    finally:
        conn.close()


def _all_rows(db_file):
    conn = get_db_connection(db_file)
    try:
        return conn.execute("SELECT COUNT(*) FROM checkouts").fetchone()[0]
    finally:
        conn.close()


def test_checkout_takes_one_copy(ledger, catalog, make_book, make_student, db_file):
    book = make_book(copies=2)
    student = make_student("S1", name="Ada")

    result = ledger.checkout(book.id, "S1")

    assert result.message == "Book checked out successfully"
    assert result.book.available_copies == 1
    assert result.student.id == student.id
    assert result.student.name == "Ada"
    assert result.student.registration_number == "S1"
    assert result.checkout.is_active
    assert catalog.find_book(book.id).available_copies == 1
    assert _active_rows(db_file, book_id=book.id) == 1


def test_same_student_can_borrow_a_title_twice_while_copies_remain(ledger, catalog, make_book, make_student, db_file):
    book = make_book(copies=2)
    make_student("S1")

    ledger.checkout(book.id, "S1")
    second = ledger.checkout(book.id, "S1")
    assert second.book.available_copies == 0
    assert _active_rows(db_file, book_id=book.id) == 2

    with pytest.raises(BookUnavailable, match="Book is not available"):
        ledger.checkout(book.id, "S1")

    returned = ledger.return_book(book.id, "S1")
    assert returned.book.available_copies == 1
    assert _active_rows(db_file, book_id=book.id) == 1
    assert _all_rows(db_file) == 2


def test_unknown_book_is_checked_first(ledger, make_student):
    make_student("S1")
    with pytest.raises(BookNotFound, match="Book not found"):
        ledger.checkout(999, "S1")
    # Both unknown: the book check still wins
    with pytest.raises(BookNotFound):
        ledger.checkout(999, "NOPE")


def test_unknown_student_changes_nothing(ledger, catalog, make_book, db_file):
    book = make_book(copies=1)

    with pytest.raises(StudentNotFound, match="Student not found with this registration number"):
        ledger.checkout(book.id, "UNKNOWN")

    assert catalog.find_book(book.id).available_copies == 1
    assert _all_rows(db_file) == 0


def test_non_student_account_is_not_a_student(ledger, make_book, db_file):
    book = make_book()
    conn = get_db_connection(db_file)
    try:
        conn.execute(
            "INSERT INTO users (name, role, registration_number, password_hash) VALUES (?, ?, ?, ?)",
            ("Staff", "user", "U1", "x$y"),
        )
    finally:
        conn.close()

    with pytest.raises(StudentNotFound):
        ledger.checkout(book.id, "U1")


def test_limit_exceeded_until_a_book_comes_back(ledger, make_book, make_student, db_file):
    student = make_student("S1")
    books = [make_book(title=f"Book {i}") for i in range(4)]
    for book in books[:3]:
        ledger.checkout(book.id, "S1")

    with pytest.raises(LimitExceeded, match="The student has borrowed 3 books!"):
        ledger.checkout(books[3].id, "S1")
    assert _active_rows(db_file, user_id=student.id) == 3

    ledger.return_book(books[0].id, "S1")
    result = ledger.checkout(books[3].id, "S1")
    assert result.book.available_copies == 0
    assert _active_rows(db_file, user_id=student.id) == 3


def test_limit_is_checked_before_availability(ledger, make_book, make_student):
    make_student("S1")
    make_student("S2")
    taken = make_book(title="Taken")
    ledger.checkout(taken.id, "S2")
    for i in range(3):
        ledger.checkout(make_book(title=f"Book {i}").id, "S1")

    with pytest.raises(LimitExceeded):
        ledger.checkout(taken.id, "S1")


def test_configured_limit_shows_in_message(db_file, make_book, make_student):
    ledger = LoanLedger(db_file=db_file, max_active_loans=1)
    make_student("S1")
    ledger.checkout(make_book(title="One").id, "S1")

    with pytest.raises(LimitExceeded) as excinfo:
        ledger.checkout(make_book(title="Two").id, "S1")
    assert excinfo.value.message == "The student has borrowed 1 books!"


def test_zero_copy_book_is_unavailable(ledger, make_book, make_student, db_file):
    book = make_book(copies=0)
    make_student("S1")
    with pytest.raises(BookUnavailable):
        ledger.checkout(book.id, "S1")
    assert _all_rows(db_file) == 0


def test_second_return_fails(ledger, catalog, make_book, make_student):
    book = make_book(copies=1)
    make_student("S1")
    ledger.checkout(book.id, "S1")

    first = ledger.return_book(book.id, "S1")
    assert first.message == "Book returned successfully"
    assert first.checkout.returned_at is not None
    assert first.book.available_copies == 1

    with pytest.raises(NoActiveCheckout, match="No active checkout found for this student and book"):
        ledger.return_book(book.id, "S1")
    assert catalog.find_book(book.id).available_copies == 1


def test_return_by_another_student_is_rejected(ledger, make_book, make_student):
    book = make_book(copies=1)
    make_student("S1")
    make_student("S2")
    ledger.checkout(book.id, "S1")

    with pytest.raises(NoActiveCheckout):
        ledger.return_book(book.id, "S2")


def test_return_checks_book_then_student(ledger, make_book):
    book = make_book()
    with pytest.raises(BookNotFound):
        ledger.return_book(123, "S1")
    with pytest.raises(StudentNotFound):
        ledger.return_book(book.id, "S1")


def test_return_closes_the_oldest_loan(ledger, make_book, make_student):
    book = make_book(copies=2)
    make_student("S1")
    first = ledger.checkout(book.id, "S1").checkout
    second = ledger.checkout(book.id, "S1").checkout

    returned = ledger.return_book(book.id, "S1").checkout
    assert returned.id == first.id

    history = {c.id: c for c in ledger.book_history(book.id)}
    assert history[first.id].returned_at is not None
    assert history[second.id].returned_at is None


def test_invariants_hold_over_random_operations(ledger, catalog, make_book, make_student, db_file):
    rng = random.Random(1234)
    books = [make_book(title=f"Book {i}", copies=rng.randint(0, 3)) for i in range(4)]
    students = [make_student(f"S{i}") for i in range(5)]

    for _ in range(200):
        book = rng.choice(books)
        student = rng.choice(students)
        operation = rng.choice([ledger.checkout, ledger.return_book])
        try:
            operation(book.id, student.registration_number)
        except (BookUnavailable, LimitExceeded, NoActiveCheckout):
            pass

        for b in books:
            current = catalog.find_book(b.id)
            assert current.available_copies + _active_rows(db_file, book_id=b.id) == current.total_copies
        for s in students:
            assert _active_rows(db_file, user_id=s.id) <= 3


def test_projections(ledger, make_book, make_student):
    first = make_book(title="First", copies=2)
    second = make_book(title="Second", copies=1)
    make_student("S1", name="Ada")
    make_student("S2", name="Grace")

    ledger.checkout(first.id, "S1")
    ledger.checkout(second.id, "S1")
    ledger.checkout(first.id, "S2")
    ledger.return_book(first.id, "S2")

    mine = ledger.student_active_checkouts("S1")
    assert [c.book_title for c in mine] == ["Second", "First"]
    assert all(c.student.name == "Ada" for c in mine)

    on_loan = ledger.book_active_checkouts(first.id)
    assert [c.student.registration_number for c in on_loan] == ["S1"]

    history = ledger.book_history(first.id)
    assert [c.student.registration_number for c in history] == ["S2", "S1"]
    assert history[0].status.value == "returned"
    assert history[1].status.value == "active"

    pending_count, checkouts = ledger.active_checkouts()
    assert pending_count == 2
    assert len(checkouts) == 2
    assert ledger.pending_returns() == 2


def test_student_projection_for_unknown_student(ledger):
    with pytest.raises(StudentNotFound):
        ledger.student_active_checkouts("NOPE")


def test_unopenable_database_is_a_store_failure(tmp_path):
    # A directory cannot be opened as a database file
    ledger = LoanLedger(db_file=str(tmp_path))
    with pytest.raises(StoreFailure) as excinfo:
        ledger.checkout(1, "S1")
    assert excinfo.value.message == "Server Error"
    assert isinstance(excinfo.value.__cause__, sqlite3.Error)


def test_store_failure_rolls_back_the_checkout(ledger, catalog, make_book, make_student, db_file, monkeypatch):
    book = make_book(copies=1)
    make_student("S1")

    def broken_take_copy(self, book_id):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(SqliteBookRepository, "take_copy", broken_take_copy)

    with pytest.raises(StoreFailure):
        ledger.checkout(book.id, "S1")
    assert _all_rows(db_file) == 0
    assert catalog.find_book(book.id).available_copies == 1


def test_return_rolls_back_when_the_shelf_is_already_full(ledger, catalog, make_book, make_student, monkeypatch):
    book = make_book(copies=1)
    make_student("S1")
    ledger.checkout(book.id, "S1")

    monkeypatch.setattr(SqliteBookRepository, "put_back_copy", lambda self, book_id: False)

    with pytest.raises(StoreFailure):
        ledger.return_book(book.id, "S1")
    # The loan is still open and the counter untouched
    [checkout] = ledger.book_history(book.id)
    assert checkout.returned_at is None
    assert catalog.find_book(book.id).available_copies == 0


@pytest.mark.parametrize("book_id", [2**63, 2**70, 0, -1])
def test_book_ids_outside_the_row_range_are_not_found(ledger, make_student, book_id):
    make_student("S1")
    with pytest.raises(BookNotFound):
        ledger.checkout(book_id, "S1")
    with pytest.raises(BookNotFound):
        ledger.return_book(book_id, "S1")
    assert ledger.book_active_checkouts(book_id) == []
    assert ledger.book_history(book_id) == []


def test_ledger_runs_against_any_repositories():
    repos = Repositories(books=MagicMock(), users=MagicMock(), checkouts=MagicMock())
    repos.books.find_by_id.return_value = None

    @contextmanager
    def unit_of_work(write):
        yield repos

    ledger = LoanLedger(max_active_loans=3, unit_of_work=unit_of_work)
    with pytest.raises(BookNotFound):
        ledger.checkout(1, "S1")

    repos.books.find_by_id.assert_called_once_with(1)
    repos.users.find_student.assert_not_called()
    repos.checkouts.create.assert_not_called()
