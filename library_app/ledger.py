"""Checkout / return bookkeeping.

The ledger keeps three things consistent: a book's ``available_copies``, the
number of active loans a student holds and the append-only checkout history.
For every book ``available_copies + active checkouts == total_copies`` and no
student ever holds more than ``max_active_loans`` active checkouts.

Each operation runs its precondition checks and its writes inside one
database transaction, so a rejected request never leaves a partial write and
two concurrent requests against the same book or student cannot both pass a
check that only one of them may pass.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, ContextManager, Dict, Iterator, List, Optional, Tuple

from library_app.book import Book
from library_app.checkout import Checkout
from library_app.config import settings
from library_app.database import get_db_connection, transaction
from library_app.errors import (
    BookNotFound,
    BookUnavailable,
    LedgerError,
    LimitExceeded,
    NoActiveCheckout,
    StoreFailure,
    StudentNotFound,
)
from library_app.repositories import Repositories, sqlite_repositories
from library_app.users import Student

logger = logging.getLogger(__name__)

UnitOfWork = Callable[[bool], ContextManager[Repositories]]


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LoanResult:
    """Outcome of a successful checkout or return."""
    book: Book
    student: Student
    checkout: Checkout
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "book": self.book.to_dict(),
            "student": self.student.to_dict(),
            "checkout": self.checkout.to_dict(),
        }


class LoanLedger:
    """Checks books out to students and back in."""

    def __init__(self, db_file: Optional[str] = None, max_active_loans: Optional[int] = None,
                 unit_of_work: Optional[UnitOfWork] = None) -> None:
        self.db_file = db_file
        self.max_active_loans = settings.max_active_loans if max_active_loans is None else max_active_loans
        self._unit_of_work = unit_of_work or self._sqlite_unit_of_work

    @contextmanager
    def _sqlite_unit_of_work(self, write: bool) -> Iterator[Repositories]:
        try:
            conn = get_db_connection(self.db_file)
        except sqlite3.Error as exc:
            logger.error(f"Could not open the database: {exc}")
            raise StoreFailure() from exc
        try:
            if write:
                with transaction(conn):
                    yield sqlite_repositories(conn)
            else:
                yield sqlite_repositories(conn)
        except sqlite3.Error as exc:
            logger.error(f"Ledger transaction failed and was rolled back: {exc}")
            raise StoreFailure() from exc
        finally:
            conn.close()

    # ------------------------- Operations ------------------------- #
    def checkout(self, book_id: int, registration_number: str) -> LoanResult:
        """Lend one copy of ``book_id`` to the student with ``registration_number``.

        Raises BookNotFound, StudentNotFound, LimitExceeded or BookUnavailable,
        checked in that order, or StoreFailure if the database fails.
        """
        with self._unit_of_work(True) as repos:
            book = repos.books.find_by_id(book_id)
            if book is None:
                raise self._rejected("checkout", BookNotFound(), book_id, registration_number)

            student = repos.users.find_student(registration_number)
            if student is None:
                raise self._rejected("checkout", StudentNotFound(), book_id, registration_number)

            active = repos.checkouts.count_active(student.id)
            if active >= self.max_active_loans:
                raise self._rejected("checkout", LimitExceeded(self.max_active_loans), book_id, registration_number)

            if book.available_copies <= 0:
                raise self._rejected("checkout", BookUnavailable(), book_id, registration_number)

            record = repos.checkouts.create(student.id, book.id, utcnow())
            # The guarded decrement rolls the insert back if the copy vanished
            if not repos.books.take_copy(book.id):
                raise self._rejected("checkout", BookUnavailable(), book_id, registration_number)
            book.available_copies -= 1

        logger.info(
            f"Checked out book {book.id} to student {registration_number} "
            f"(checkout {record.id}, {book.available_copies}/{book.total_copies} left)"
        )
        record.student = student.descriptor()
        record.book_title = book.title
        return LoanResult(book=book, student=student.descriptor(), checkout=record,
                          message="Book checked out successfully")

    def return_book(self, book_id: int, registration_number: str) -> LoanResult:
        """Close the student's oldest active checkout of ``book_id``.

        Raises BookNotFound, StudentNotFound or NoActiveCheckout, or
        StoreFailure if the database fails. A second return of the same loan
        finds no active row and fails with NoActiveCheckout.
        """
        with self._unit_of_work(True) as repos:
            book = repos.books.find_by_id(book_id)
            if book is None:
                raise self._rejected("return", BookNotFound(), book_id, registration_number)

            student = repos.users.find_student(registration_number)
            if student is None:
                raise self._rejected("return", StudentNotFound(), book_id, registration_number)

            record = repos.checkouts.find_active(student.id, book.id)
            if record is None:
                raise self._rejected("return", NoActiveCheckout(), book_id, registration_number)

            returned_at = utcnow()
            if not repos.checkouts.mark_returned(record.id, returned_at):
                raise self._rejected("return", NoActiveCheckout(), book_id, registration_number)
            record.mark_returned(returned_at)

            if not repos.books.put_back_copy(book.id):
                logger.error(
                    f"Book {book.id} already has all {book.total_copies} copies on the shelf "
                    f"while checkout {record.id} was still active"
                )
                raise StoreFailure()
            book.available_copies += 1

        logger.info(
            f"Student {registration_number} returned book {book.id} "
            f"(checkout {record.id}, {book.available_copies}/{book.total_copies} available)"
        )
        record.student = student.descriptor()
        record.book_title = book.title
        return LoanResult(book=book, student=student.descriptor(), checkout=record,
                          message="Book returned successfully")

    # ------------------------- Projections ------------------------- #
    def student_active_checkouts(self, registration_number: str) -> List[Checkout]:
        """Books the student currently holds, most recent first."""
        with self._unit_of_work(False) as repos:
            student = repos.users.find_student(registration_number)
            if student is None:
                raise StudentNotFound()
            return repos.checkouts.list_active_for_user(student.id)

    def book_active_checkouts(self, book_id: int) -> List[Checkout]:
        with self._unit_of_work(False) as repos:
            return repos.checkouts.list_active_for_book(book_id)

    def book_history(self, book_id: int) -> List[Checkout]:
        """Every checkout of the book, returned or not, most recent first."""
        with self._unit_of_work(False) as repos:
            return repos.checkouts.list_for_book(book_id)

    def active_checkouts(self) -> Tuple[int, List[Checkout]]:
        """All outstanding loans and their count (the pending returns)."""
        with self._unit_of_work(False) as repos:
            checkouts = repos.checkouts.list_active()
        return len(checkouts), checkouts

    def pending_returns(self) -> int:
        with self._unit_of_work(False) as repos:
            return repos.checkouts.count_all_active()

    @staticmethod
    def _rejected(operation: str, error: LedgerError, book_id: int, registration_number: str) -> LedgerError:
        logger.warning(
            f"Rejected {operation} of book {book_id} for student {registration_number}: {error.message}"
        )
        return error
