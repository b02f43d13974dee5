"""Storage contracts used by the loan ledger and their SQLite implementations.

The ledger only talks to the three narrow interfaces below. The SQLite
classes are bound to a single connection so that every call made during one
ledger operation runs inside the same transaction.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import List, Optional, Protocol

from library_app.book import Book
from library_app.checkout import Checkout
from library_app.database import MAX_ROW_ID
from library_app.users import Role, User


class BookRepository(Protocol):
    def find_by_id(self, book_id: int) -> Optional[Book]: ...

    def take_copy(self, book_id: int) -> bool: ...

    def put_back_copy(self, book_id: int) -> bool: ...


class UserRepository(Protocol):
    def find_student(self, registration_number: str) -> Optional[User]: ...


class CheckoutRepository(Protocol):
    def create(self, user_id: int, book_id: int, checked_out_at: str) -> Checkout: ...

    def find_active(self, user_id: int, book_id: int) -> Optional[Checkout]: ...

    def count_active(self, user_id: int) -> int: ...

    def mark_returned(self, checkout_id: int, returned_at: str) -> bool: ...

    def list_active_for_user(self, user_id: int) -> List[Checkout]: ...

    def list_active_for_book(self, book_id: int) -> List[Checkout]: ...

    def list_for_book(self, book_id: int) -> List[Checkout]: ...

    def list_active(self) -> List[Checkout]: ...

    def count_all_active(self) -> int: ...


@dataclass
class Repositories:
    books: BookRepository
    users: UserRepository
    checkouts: CheckoutRepository


BOOK_COLUMNS = (
    "id, title, author, isbn, subject, research_area, location, description, "
    "image_url, total_copies, available_copies, created_at"
)

# Joined projection: the checkout row plus the student descriptor and book title
_CHECKOUT_SELECT = """
    SELECT c.id, c.user_id, c.book_id, c.checked_out_at, c.returned_at,
           u.name AS student_name, u.registration_number, b.title AS book_title
    FROM checkouts c
    JOIN users u ON u.id = c.user_id
    JOIN books b ON b.id = c.book_id
"""

_NEWEST_FIRST = " ORDER BY c.checked_out_at DESC, c.id DESC"


def _storable_id(value: int) -> bool:
    return 0 < value <= MAX_ROW_ID


class SqliteBookRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def find_by_id(self, book_id: int) -> Optional[Book]:
        if not _storable_id(book_id):
            return None
        row = self.conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def take_copy(self, book_id: int) -> bool:
        """Decrement available_copies; False when no copy is left."""
        cursor = self.conn.execute(
            "UPDATE books SET available_copies = available_copies - 1 WHERE id = ? AND available_copies > 0",
            (book_id,),
        )
        return cursor.rowcount == 1

    def put_back_copy(self, book_id: int) -> bool:
        """Increment available_copies; False when every copy is already on the shelf."""
        cursor = self.conn.execute(
            "UPDATE books SET available_copies = available_copies + 1 "
            "WHERE id = ? AND available_copies < total_copies",
            (book_id,),
        )
        return cursor.rowcount == 1


class SqliteUserRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def find_student(self, registration_number: str) -> Optional[User]:
        row = self.conn.execute(
            "SELECT * FROM users WHERE registration_number = ? AND role = ?",
            (registration_number, Role.STUDENT.value),
        ).fetchone()
        return User.from_row(row) if row else None


class SqliteCheckoutRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def create(self, user_id: int, book_id: int, checked_out_at: str) -> Checkout:
        cursor = self.conn.execute(
            "INSERT INTO checkouts (user_id, book_id, checked_out_at) VALUES (?, ?, ?)",
            (user_id, book_id, checked_out_at),
        )
        return Checkout(id=cursor.lastrowid, user_id=user_id, book_id=book_id, checked_out_at=checked_out_at)

    def find_active(self, user_id: int, book_id: int) -> Optional[Checkout]:
        # Oldest loan first when the student holds several copies of the title
        row = self.conn.execute(
            "SELECT id, user_id, book_id, checked_out_at, returned_at FROM checkouts "
            "WHERE user_id = ? AND book_id = ? AND returned_at IS NULL "
            "ORDER BY checked_out_at ASC, id ASC LIMIT 1",
            (user_id, book_id),
        ).fetchone()
        return Checkout.from_row(row) if row else None

    def count_active(self, user_id: int) -> int:
        return self.conn.execute(
            "SELECT COUNT(*) FROM checkouts WHERE user_id = ? AND returned_at IS NULL", (user_id,)
        ).fetchone()[0]

    def mark_returned(self, checkout_id: int, returned_at: str) -> bool:
        cursor = self.conn.execute(
            "UPDATE checkouts SET returned_at = ? WHERE id = ? AND returned_at IS NULL",
            (returned_at, checkout_id),
        )
        return cursor.rowcount == 1

    def list_active_for_user(self, user_id: int) -> List[Checkout]:
        return self._select("WHERE c.user_id = ? AND c.returned_at IS NULL", (user_id,))

    def list_active_for_book(self, book_id: int) -> List[Checkout]:
        if not _storable_id(book_id):
            return []
        return self._select("WHERE c.book_id = ? AND c.returned_at IS NULL", (book_id,))

    def list_for_book(self, book_id: int) -> List[Checkout]:
        if not _storable_id(book_id):
            return []
        return self._select("WHERE c.book_id = ?", (book_id,))

    def list_active(self) -> List[Checkout]:
        return self._select("WHERE c.returned_at IS NULL", ())

    def count_all_active(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM checkouts WHERE returned_at IS NULL").fetchone()[0]

    def _select(self, where: str, params: tuple) -> List[Checkout]:
        rows = self.conn.execute(_CHECKOUT_SELECT + where + _NEWEST_FIRST, params).fetchall()
        return [Checkout.from_row(row) for row in rows]


def sqlite_repositories(conn: sqlite3.Connection) -> Repositories:
    return Repositories(
        books=SqliteBookRepository(conn),
        users=SqliteUserRepository(conn),
        checkouts=SqliteCheckoutRepository(conn),
    )
