import logging
import sqlite3
from typing import Any, Dict, List, Optional

from library_app.book import Book
from library_app.database import MAX_ROW_ID, get_db_connection, initialize_database, transaction
from library_app.repositories import BOOK_COLUMNS

logger = logging.getLogger(__name__)

# Descriptive columns a librarian may edit directly. available_copies is not
# one of them: only the ledger and total_copies changes move it.
EDITABLE_FIELDS = ("title", "author", "isbn", "subject", "research_area", "location", "description", "image_url")


class Catalog:
    """Manages the collection of books."""

    def __init__(self, db_file: Optional[str] = None, initialize: bool = True) -> None:
        self.db_file = db_file
        if initialize:
            initialize_database(db_file)  # Ensure DB and tables exist

    # ------------------------- Core operations ------------------------- #
    def add_book(self, book: Book) -> Book:
        """Insert a pre-constructed Book. Prevent duplicates by ISBN."""
        if book.isbn:
            book.isbn = self._normalize_isbn(book.isbn) or None
        if not book.title or not book.author:
            raise ValueError("Title and author are required.")
        if book.total_copies < 0:
            raise ValueError("Total copies cannot be negative.")
        if not 0 <= book.available_copies <= book.total_copies:
            raise ValueError("Available copies must be between 0 and total copies.")
        if book.isbn and self.find_by_isbn(book.isbn):
            raise ValueError(f"Book with ISBN {book.isbn} already exists.")

        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute(
                "INSERT INTO books (title, author, isbn, subject, research_area, location, description, "
                "image_url, total_copies, available_copies) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (book.title, book.author, book.isbn, book.subject, book.research_area, book.location,
                 book.description, book.image_url, book.total_copies, book.available_copies),
            )
            book.id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Book with ISBN {book.isbn} already exists.") from e
        finally:
            conn.close()
        logger.info(f"Added book {book.id}: {book.title} ({book.total_copies} copies)")
        return self.find_book(book.id)

    def remove_book(self, book_id: int) -> bool:
        """Delete a book; its checkout history goes with it."""
        if not 0 < book_id <= MAX_ROW_ID:
            return False
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            removed = cursor.rowcount > 0
        finally:
            conn.close()
        if removed:
            logger.info(f"Removed book {book_id}")
        return removed

    def list_books(self) -> List[Book]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books ORDER BY title").fetchall()
            return [Book.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def find_book(self, book_id: int) -> Optional[Book]:
        if not 0 < book_id <= MAX_ROW_ID:
            return None
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def find_by_isbn(self, isbn: str) -> Optional[Book]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                f"SELECT {BOOK_COLUMNS} FROM books WHERE isbn = ?", (self._normalize_isbn(isbn),)
            ).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def update_book(self, book_id: int, total_copies: Optional[int] = None, **fields: Any) -> Optional[Book]:
        """Update descriptive fields and/or the number of copies owned.

        Changing ``total_copies`` moves ``available_copies`` by the same amount,
        so copies that are out on loan stay accounted for. Returns the updated
        book or None if not found.
        """
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        updates = {k: v.strip() if isinstance(v, str) else v for k, v in fields.items() if v is not None}
        if "isbn" in updates:
            updates["isbn"] = self._normalize_isbn(updates["isbn"]) or None
        if not updates and total_copies is None:
            raise ValueError("Nothing to update.")
        if not 0 < book_id <= MAX_ROW_ID:
            return None

        conn = get_db_connection(self.db_file)
        try:
            with transaction(conn):
                row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
                if row is None:
                    return None
                current = Book.from_dict(dict(row))

                if total_copies is not None:
                    on_loan = current.on_loan
                    if total_copies < on_loan:
                        raise ValueError(
                            f"Cannot set total copies to {total_copies}: {on_loan} copies are checked out."
                        )
                    updates["total_copies"] = total_copies
                    updates["available_copies"] = total_copies - on_loan

                assignments = ", ".join(f"{column} = ?" for column in updates)
                conn.execute(f"UPDATE books SET {assignments} WHERE id = ?", (*updates.values(), book_id))
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Book with ISBN {updates.get('isbn')} already exists.") from e
        finally:
            conn.close()
        return self.find_book(book_id)

    def search_books(self, query: str) -> List[Book]:
        """Search for books by title, author, ISBN or subject."""
        pattern = f"%{query}%"
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                f"SELECT {BOOK_COLUMNS} FROM books "
                "WHERE title LIKE ? OR author LIKE ? OR isbn LIKE ? OR subject LIKE ? ORDER BY title",
                (pattern, pattern, pattern, pattern),
            ).fetchall()
            return [Book.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def get_statistics(self) -> Dict[str, Any]:
        """Get library statistics."""
        conn = get_db_connection(self.db_file)
        try:
            titles, total, available = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(total_copies), 0), COALESCE(SUM(available_copies), 0) FROM books"
            ).fetchone()
            active = conn.execute("SELECT COUNT(*) FROM checkouts WHERE returned_at IS NULL").fetchone()[0]
            return {
                "total_books": titles,
                "total_copies": total,
                "available_copies": available,
                "active_checkouts": active,
            }
        finally:
            conn.close()

    # ------------------------- Utilities ------------------------- #
    @staticmethod
    def _normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        cleaned = "".join(ch for ch in raw if ch.isalnum())
        return cleaned.upper()
