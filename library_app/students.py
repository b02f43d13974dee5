import logging
import sqlite3
from typing import List, Optional

import bcrypt

from library_app.config import settings
from library_app.database import MAX_ROW_ID, get_db_connection, initialize_database, transaction
from library_app.users import Role, User

logger = logging.getLogger(__name__)


def _hash_password(password: str) -> str:
    """bcrypt hash of the password. Verification lives with the auth service."""
    raw = password.encode("utf-8")
    # bcrypt only looks at the first 72 bytes
    if len(raw) > 72:
        raise ValueError("Password must be at most 72 bytes long.")
    return bcrypt.hashpw(raw, bcrypt.gensalt(rounds=settings.bcrypt_rounds)).decode("utf-8")


class StudentRegistry:
    """Student and librarian accounts as seen by the loan desk."""

    def __init__(self, db_file: Optional[str] = None, initialize: bool = True) -> None:
        self.db_file = db_file
        if initialize:
            initialize_database(db_file)

    def register_student(self, name: str, registration_number: str, password: str,
                         faculty: Optional[str] = None, course_of_study: Optional[str] = None,
                         intake_batch: Optional[str] = None) -> User:
        name = (name or "").strip()
        registration_number = (registration_number or "").strip()
        if not name or not registration_number:
            raise ValueError("Name and registration number are required.")
        if not password:
            raise ValueError("Password is required.")

        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute(
                "INSERT INTO users (name, role, registration_number, password_hash, faculty, "
                "course_of_study, intake_batch) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (name, Role.STUDENT.value, registration_number, _hash_password(password),
                 faculty, course_of_study, intake_batch),
            )
            user_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValueError("Student with this registration number already exists") from e
        finally:
            conn.close()
        logger.info(f"Registered student {registration_number} (user {user_id})")
        return self._get(user_id)

    def register_librarian(self, name: str, email: str, password: str) -> User:
        name = (name or "").strip()
        email = (email or "").strip().lower()
        if not name or "@" not in email:
            raise ValueError("A name and a valid email are required.")
        if not password:
            raise ValueError("Password is required.")

        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute(
                "INSERT INTO users (name, role, email, password_hash) VALUES (?, ?, ?, ?)",
                (name, Role.ADMIN.value, email, _hash_password(password)),
            )
            user_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValueError("User already exists") from e
        finally:
            conn.close()
        logger.info(f"Registered librarian {email} (user {user_id})")
        return self._get(user_id)

    def list_students(self) -> List[User]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                "SELECT * FROM users WHERE role = ? ORDER BY registration_number", (Role.STUDENT.value,)
            ).fetchall()
            return [User.from_row(row) for row in rows]
        finally:
            conn.close()

    def list_librarians(self) -> List[User]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                "SELECT * FROM users WHERE role = ? ORDER BY name", (Role.ADMIN.value,)
            ).fetchall()
            return [User.from_row(row) for row in rows]
        finally:
            conn.close()

    def find_student(self, registration_number: str) -> Optional[User]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                "SELECT * FROM users WHERE registration_number = ? AND role = ?",
                (registration_number, Role.STUDENT.value),
            ).fetchone()
            return User.from_row(row) if row else None
        finally:
            conn.close()

    def delete_student(self, user_id: int) -> bool:
        """Delete a student account together with its checkout history.

        Copies the student still holds are returned to the shelf first.

        Returns False if no such user exists; raises ValueError for a
        non-student account.
        """
        user = self._get(user_id)
        if user is None:
            return False
        if not user.is_student:
            raise ValueError("User is not a student")

        conn = get_db_connection(self.db_file)
        try:
            with transaction(conn):
                conn.execute(
                    "UPDATE books SET available_copies = available_copies + ("
                    "SELECT COUNT(*) FROM checkouts c "
                    "WHERE c.book_id = books.id AND c.user_id = ? AND c.returned_at IS NULL) "
                    "WHERE id IN (SELECT book_id FROM checkouts WHERE user_id = ? AND returned_at IS NULL)",
                    (user_id, user_id),
                )
                conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        finally:
            conn.close()
        logger.info(f"Deleted student {user.registration_number} (user {user_id})")
        return True

    def delete_librarian(self, user_id: int) -> bool:
        """Delete a librarian account. Returns False if no librarian has this id."""
        user = self._get(user_id)
        if user is None or user.role is not Role.ADMIN:
            return False

        conn = get_db_connection(self.db_file)
        try:
            conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        finally:
            conn.close()
        logger.info(f"Deleted librarian {user.email} (user {user_id})")
        return True

    def _get(self, user_id: int) -> Optional[User]:
        if not 0 < user_id <= MAX_ROW_ID:
            return None
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return User.from_row(row) if row else None
        finally:
            conn.close()
