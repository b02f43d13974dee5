from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from library_app.users import Student


class LoanStatus(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"


class AlreadyReturned(Exception):
    """Raised when a returned checkout is asked to return again."""


@dataclass
class Checkout:
    """One loan of one copy of a book to one student.

    A checkout starts ACTIVE and moves to RETURNED exactly once. In storage
    ``returned_at`` being NULL is what marks the loan as active.
    """
    id: int
    user_id: int
    book_id: int
    checked_out_at: str
    returned_at: Optional[str] = None
    # Filled in by the listing queries
    student: Optional[Student] = None
    book_title: Optional[str] = None

    @property
    def status(self) -> LoanStatus:
        return LoanStatus.ACTIVE if self.returned_at is None else LoanStatus.RETURNED

    @property
    def is_active(self) -> bool:
        return self.status is LoanStatus.ACTIVE

    def mark_returned(self, at: str) -> None:
        if self.status is LoanStatus.RETURNED:
            raise AlreadyReturned(f"Checkout {self.id} was already returned at {self.returned_at}")
        self.returned_at = at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "checked_out_at": self.checked_out_at,
            "returned_at": self.returned_at,
            "status": self.status.value,
            "student": self.student.to_dict() if self.student else None,
            "book_title": self.book_title,
        }

    @staticmethod
    def from_row(row: Any) -> "Checkout":
        data = dict(row)
        student = None
        if data.get("student_name") is not None:
            student = Student(
                id=data["user_id"],
                name=data["student_name"],
                registration_number=data.get("registration_number"),
            )
        return Checkout(
            id=data["id"],
            user_id=data["user_id"],
            book_id=data["book_id"],
            checked_out_at=data["checked_out_at"],
            returned_at=data.get("returned_at"),
            student=student,
            book_title=data.get("book_title"),
        )
