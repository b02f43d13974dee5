from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"
    STUDENT = "student"


@dataclass
class User:
    """A library account.

    Students are identified by ``registration_number``; librarians and plain
    users by ``email``. The ledger only ever reads users.
    """
    id: int
    name: str
    role: Role
    password_hash: str
    registration_number: Optional[str] = None
    email: Optional[str] = None
    faculty: Optional[str] = None
    course_of_study: Optional[str] = None
    intake_batch: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_student(self) -> bool:
        return self.role is Role.STUDENT

    def descriptor(self) -> "Student":
        return Student(id=self.id, name=self.name, registration_number=self.registration_number)

    def to_dict(self) -> Dict[str, Any]:
        # password_hash is never serialized
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role.value,
            "registration_number": self.registration_number,
            "email": self.email,
            "faculty": self.faculty,
            "course_of_study": self.course_of_study,
            "intake_batch": self.intake_batch,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_row(row: Any) -> "User":
        data = dict(row)
        data["role"] = Role(data["role"])
        return User(**data)


@dataclass(frozen=True)
class Student:
    """Minimal student descriptor returned alongside ledger results."""
    id: int
    name: str
    registration_number: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "registration_number": self.registration_number}
