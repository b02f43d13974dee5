from __future__ import annotations


class Book:
    """A title in the catalog together with its copy counters."""

    def __init__(self, title: str, author: str, isbn: str | None = None, id: int | None = None,
                 total_copies: int = 1, available_copies: int | None = None,
                 subject: str | None = None, research_area: str | None = None,
                 location: str | None = None, description: str | None = None,
                 image_url: str | None = None, created_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip() if isbn else None
        self.total_copies = total_copies
        # New titles start with every copy on the shelf
        self.available_copies = total_copies if available_copies is None else available_copies
        self.subject = subject
        self.research_area = research_area
        self.location = location
        self.description = description
        self.image_url = image_url
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available_copies}/{self.total_copies} available)"

    @property
    def on_loan(self) -> int:
        return self.total_copies - self.available_copies

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "subject": self.subject,
            "research_area": self.research_area,
            "location": self.location,
            "description": self.description,
            "image_url": self.image_url,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            isbn=data.get("isbn"),
            total_copies=data.get("total_copies", 1),
            available_copies=data.get("available_copies"),
            subject=data.get("subject"),
            research_area=data.get("research_area"),
            location=data.get("location"),
            description=data.get("description"),
            image_url=data.get("image_url"),
            created_at=data.get("created_at"),
        )
