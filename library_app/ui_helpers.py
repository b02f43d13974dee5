import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_books_result(books: List[Any]) -> None:
    """Print the catalog in the current output mode.
    - plain: 'ID - Title by Author (available/total)' lines, or 'No books in library.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(str(b.id), b.title, b.author, f"{b.available_copies}/{b.total_copies}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author} ({b.available_copies}/{b.total_copies} available)")


def print_checkouts_result(checkouts: List[Any], empty_message: str = "No checkouts found.") -> None:
    """Print checkout rows; returned rows show their return time."""
    mode = get_output_mode()

    if not checkouts:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([c.to_dict() for c in checkouts], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📖 Checkouts", header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Book")
        table.add_column("Student")
        table.add_column("Checked out")
        table.add_column("Returned")
        for c in checkouts:
            student = c.student.registration_number if c.student else str(c.user_id)
            table.add_row(str(c.id), c.book_title or str(c.book_id), student,
                          c.checked_out_at, c.returned_at or "[yellow]on loan[/]")
        _console.print(table)
    else:
        for c in checkouts:
            student = c.student.registration_number if c.student else c.user_id
            state = f"returned {c.returned_at}" if c.returned_at else "on loan"
            print(f"#{c.id} - {c.book_title or c.book_id} -> {student} since {c.checked_out_at} ({state})")


def print_students_result(students: List[Any]) -> None:
    mode = get_output_mode()

    if not students:
        print("No students registered.")
        return

    if mode == "json":
        print(json.dumps([s.to_dict() for s in students], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="🎓 Students", header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Registration No.")
        table.add_column("Name")
        for s in students:
            table.add_row(str(s.id), s.registration_number or "", s.name)
        _console.print(table)
    else:
        for s in students:
            print(f"{s.registration_number} - {s.name}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = (
            f"[bold]Titles:[/] {stats.get('total_books', 0)}\n"
            f"[bold]Copies:[/] {stats.get('total_copies', 0)}\n"
            f"[bold]On shelf:[/] {stats.get('available_copies', 0)}\n"
            f"[bold]Pending returns:[/] {stats.get('active_checkouts', 0)}"
        )
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        print(f"Total Books: {stats.get('total_books', 0)}")
        print(f"Total Copies: {stats.get('total_copies', 0)}")
        print(f"Available Copies: {stats.get('available_copies', 0)}")
        print(f"Pending Returns: {stats.get('active_checkouts', 0)}")
