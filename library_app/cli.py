import logging
import os
import subprocess
import sys
import webbrowser
from typing import Optional

import typer
from rich.console import Console

from library_app.book import Book
from library_app.catalog import Catalog
from library_app.config import settings
from library_app.database import cleanup_orphaned_checkouts
from library_app.errors import LedgerError
from library_app.ledger import LoanLedger
from library_app.students import StudentRegistry
from library_app.ui_helpers import (
    print_books_result,
    print_checkouts_result,
    print_stats_result,
    print_students_result,
    set_output_mode,
)

APP_NAME = "Library Loans CLI"

console = Console()


class LoanDesk:
    """Per-process holder for the catalog, registry and ledger of one database."""
    _db_file: Optional[str] = None
    _catalog: Optional[Catalog] = None
    _registry: Optional[StudentRegistry] = None
    _ledger: Optional[LoanLedger] = None

    @classmethod
    def use(cls, db_file: Optional[str]) -> None:
        # Switching database files (e.g. one per test) drops the old instances
        if db_file != cls._db_file or cls._catalog is None:
            cls._db_file = db_file
            cls._catalog = Catalog(db_file=db_file)
            cls._registry = StudentRegistry(db_file=db_file, initialize=False)
            cls._ledger = LoanLedger(db_file=db_file)

    @classmethod
    def catalog(cls) -> Catalog:
        cls.use(cls._db_file)
        return cls._catalog

    @classmethod
    def registry(cls) -> StudentRegistry:
        cls.use(cls._db_file)
        return cls._registry

    @classmethod
    def ledger(cls) -> LoanLedger:
        cls.use(cls._db_file)
        return cls._ledger


def _fail(message: str) -> None:
    print(f"Error: {message}")
    raise typer.Exit(code=1)


# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(
        None,
        "--db",
        envvar="LIBRARY_DB_FILE",
        help="SQLite database file",
    ),
):
    """Global options for the CLI (output mode, database file)."""
    logging.basicConfig(level=settings.log_level)
    if output:
        set_output_mode(output)
    LoanDesk.use(db or settings.db_file)


# --- Loans ---
@app.command("checkout")
def cli_checkout(book_id: int, registration_number: str):
    """Check a book out to a student."""
    try:
        result = LoanDesk.ledger().checkout(book_id, registration_number)
    except LedgerError as e:
        _fail(e.message)
    print(result.message)
    print(f"{result.book.title} -> {result.student.name} ({result.student.registration_number})")
    print(f"Available copies: {result.book.available_copies}/{result.book.total_copies}")


@app.command("return")
def cli_return(book_id: int, registration_number: str):
    """Take a book back from a student."""
    try:
        result = LoanDesk.ledger().return_book(book_id, registration_number)
    except LedgerError as e:
        _fail(e.message)
    print(result.message)
    print(f"{result.book.title} <- {result.student.name} ({result.student.registration_number})")
    print(f"Available copies: {result.book.available_copies}/{result.book.total_copies}")


@app.command("my-books")
def cli_my_books(registration_number: str):
    """List the books a student currently holds."""
    try:
        checkouts = LoanDesk.ledger().student_active_checkouts(registration_number)
    except LedgerError as e:
        _fail(e.message)
    print_checkouts_result(checkouts, empty_message="No borrowed books.")


@app.command("book-checkouts")
def cli_book_checkouts(book_id: int):
    """List who currently holds copies of a book."""
    print_checkouts_result(LoanDesk.ledger().book_active_checkouts(book_id))


@app.command("history")
def cli_history(book_id: int):
    """Show every checkout of a book, returned or not."""
    print_checkouts_result(LoanDesk.ledger().book_history(book_id))


@app.command("pending")
def cli_pending():
    """Show all outstanding loans."""
    pending_count, checkouts = LoanDesk.ledger().active_checkouts()
    print(f"Pending returns: {pending_count}")
    print_checkouts_result(checkouts, empty_message="No active checkouts.")


# --- Catalog ---
@app.command("list")
def cli_list():
    """List all books."""
    print_books_result(LoanDesk.catalog().list_books())


@app.command("add-book")
def cli_add_book(
    title: str = typer.Option(..., "--title", "-t"),
    author: str = typer.Option(..., "--author", "-a"),
    isbn: Optional[str] = typer.Option(None, "--isbn"),
    copies: int = typer.Option(1, "--copies", "-c", min=0),
    location: Optional[str] = typer.Option(None, "--location"),
):
    """Add a book to the catalog."""
    try:
        book = LoanDesk.catalog().add_book(
            Book(title=title, author=author, isbn=isbn, total_copies=copies, location=location)
        )
    except ValueError as e:
        _fail(str(e))
    print(f"Successfully added: {book.title} by {book.author} (id {book.id}, {book.total_copies} copies)")


@app.command("stats")
def cli_stats():
    """Show copy and loan totals."""
    print_stats_result(LoanDesk.catalog().get_statistics())


# --- Students ---
@app.command("add-student")
def cli_add_student(
    name: str,
    registration_number: str,
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True),
    faculty: Optional[str] = typer.Option(None, "--faculty"),
):
    """Register a student."""
    try:
        student = LoanDesk.registry().register_student(name, registration_number, password, faculty=faculty)
    except ValueError as e:
        _fail(str(e))
    print(f"Registered student {student.registration_number}: {student.name}")


@app.command("students")
def cli_students():
    """List registered students."""
    print_students_result(LoanDesk.registry().list_students())


# --- Maintenance ---
@app.command("cleanup")
def cli_cleanup():
    """Delete checkout rows whose student or book no longer exists."""
    removed = cleanup_orphaned_checkouts(LoanDesk.catalog().db_file)
    print(f"Removed {removed} orphaned checkout record(s).")


@app.command("serve")
def cli_serve(open_browser: bool = typer.Option(True, "--open/--no-open", help="Open the API docs in a browser")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on http://{host}:{port}/")
    if open_browser:
        try:
            webbrowser.open(url)
        except webbrowser.Error:
            console.print(f"[yellow]Could not open a browser; docs are at {url}[/]")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "library_app.api:create_app",
        "--factory",
        "--host", host,
        "--port", str(port),
    ]
    if settings.debug:
        args.append("--reload")
    env = dict(os.environ)
    if LoanDesk._db_file:
        env["LIBRARY_DB_FILE"] = LoanDesk._db_file
    subprocess.run(args, env=env)


if __name__ == "__main__":
    app()
