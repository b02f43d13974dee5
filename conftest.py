import pytest

from library_app.book import Book
from library_app.catalog import Catalog
from library_app.config import settings
from library_app.database import initialize_database
from library_app.ledger import LoanLedger
from library_app.students import StudentRegistry


@pytest.fixture(autouse=True)
def fast_password_hashing(monkeypatch):
    monkeypatch.setattr(settings, "bcrypt_rounds", 4)


@pytest.fixture
def db_file(tmp_path):
    # A fresh database file for every test
    path = str(tmp_path / "library_test.db")
    initialize_database(path, cleanup=False)
    return path


@pytest.fixture
def catalog(db_file):
    return Catalog(db_file=db_file, initialize=False)


@pytest.fixture
def registry(db_file):
    return StudentRegistry(db_file=db_file, initialize=False)


@pytest.fixture
def ledger(db_file):
    return LoanLedger(db_file=db_file, max_active_loans=3)


@pytest.fixture
def make_book(catalog):
    def _make(title="Python Crash Course", author="Eric Matthes", copies=1, **kwargs):
        return catalog.add_book(Book(title=title, author=author, total_copies=copies, **kwargs))
    return _make


@pytest.fixture
def make_student(registry):
    def _make(registration_number="S1", name=None):
        return registry.register_student(name or f"Student {registration_number}", registration_number, "secret123")
    return _make
