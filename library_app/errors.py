"""Errors raised by the loan ledger.

Every domain error carries a stable ``code`` and a human readable
``message`` that the API and CLI show to librarians verbatim.
"""


class LedgerError(Exception):
    """Base class for checkout/return failures."""

    code = "ledger_error"
    message = "Loan operation failed"

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class BookNotFound(LedgerError):
    code = "book_not_found"
    message = "Book not found"


class StudentNotFound(LedgerError):
    code = "student_not_found"
    message = "Student not found with this registration number"


class LimitExceeded(LedgerError):
    """The student already holds the maximum number of active loans."""

    code = "limit_exceeded"

    def __init__(self, limit: int = 3) -> None:
        self.limit = limit
        super().__init__(f"The student has borrowed {limit} books!")


class BookUnavailable(LedgerError):
    code = "book_unavailable"
    message = "Book is not available"


class NoActiveCheckout(LedgerError):
    code = "no_active_checkout"
    message = "No active checkout found for this student and book"


class StoreFailure(LedgerError):
    """The database failed while a ledger transaction was running."""

    code = "store_failure"
    message = "Server Error"
