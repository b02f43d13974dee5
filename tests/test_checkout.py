import pytest

from library_app.checkout import AlreadyReturned, Checkout, LoanStatus
from library_app.users import Student


def test_new_checkout_is_active():
    checkout = Checkout(id=1, user_id=2, book_id=3, checked_out_at="2024-01-01T10:00:00+00:00")
    assert checkout.status is LoanStatus.ACTIVE
    assert checkout.is_active


def test_mark_returned_moves_to_returned_once():
    checkout = Checkout(id=1, user_id=2, book_id=3, checked_out_at="2024-01-01T10:00:00+00:00")
    checkout.mark_returned("2024-01-02T10:00:00+00:00")
    assert checkout.status is LoanStatus.RETURNED
    assert not checkout.is_active

    with pytest.raises(AlreadyReturned):
        checkout.mark_returned("2024-01-03T10:00:00+00:00")
    assert checkout.returned_at == "2024-01-02T10:00:00+00:00"


def test_to_dict_includes_status_and_student():
    checkout = Checkout(
        id=1, user_id=2, book_id=3, checked_out_at="2024-01-01T10:00:00+00:00",
        student=Student(id=2, name="Ada", registration_number="S1"), book_title="Dune",
    )
    data = checkout.to_dict()
    assert data["status"] == "active"
    assert data["student"] == {"id": 2, "name": "Ada", "registration_number": "S1"}
    assert data["book_title"] == "Dune"


def test_from_row_without_join_columns():
    row = {"id": 5, "user_id": 1, "book_id": 1, "checked_out_at": "t0", "returned_at": "t1"}
    checkout = Checkout.from_row(row)
    assert checkout.student is None
    assert checkout.status is LoanStatus.RETURNED
