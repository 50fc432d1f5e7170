from decimal import Decimal

import pytest

from circulation_service.errors import NotFound, StateConflict, ValidationError
from circulation_service.fines import late_fee

from conftest import day


def test_late_fee():
    assert late_fee(0, Decimal("0.50")) == Decimal("0.00")
    assert late_fee(-3, Decimal("0.50")) == Decimal("0.00")
    assert late_fee(6, Decimal("0.50")) == Decimal("3.00")
    assert late_fee(7, "0.25") == Decimal("1.75")


def test_late_fee_never_decreases_with_lateness():
    fees = [late_fee(days, Decimal("0.50")) for days in range(60)]
    assert fees == sorted(fees)


@pytest.fixture
def late_fine(circulation, seed):
    _, (copy_id,) = seed.book()
    member_id = seed.member()
    txn = circulation.checkout(member_id, copy_id)
    result = circulation.checkin(txn["id"], today=day(18))
    return member_id, result["fine"]


def test_member_fines_reports_unpaid_total(circulation, late_fine):
    member_id, fine = late_fine

    report = circulation.member_fines(member_id)

    assert [f["id"] for f in report["fines"]] == [fine["id"]]
    assert report["unpaid_total"] == 2.0
    assert circulation.member_fines(member_id, status="paid")["fines"] == []


def test_pay_fine(circulation, late_fine):
    member_id, fine = late_fine

    paid = circulation.pay_fine(fine["id"], paid_date=day(19))

    assert paid["status"] == "paid"
    assert paid["paid_date"] == day(19).isoformat()
    assert circulation.member_fines(member_id)["unpaid_total"] == 0.0
    with pytest.raises(StateConflict):
        circulation.pay_fine(fine["id"], paid_date=day(20))


def test_payment_cannot_predate_assessment(circulation, late_fine):
    _, fine = late_fine
    with pytest.raises(ValidationError):
        circulation.pay_fine(fine["id"], paid_date=day(17))


def test_dispute_then_waive(circulation, late_fine):
    member_id, fine = late_fine

    assert circulation.dispute_fine(fine["id"])["status"] == "disputed"
    with pytest.raises(StateConflict):
        circulation.dispute_fine(fine["id"])
    assert circulation.member_fines(member_id)["unpaid_total"] == 0.0

    assert circulation.waive_fine(fine["id"])["status"] == "waived"
    with pytest.raises(StateConflict):
        circulation.waive_fine(fine["id"])
    with pytest.raises(StateConflict):
        circulation.pay_fine(fine["id"], today=day(30))


def test_unknown_fine(circulation):
    with pytest.raises(NotFound):
        circulation.waive_fine(404)


def test_fines_listed_on_transaction(circulation, seed):
    _, (copy_id,) = seed.book()
    txn = circulation.checkout(seed.member(), copy_id)
    circulation.mark_lost(txn["id"], today=day(30))

    detail = circulation.get_transaction(txn["id"])

    assert [(f["fine_type"], f["amount"]) for f in detail["fines"]] == [("lost", 25.0)]
