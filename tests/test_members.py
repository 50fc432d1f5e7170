from datetime import date

import pytest

from circulation_service.errors import NotFound, StateConflict, ValidationError
from circulation_service.members import MemberStore, member_to_dict

from conftest import day


@pytest.fixture
def members(session, config):
    return MemberStore(session, config)


def test_create_member_defaults(members):
    member = members.create_member({"name": "Grace Hopper", "email": "  Grace@Example.COM "})

    data = member_to_dict(member)
    assert data["email"] == "grace@example.com"
    assert data["status"] == "active"
    assert data["max_books"] == 3
    assert data["member_since"] == date.today().isoformat()


def test_create_member_with_explicit_fields(members):
    member = members.create_member(
        {
            "name": "Alan Turing",
            "email": "alan@example.com",
            "phone": "555-0199",
            "max_books": 10,
            "member_since": "2020-01-15",
        }
    )
    assert member.max_books == 10
    assert member.member_since == date(2020, 1, 15)


@pytest.mark.parametrize(
    "data",
    [
        {"name": "No Email"},
        {"name": "Bad", "email": "not-an-email"},
        {"name": "Bad", "email": "a@b"},
        {"email": "nameless@example.com"},
        {"name": "Greedy", "email": "greedy@example.com", "max_books": 11},
        {"name": "Zero", "email": "zero@example.com", "max_books": 0},
    ],
)
def test_create_member_rejects_bad_input(members, data):
    with pytest.raises(ValidationError):
        members.create_member(data)


def test_email_must_be_unique(members):
    members.create_member({"name": "A", "email": "same@example.com"})
    with pytest.raises(StateConflict):
        members.create_member({"name": "B", "email": "SAME@example.com"})


def test_update_member(members):
    member = members.create_member({"name": "A", "email": "a@example.com"})
    other = members.create_member({"name": "B", "email": "b@example.com"})

    updated = members.update_member(member.id, {"phone": "555-0000", "max_books": 5})
    assert updated.phone == "555-0000"
    assert updated.max_books == 5

    with pytest.raises(StateConflict):
        members.update_member(member.id, {"email": other.email})
    with pytest.raises(ValidationError):
        members.update_member(member.id, {})
    with pytest.raises(ValidationError):
        members.update_member(member.id, {"status": "banned"})


def test_search_members(members):
    members.create_member({"name": "Ada Lovelace", "email": "ada@example.com"})
    bob = members.create_member({"name": "Bob Stone", "email": "bob@example.com"})
    members.set_status(bob.id, "suspended")

    assert [m.name for m in members.search_members(query="love")] == ["Ada Lovelace"]
    assert [m.name for m in members.search_members(query="EXAMPLE")] == ["Ada Lovelace", "Bob Stone"]
    assert [m.name for m in members.search_members(status="suspended")] == ["Bob Stone"]


def test_unknown_member(members):
    with pytest.raises(NotFound):
        members.get_member(42)
    with pytest.raises(NotFound):
        members.is_eligible(42)


def test_eligibility_collects_every_reason(circulation, seed, Session, config):
    _, copy_ids = seed.book(copies=2)
    member_id = seed.member(max_books=1)
    txn = circulation.checkout(member_id, copy_ids[0])
    circulation.checkin(txn["id"], today=day(20))
    session = Session()
    try:
        store = MemberStore(session, config)
        store.set_status(member_id, "expired")
        session.commit()
        result = store.is_eligible(member_id)
    finally:
        session.close()

    assert result == {"eligible": False, "reasons": ["member expired", "has unpaid fine"]}


def test_lost_fee_alone_does_not_block_without_threshold(circulation, seed, Session, config):
    _, copy_ids = seed.book(copies=2)
    member_id = seed.member()
    txn = circulation.checkout(member_id, copy_ids[0])
    circulation.mark_lost(txn["id"])

    session = Session()
    try:
        assert MemberStore(session, config).is_eligible(member_id)["eligible"] is True
    finally:
        session.close()


def test_borrowing_status(circulation, seed, Session, config):
    _, copy_ids = seed.book(copies=2)
    member_id = seed.member(max_books=2)
    circulation.checkout(member_id, copy_ids[0])
    circulation.checkout(member_id, copy_ids[1], today=day(10))

    session = Session()
    try:
        status = MemberStore(session, config).borrowing_status(member_id, day(15))
    finally:
        session.close()

    assert status["member_id"] == member_id
    assert status["current_borrowed_count"] == 2
    assert status["max_books"] == 2
    assert status["overdue_count"] == 1
    assert status["can_borrow"] is False
    assert status["reasons"] == ["at borrowing limit"]
    assert len(status["active_transactions"]) == 2


def test_delete_member_blocked_by_open_loan(circulation, seed, Session, config):
    _, (copy_id,) = seed.book()
    member_id = seed.member()
    txn = circulation.checkout(member_id, copy_id)

    session = Session()
    try:
        with pytest.raises(StateConflict) as exc:
            MemberStore(session, config).delete_member(member_id)
    finally:
        session.close()
    assert exc.value.details["blocking_transaction_ids"] == [txn["id"]]

    circulation.checkin(txn["id"])
    session = Session()
    try:
        MemberStore(session, config).delete_member(member_id)
        session.commit()
    finally:
        session.close()
