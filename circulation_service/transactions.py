"""Read helpers for borrowing transactions shared across the stores."""

from sqlalchemy import func, select

from .models import OPEN_BORROWING_STATUSES, BorrowingTransaction

# hard cap mirrored by the borrowing_transactions check constraint
RENEWAL_CAP = 3


def days_borrowed(txn, today):
    end = txn.returned_date or today
    return max(0, (end - txn.borrowed_date).days)


def overdue_days(txn, today):
    if txn.status in ("returned", "lost"):
        end = txn.returned_date
        if end is None:
            return 0
    else:
        end = today
    return max(0, (end - txn.due_date).days)


def transaction_to_dict(txn, today, max_renewals=3):
    """Serialize a transaction with the member/book display fields callers show."""
    max_renewals = min(max_renewals, RENEWAL_CAP)
    copy = txn.copy
    book = copy.book
    member = txn.member
    late_days = overdue_days(txn, today)
    is_open = txn.status in OPEN_BORROWING_STATUSES
    return {
        "id": txn.id,
        "member_id": txn.member_id,
        "book_copy_id": txn.book_copy_id,
        "book_id": copy.book_id,
        "borrowed_date": txn.borrowed_date.isoformat(),
        "due_date": txn.due_date.isoformat(),
        "returned_date": txn.returned_date.isoformat() if txn.returned_date else None,
        "renewal_count": txn.renewal_count,
        "status": txn.status,
        "notes": txn.notes,
        "member_name": member.name,
        "member_email": member.email,
        "book_title": book.title,
        "book_author": book.author,
        "book_isbn": book.isbn,
        "copy_number": copy.copy_number,
        "days_borrowed": days_borrowed(txn, today),
        "overdue_days": late_days,
        "is_overdue": is_open and late_days > 0,
        "can_renew": is_open and txn.renewal_count < max_renewals,
    }


def open_transactions(session, member_id=None, copy_id=None):
    q = select(BorrowingTransaction).where(
        BorrowingTransaction.status.in_(OPEN_BORROWING_STATUSES)
    )
    if member_id is not None:
        q = q.where(BorrowingTransaction.member_id == member_id)
    if copy_id is not None:
        q = q.where(BorrowingTransaction.book_copy_id == copy_id)
    q = q.order_by(BorrowingTransaction.borrowed_date.desc(), BorrowingTransaction.id.desc())
    return session.execute(q).scalars().all()


def count_by_status(session, member_id=None):
    q = select(BorrowingTransaction.status, func.count(BorrowingTransaction.id)).group_by(
        BorrowingTransaction.status
    )
    if member_id is not None:
        q = q.where(BorrowingTransaction.member_id == member_id)
    counts = dict.fromkeys(("active", "returned", "overdue", "lost"), 0)
    counts.update(dict(session.execute(q).all()))
    return counts
