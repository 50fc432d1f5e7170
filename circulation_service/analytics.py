"""Read-side aggregates over borrowing history.

Nothing here writes; each call opens a session, reads what has been committed
and closes it.
"""

import calendar
import logging
from datetime import date, timedelta

from sqlalchemy import case, func, select

from .catalog import CatalogStore
from .errors import ValidationError
from .fines import FineLedger
from .members import MemberStore
from .models import (
    MEMBER_STATUSES,
    OPEN_BORROWING_STATUSES,
    Book,
    BookCopy,
    BorrowingTransaction,
    Fine,
    Member,
)
from .transactions import count_by_status, open_transactions, transaction_to_dict
from .validation import parse_date

logger = logging.getLogger(__name__)

TIMEFRAMES = ("last-week", "last-month", "last-year", "all-time")


def _months_back(day, months):
    month_index = day.year * 12 + day.month - 1 - months
    year, month = divmod(month_index, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def window_start(timeframe, today):
    """First borrowed_date counted for ``timeframe``; None means no lower bound."""
    if timeframe == "last-week":
        return today - timedelta(days=7)
    if timeframe == "last-month":
        return _months_back(today, 1)
    if timeframe == "last-year":
        return _months_back(today, 12)
    if timeframe == "all-time":
        return None
    raise ValidationError(
        f"invalid timeframe. Must be one of: {', '.join(TIMEFRAMES)}",
        timeframe=timeframe,
    )


def _is_late(txn, today):
    return txn.status == "overdue" or (txn.status == "active" and txn.due_date < today)


class AnalyticsEngine:
    def __init__(self, session_factory, config, clock=date.today):
        self.Session = session_factory
        self.config = config
        self.clock = clock

    def _today(self, today):
        today = parse_date(today, "today")
        return today if today is not None else self.clock()

    # ----------------- popularity -----------------

    def _popular_rows(self, session, start, today, genre, min_borrows, limit):
        total = func.count(BorrowingTransaction.id)
        borrowers = func.count(func.distinct(BorrowingTransaction.member_id))
        current = func.sum(
            case((BorrowingTransaction.status.in_(OPEN_BORROWING_STATUSES), 1), else_=0)
        )
        q = (
            select(Book, total, borrowers, current)
            .join(BookCopy, BookCopy.book_id == Book.id)
            .join(BorrowingTransaction, BorrowingTransaction.book_copy_id == BookCopy.id)
            .where(BorrowingTransaction.borrowed_date <= today)
            .group_by(Book.id)
            .having(total >= min_borrows)
            .order_by(total.desc(), borrowers.desc(), Book.title.asc(), Book.id.asc())
        )
        if start is not None:
            q = q.where(BorrowingTransaction.borrowed_date >= start)
        if genre:
            q = q.where(Book.genre.ilike(genre))
        if limit is not None:
            q = q.limit(limit)
        return session.execute(q).all()

    def popular_books(self, timeframe="all-time", limit=20, genre=None, min_borrows=1, today=None):
        """Books ranked by borrow count in the window.

        Ties break on distinct borrowers (more first), then title A-Z.
        """
        today = self._today(today)
        start = window_start(timeframe, today)
        if limit is not None and limit < 1:
            raise ValidationError("limit must be at least 1")

        session = self.Session()
        try:
            rows = self._popular_rows(session, start, today, genre, min_borrows, limit)
            book_ids = [book.id for book, *_ in rows]
            copy_counts = dict(
                session.execute(
                    select(BookCopy.book_id, func.count(BookCopy.id))
                    .where(BookCopy.book_id.in_(book_ids))
                    .group_by(BookCopy.book_id)
                ).all()
            ) if book_ids else {}

            books = []
            for book, total, borrowers, current in rows:
                copies = copy_counts.get(book.id, 0)
                books.append(
                    {
                        "book_id": book.id,
                        "title": book.title,
                        "author": book.author,
                        "isbn": book.isbn,
                        "genre": book.genre,
                        "publication_year": book.publication_year,
                        "total_borrows": int(total),
                        "distinct_borrowers": int(borrowers),
                        "current_borrows": int(current or 0),
                        "total_copies": copies,
                        "popularity_score": round(total / copies, 2) if copies else 0.0,
                    }
                )
            return {
                "books": books,
                "total": len(books),
                "period": timeframe,
                "generated_at": today.isoformat(),
            }
        finally:
            session.close()

    def popular_books_with_stats(self, timeframe="all-time", limit=20, genre=None, min_borrows=1, today=None):
        today = self._today(today)
        response = self.popular_books(timeframe, limit, genre, min_borrows, today)
        start = window_start(timeframe, today)

        session = self.Session()
        try:
            in_window = [BorrowingTransaction.borrowed_date <= today]
            if start is not None:
                in_window.append(BorrowingTransaction.borrowed_date >= start)

            total_borrowings, unique_borrowers = session.execute(
                select(
                    func.count(BorrowingTransaction.id),
                    func.count(func.distinct(BorrowingTransaction.member_id)),
                ).where(*in_window)
            ).one()
            per_book = dict(
                session.execute(
                    select(BookCopy.book_id, func.count(BorrowingTransaction.id))
                    .join(BorrowingTransaction, BorrowingTransaction.book_copy_id == BookCopy.id)
                    .where(*in_window)
                    .group_by(BookCopy.book_id)
                ).all()
            )
            total_books = session.execute(select(func.count(Book.id))).scalar()
        finally:
            session.close()

        response["statistics"] = {
            "total_unique_books": total_books,
            "total_borrowings": total_borrowings,
            "unique_borrowers": unique_borrowers,
            "avg_borrows_per_book": round(total_borrowings / total_books, 2) if total_books else 0.0,
            "max_borrows_single_book": max(per_book.values(), default=0),
        }
        return response

    # ----------------- members -----------------

    def member_activity(self, member_id, today=None):
        today = self._today(today)
        session = self.Session()
        try:
            member = MemberStore(session, self.config).get_member(member_id)
            counts = count_by_status(session, member_id=member_id)
            current = open_transactions(session, member_id=member_id)
            return {
                "member_id": member.id,
                "name": member.name,
                "total_borrows": sum(counts.values()),
                "current_borrows": counts["active"] + counts["overdue"],
                "overdue_count": sum(1 for t in current if _is_late(t, today)),
                "returned_count": counts["returned"],
                "lost_count": counts["lost"],
                "unpaid_fines": float(FineLedger(session, self.config).unpaid_total(member_id)),
            }
        finally:
            session.close()

    # ----------------- library-wide -----------------

    def library_stats(self, today=None):
        today = self._today(today)
        session = self.Session()
        try:
            copies = CatalogStore(session).inventory()["summary"]
            members = dict.fromkeys(MEMBER_STATUSES, 0)
            members.update(
                dict(
                    session.execute(
                        select(Member.status, func.count(Member.id)).group_by(Member.status)
                    ).all()
                )
            )
            counts = count_by_status(session)
            current = open_transactions(session)
            unpaid = session.execute(
                select(func.coalesce(func.sum(Fine.amount), 0)).where(Fine.status == "unpaid")
            ).scalar()
            return {
                "total_books": copies["total_books"],
                "total_copies": copies["total_copies"],
                "available_copies": copies["available_copies"],
                "borrowed_copies": copies["borrowed_copies"],
                "maintenance_copies": copies["maintenance_copies"],
                "total_members": sum(members.values()),
                "active_members": members["active"],
                "suspended_members": members["suspended"],
                "expired_members": members["expired"],
                "total_transactions": sum(counts.values()),
                "active_borrows": len(current),
                "overdue_borrows": sum(1 for t in current if _is_late(t, today)),
                "unpaid_fines_total": round(float(unpaid or 0), 2),
            }
        finally:
            session.close()

    def dashboard(self, today=None, recent_limit=10):
        today = self._today(today)
        if recent_limit < 0:
            raise ValidationError("recent_limit must be at least 0")
        summary = self.library_stats(today)

        session = self.Session()
        try:
            recent = session.execute(
                select(BorrowingTransaction)
                .order_by(
                    BorrowingTransaction.updated_at.desc(),
                    BorrowingTransaction.id.desc(),
                )
                .limit(recent_limit)
            ).scalars().all()
            recent_activity = [
                transaction_to_dict(t, today, self.config.MAX_RENEWALS) for t in recent
            ]

            alerts = []
            late = [t for t in open_transactions(session) if _is_late(t, today)]
            late.sort(key=lambda t: (t.due_date, t.id))
            for t in late:
                days = (today - t.due_date).days
                alerts.append(
                    {
                        "type": "overdue",
                        "transaction_id": t.id,
                        "member_id": t.member_id,
                        "member_name": t.member.name,
                        "book_title": t.copy.book.title,
                        "days_overdue": days,
                        "message": f"'{t.copy.book.title}' is {days} day(s) overdue ({t.member.name})",
                    }
                )

            inventory = CatalogStore(session).inventory()["inventory"]
            titles = dict(session.execute(select(Book.id, Book.title)).all())
            for row in inventory:
                if row["total_copies"] and not row["available_copies"]:
                    alerts.append(
                        {
                            "type": "no_available_copies",
                            "book_id": row["book_id"],
                            "title": titles.get(row["book_id"]),
                            "message": f"No copies of '{titles.get(row['book_id'])}' are available",
                        }
                    )
        finally:
            session.close()

        logger.debug("Dashboard built for %s with %s alert(s)", today, len(alerts))
        return {"summary": summary, "recent_activity": recent_activity, "alerts": alerts}
