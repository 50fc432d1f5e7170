"""Catalog store: books, their physical copies and copy status.

The store works inside a session owned by the caller, so a copy status write
and the borrowing row written next to it commit or roll back together.
"""

import logging
from datetime import datetime

from sqlalchemy import func, select, update

from .errors import NotFound, StateConflict, ValidationError
from .models import (
    COPY_CONDITIONS,
    COPY_STATUSES,
    OPEN_BORROWING_STATUSES,
    Book,
    BookCopy,
    BorrowingTransaction,
)
from .validation import (
    check_publication_year,
    is_valid_isbn,
    normalize_isbn,
    optional_text,
    require_choice,
    require_text,
)

logger = logging.getLogger(__name__)

# (from, to) pairs a copy may move through
COPY_TRANSITIONS = {
    ("available", "borrowed"),
    ("borrowed", "available"),
    ("available", "maintenance"),
    ("maintenance", "available"),
    ("borrowed", "maintenance"),
}

BOOK_FIELDS = ("author", "title", "isbn", "genre", "publication_year", "description")


def book_to_dict(book, with_copies=False):
    copies = book.copies
    data = {
        "id": book.id,
        "author": book.author,
        "title": book.title,
        "isbn": book.isbn,
        "genre": book.genre,
        "publication_year": book.publication_year,
        "description": book.description,
        "total_copies": len(copies),
        "available_copies": sum(1 for c in copies if c.status == "available"),
        "created_at": book.created_at.isoformat() if book.created_at else None,
        "updated_at": book.updated_at.isoformat() if book.updated_at else None,
    }
    if with_copies:
        data["copies"] = [copy_to_dict(c) for c in copies]
    return data


def copy_to_dict(copy):
    return {
        "id": copy.id,
        "book_id": copy.book_id,
        "copy_number": copy.copy_number,
        "status": copy.status,
        "condition": copy.condition,
        "created_at": copy.created_at.isoformat() if copy.created_at else None,
        "updated_at": copy.updated_at.isoformat() if copy.updated_at else None,
    }


def _clean_book_data(data, partial):
    cleaned = {}
    for field in ("author", "title"):
        if not partial or field in data:
            cleaned[field] = require_text(data, field)
    if "isbn" in data:
        isbn = data.get("isbn")
        if isbn:
            if not is_valid_isbn(isbn):
                raise ValidationError(
                    "invalid ISBN format. Must be a valid 10 or 13 digit ISBN"
                )
            isbn = normalize_isbn(isbn).upper()
        cleaned["isbn"] = isbn or None
    if "genre" in data:
        cleaned["genre"] = optional_text(data, "genre", 100)
    if "description" in data:
        cleaned["description"] = optional_text(data, "description", 2000)
    if "publication_year" in data:
        cleaned["publication_year"] = check_publication_year(data.get("publication_year"))
    return cleaned


class CatalogStore:
    def __init__(self, session):
        self.session = session

    # ----------------- books -----------------

    def get_book(self, book_id):
        book = self.session.get(Book, book_id)
        if book is None:
            raise NotFound("book not found", book_id=book_id)
        return book

    def _ensure_isbn_free(self, isbn, exclude_id=None):
        if not isbn:
            return
        q = select(Book.id).where(Book.isbn == isbn)
        if exclude_id is not None:
            q = q.where(Book.id != exclude_id)
        if self.session.execute(q).first():
            raise StateConflict("ISBN already exists", isbn=isbn)

    def create_book(self, data):
        cleaned = _clean_book_data(data, partial=False)
        self._ensure_isbn_free(cleaned.get("isbn"))
        book = Book(**cleaned)
        self.session.add(book)
        self.session.flush()
        logger.info("Created book %s (%s)", book.id, book.title)
        return book

    def update_book(self, book_id, data):
        book = self.get_book(book_id)
        cleaned = _clean_book_data(data, partial=True)
        if not cleaned:
            raise ValidationError("no fields to update")
        self._ensure_isbn_free(cleaned.get("isbn"), exclude_id=book_id)
        for field, value in cleaned.items():
            setattr(book, field, value)
        self.session.flush()
        return book

    def delete_book(self, book_id):
        book = self.get_book(book_id)
        blocking = self.session.execute(
            select(BorrowingTransaction.id)
            .join(BookCopy, BorrowingTransaction.book_copy_id == BookCopy.id)
            .where(
                BookCopy.book_id == book_id,
                BorrowingTransaction.status.in_(OPEN_BORROWING_STATUSES),
            )
            .order_by(BorrowingTransaction.id)
        ).scalars().all()
        if blocking:
            raise StateConflict(
                "book has borrowed copies",
                book_id=book_id,
                blocking_transaction_ids=list(blocking),
            )
        self.session.delete(book)
        self.session.flush()
        logger.info("Deleted book %s", book_id)

    def search_books(
        self,
        title=None,
        author=None,
        genre=None,
        isbn=None,
        available_only=False,
        limit=50,
        offset=0,
    ):
        q = select(Book)
        if title:
            q = q.where(Book.title.ilike(f"%{title}%"))
        if author:
            q = q.where(Book.author.ilike(f"%{author}%"))
        if genre:
            q = q.where(Book.genre.ilike(genre))
        if isbn:
            q = q.where(Book.isbn == normalize_isbn(isbn).upper())
        if available_only:
            q = q.where(
                Book.copies.any(BookCopy.status == "available")
            )
        q = q.order_by(Book.title, Book.id).limit(limit).offset(offset)
        return self.session.execute(q).scalars().all()

    # ----------------- copies -----------------

    def get_copy(self, copy_id, for_update=False):
        q = select(BookCopy).where(BookCopy.id == copy_id)
        if for_update:
            q = q.with_for_update()
        copy = self.session.execute(q).scalar_one_or_none()
        if copy is None:
            raise NotFound("book copy not found", copy_id=copy_id)
        return copy

    def next_copy_number(self, book_id):
        self.get_book(book_id)
        current = self.session.execute(
            select(func.max(BookCopy.copy_number)).where(BookCopy.book_id == book_id)
        ).scalar()
        return (current or 0) + 1

    def add_copy(self, book_id, condition="good"):
        require_choice(condition, COPY_CONDITIONS, "condition")
        copy = BookCopy(
            book_id=book_id,
            copy_number=self.next_copy_number(book_id),
            status="available",
            condition=condition,
        )
        self.session.add(copy)
        self.session.flush()
        logger.info("Added copy #%s to book %s", copy.copy_number, book_id)
        return copy

    def list_copies(self, book_id):
        self.get_book(book_id)
        return self.session.execute(
            select(BookCopy)
            .where(BookCopy.book_id == book_id)
            .order_by(BookCopy.copy_number)
        ).scalars().all()

    def list_available_copies(self, book_id):
        self.get_book(book_id)
        return self.session.execute(
            select(BookCopy)
            .where(BookCopy.book_id == book_id, BookCopy.status == "available")
            .order_by(BookCopy.copy_number)
        ).scalars().all()

    def set_copy_status(self, copy_id, status):
        """Move a copy to ``status`` with a compare-and-set on its current status.

        Raises StateConflict when the pair is not an allowed transition or
        when the row changed underneath us since it was read.
        """
        require_choice(status, COPY_STATUSES, "status")
        copy = self.get_copy(copy_id, for_update=True)
        current = copy.status
        if (current, status) not in COPY_TRANSITIONS:
            raise StateConflict(
                f"invalid copy status transition: {current} -> {status}",
                copy_id=copy_id,
            )

        result = self.session.execute(
            update(BookCopy)
            .where(BookCopy.id == copy_id, BookCopy.status == current)
            .values(status=status, updated_at=datetime.utcnow())
        )
        if result.rowcount != 1:
            raise StateConflict("copy status changed concurrently", copy_id=copy_id)
        return copy

    def change_copy_status(self, copy_id, status):
        """Administrative status change (shelving / maintenance only)."""
        require_choice(status, COPY_STATUSES, "status")
        copy = self.get_copy(copy_id)
        if copy.status == "borrowed" or status == "borrowed":
            raise StateConflict(
                "borrowed status is managed by checkout and checkin",
                copy_id=copy_id,
            )
        return self.set_copy_status(copy_id, status)

    def update_copy_condition(self, copy_id, condition):
        require_choice(condition, COPY_CONDITIONS, "condition")
        copy = self.get_copy(copy_id)
        copy.condition = condition
        self.session.flush()
        return copy

    def remove_copy(self, copy_id):
        copy = self.get_copy(copy_id, for_update=True)
        if copy.status == "borrowed":
            raise StateConflict("cannot remove borrowed book copy", copy_id=copy_id)
        self.session.delete(copy)
        self.session.flush()
        logger.info("Removed copy %s", copy_id)

    # ----------------- availability -----------------

    def _status_counts(self, book_id=None):
        q = select(BookCopy.book_id, BookCopy.status, func.count(BookCopy.id)).group_by(
            BookCopy.book_id, BookCopy.status
        )
        if book_id is not None:
            q = q.where(BookCopy.book_id == book_id)
        counts = {}
        for bid, status, n in self.session.execute(q):
            counts.setdefault(bid, {})[status] = n
        return counts

    @staticmethod
    def _availability_row(book_id, counts):
        available = counts.get("available", 0)
        borrowed = counts.get("borrowed", 0)
        maintenance = counts.get("maintenance", 0)
        return {
            "book_id": book_id,
            "total_copies": available + borrowed + maintenance,
            "available_copies": available,
            "borrowed_copies": borrowed,
            "maintenance_copies": maintenance,
        }

    def book_availability(self, book_id):
        self.get_book(book_id)
        counts = self._status_counts(book_id).get(book_id, {})
        return self._availability_row(book_id, counts)

    def inventory(self):
        counts = self._status_counts()
        book_ids = self.session.execute(select(Book.id).order_by(Book.id)).scalars().all()
        rows = [self._availability_row(bid, counts.get(bid, {})) for bid in book_ids]
        summary = {
            "total_books": len(rows),
            "total_copies": sum(r["total_copies"] for r in rows),
            "available_copies": sum(r["available_copies"] for r in rows),
            "borrowed_copies": sum(r["borrowed_copies"] for r in rows),
            "maintenance_copies": sum(r["maintenance_copies"] for r in rows),
        }
        return {"inventory": rows, "summary": summary}
