from datetime import date, datetime

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    CheckConstraint,
    Column,
    Integer,
    String,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    Text,
    UniqueConstraint,
    text,
)

Base = declarative_base()

COPY_STATUSES = ("available", "borrowed", "maintenance")
COPY_CONDITIONS = ("excellent", "good", "fair", "poor")
MEMBER_STATUSES = ("active", "suspended", "expired")
BORROWING_STATUSES = ("active", "returned", "overdue", "lost")
OPEN_BORROWING_STATUSES = ("active", "overdue")
FINE_TYPES = ("overdue", "lost", "damage", "late_return")
FINE_STATUSES = ("unpaid", "paid", "waived", "disputed")


class TimestampMixin:
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )


class Book(TimestampMixin, Base):
    __tablename__ = "books"

    id = Column(Integer, primary_key=True, autoincrement=True)
    author = Column(String(255), nullable=False)
    title = Column(String(255), nullable=False)
    isbn = Column(String(20), unique=True)
    genre = Column(String(100))
    publication_year = Column(Integer)
    description = Column(Text)

    copies = relationship(
        "BookCopy",
        back_populates="book",
        cascade="all, delete-orphan",
        order_by="BookCopy.copy_number",
    )


class BookCopy(TimestampMixin, Base):
    __tablename__ = "book_copies"
    __table_args__ = (UniqueConstraint("book_id", "copy_number"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    copy_number = Column(Integer, nullable=False)
    status = Column(
        Enum(*COPY_STATUSES, name="copy_status"),
        nullable=False,
        default="available",
        index=True,
    )
    condition = Column(
        Enum(*COPY_CONDITIONS, name="copy_condition"),
        nullable=False,
        default="good",
    )

    book = relationship("Book", back_populates="copies")
    transactions = relationship(
        "BorrowingTransaction",
        back_populates="copy",
        cascade="all, delete-orphan",
    )


class Member(TimestampMixin, Base):
    __tablename__ = "members"
    __table_args__ = (CheckConstraint("max_books >= 1 AND max_books <= 10"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    phone = Column(String(50))
    address = Column(Text)
    status = Column(
        Enum(*MEMBER_STATUSES, name="member_status"),
        nullable=False,
        default="active",
    )
    max_books = Column(Integer, nullable=False, default=3)
    member_since = Column(Date, nullable=False, default=date.today)

    transactions = relationship(
        "BorrowingTransaction",
        back_populates="member",
        cascade="all, delete-orphan",
    )
    fines = relationship("Fine", back_populates="member", cascade="all, delete-orphan")


class BorrowingTransaction(TimestampMixin, Base):
    __tablename__ = "borrowing_transactions"
    __table_args__ = (
        CheckConstraint("borrowed_date <= due_date"),
        CheckConstraint("returned_date IS NULL OR returned_date >= borrowed_date"),
        CheckConstraint("renewal_count >= 0 AND renewal_count <= 3"),
        # a copy can only be out on one open loan at a time
        Index(
            "uq_open_borrowing_per_copy",
            "book_copy_id",
            unique=True,
            sqlite_where=text("status IN ('active', 'overdue')"),
            postgresql_where=text("status IN ('active', 'overdue')"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    book_copy_id = Column(Integer, ForeignKey("book_copies.id"), nullable=False)
    borrowed_date = Column(Date, nullable=False, index=True)
    due_date = Column(Date, nullable=False, index=True)
    returned_date = Column(Date)
    renewal_count = Column(Integer, nullable=False, default=0)
    status = Column(
        Enum(*BORROWING_STATUSES, name="borrowing_status"),
        nullable=False,
        default="active",
        index=True,
    )
    notes = Column(Text)

    member = relationship("Member", back_populates="transactions")
    copy = relationship("BookCopy", back_populates="transactions")
    fines = relationship(
        "Fine",
        back_populates="borrowing",
        cascade="all, delete-orphan",
    )


class Fine(TimestampMixin, Base):
    __tablename__ = "fines"
    __table_args__ = (
        CheckConstraint("amount >= 0"),
        CheckConstraint("paid_date IS NULL OR paid_date >= assessed_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    borrowing_id = Column(
        Integer, ForeignKey("borrowing_transactions.id"), nullable=False, index=True
    )
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    fine_type = Column(Enum(*FINE_TYPES, name="fine_type"), nullable=False)
    amount = Column(Numeric(8, 2), nullable=False)
    assessed_date = Column(Date, nullable=False)
    paid_date = Column(Date)
    status = Column(
        Enum(*FINE_STATUSES, name="fine_status"),
        nullable=False,
        default="unpaid",
        index=True,
    )
    description = Column(Text)

    borrowing = relationship("BorrowingTransaction", back_populates="fines")
    member = relationship("Member", back_populates="fines")
