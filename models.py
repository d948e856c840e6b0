from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    and_,
    text,
)
from sqlalchemy.orm import relationship

import clock
from database import Base


class StaffRole(str, Enum):
    ADMIN = "admin"
    LIBRARIAN = "librarian"


class BorrowerType(str, Enum):
    STUDENT = "student"
    FACULTY = "faculty"


class AssignmentStatus(str, Enum):
    BORROWED = "borrowed"
    OVERDUE = "overdue"
    RETURNED = "returned"


class User(Base):
    """Librarian or admin account."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(100), unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    full_name = Column(String(200), nullable=True)
    role = Column(String(20), nullable=False, default=StaffRole.LIBRARIAN.value)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=clock.utcnow)


class Book(Base):
    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint("available_copies >= 0", name="ck_books_available_non_negative"),
        CheckConstraint("available_copies <= total_copies", name="ck_books_available_le_total"),
    )

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(200), nullable=False, index=True)
    author = Column(String(200), nullable=False, index=True)
    isbn = Column(String(50), unique=True, index=True, nullable=False)
    category = Column(String(100), nullable=False, index=True)
    description = Column(Text, nullable=True)
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=clock.utcnow)

    assignments = relationship("Assignment", back_populates="book")


class Borrower(Base):
    __tablename__ = "borrowers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False, index=True)
    # student or faculty id card number
    external_id = Column(String(100), unique=True, index=True, nullable=False)
    email = Column(String(200), unique=True, index=True, nullable=False)
    phone = Column(String(50), nullable=True)
    department = Column(String(100), nullable=False, index=True)
    type = Column(String(20), nullable=False, default=BorrowerType.STUDENT.value)
    hashed_password = Column(String, nullable=True)
    created_at = Column(DateTime, default=clock.utcnow)

    assignments = relationship("Assignment", back_populates="borrower")


class Assignment(Base):
    """One borrow-to-return record.

    ``state`` only ever holds ``borrowed`` or ``returned``. Whether an open
    assignment is overdue depends on the clock, so it is derived on read by
    :meth:`status_at` instead of being written back.
    """

    __tablename__ = "assignments"
    __table_args__ = (
        # one open assignment per (book, borrower)
        Index(
            "uq_assignments_open_pair",
            "book_id",
            "borrower_id",
            unique=True,
            postgresql_where=text("status != 'returned'"),
            sqlite_where=text("status != 'returned'"),
        ),
        CheckConstraint("fine_amount >= 0", name="ck_assignments_fine_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), index=True, nullable=False)
    borrower_id = Column(Integer, ForeignKey("borrowers.id"), index=True, nullable=False)
    borrowed_at = Column(DateTime, nullable=False, default=clock.utcnow)
    due_at = Column(DateTime, nullable=False)
    returned_at = Column(DateTime, nullable=True)
    state = Column("status", String(20), nullable=False, default=AssignmentStatus.BORROWED.value)
    fine_amount = Column(Float, nullable=False, default=0.0)
    fine_paid = Column(Boolean, nullable=False, default=False)

    book = relationship("Book", back_populates="assignments")
    borrower = relationship("Borrower", back_populates="assignments")

    @classmethod
    def open_clause(cls):
        """SQL predicate for assignments that still hold a copy."""
        return cls.state != AssignmentStatus.RETURNED.value

    @classmethod
    def status_clause(cls, status: AssignmentStatus, now: datetime):
        """SQL predicate equivalent to ``status_at(now) == status``."""
        if status == AssignmentStatus.RETURNED:
            return cls.state == AssignmentStatus.RETURNED.value
        if status == AssignmentStatus.OVERDUE:
            return and_(cls.open_clause(), cls.due_at < now)
        return and_(cls.open_clause(), cls.due_at >= now)

    def status_at(self, now: Optional[datetime] = None) -> AssignmentStatus:
        if self.state == AssignmentStatus.RETURNED.value or self.returned_at is not None:
            return AssignmentStatus.RETURNED
        now = now or clock.utcnow()
        if self.due_at < now:
            return AssignmentStatus.OVERDUE
        return AssignmentStatus.BORROWED

    @property
    def status(self) -> AssignmentStatus:
        return self.status_at()

    @property
    def book_title(self) -> Optional[str]:
        return self.book.title if self.book else None

    @property
    def borrower_name(self) -> Optional[str]:
        return self.borrower.name if self.borrower else None

    @property
    def borrower_type(self) -> Optional[str]:
        return self.borrower.type if self.borrower else None


class AuthLog(Base):
    __tablename__ = "auth_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    identifier = Column(String(200), nullable=True)
    event = Column(String(50), nullable=False)  # login_success / login_failed
    role = Column(String(20), nullable=True)
    ip_address = Column(String(100), nullable=True)
    timestamp = Column(DateTime, default=clock.utcnow, index=True)
