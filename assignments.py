"""Borrow/return/fine lifecycle.

An assignment starts ``borrowed``, is reported ``overdue`` once its due date
passes while still open, and ends ``returned``. Each mutation below changes
the assignment row and the book's ``available_copies`` counter inside a
single transaction, using conditional UPDATEs so two concurrent requests
cannot both take the last copy or both return the same assignment.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import clock
import config
from errors import ConflictError, NotFoundError, ValidationError
from fines import calculate_fine
from models import Assignment, AssignmentStatus, Book, Borrower
from utils import like, paginate

logger = logging.getLogger(__name__)


def get_assignment(assignment_id: int, db: Session) -> Assignment:
    assignment = db.query(Assignment).filter(Assignment.id == assignment_id).first()
    if not assignment:
        raise NotFoundError("Borrow record not found")
    return assignment


def record_borrow(
    db: Session,
    book_id: int,
    borrower_id: int,
    due_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Assignment:
    now = now or clock.utcnow()
    if due_at is None:
        due_at = now + timedelta(days=config.DEFAULT_LOAN_DAYS)
    elif due_at.tzinfo is not None:
        due_at = due_at.astimezone(timezone.utc).replace(tzinfo=None)
    if due_at <= now:
        raise ValidationError("Due date must be a future date")

    if not db.query(Book.id).filter(Book.id == book_id).first():
        raise NotFoundError("Book not found")
    if not db.query(Borrower.id).filter(Borrower.id == borrower_id).first():
        raise NotFoundError("Borrower not found")

    existing = (
        db.query(Assignment.id)
        .filter(
            Assignment.book_id == book_id,
            Assignment.borrower_id == borrower_id,
            Assignment.open_clause(),
        )
        .first()
    )
    if existing:
        raise ConflictError("Borrower has already borrowed this book")

    # take a copy only if one is left
    taken = (
        db.query(Book)
        .filter(Book.id == book_id, Book.available_copies > 0)
        .update({Book.available_copies: Book.available_copies - 1}, synchronize_session=False)
    )
    if not taken:
        db.rollback()
        raise ValidationError("Book is not available for borrowing")

    assignment = Assignment(
        book_id=book_id,
        borrower_id=borrower_id,
        borrowed_at=now,
        due_at=due_at,
        state=AssignmentStatus.BORROWED.value,
        fine_amount=0.0,
        fine_paid=False,
    )
    db.add(assignment)
    try:
        db.commit()
    except IntegrityError:
        # lost a race on the open (book, borrower) index; the copy goes back too
        db.rollback()
        raise ConflictError("Borrower has already borrowed this book")
    db.refresh(assignment)
    logger.info("Book %s borrowed by borrower %s (assignment %s, due %s)", book_id, borrower_id, assignment.id, due_at)
    return assignment


def return_book(db: Session, assignment_id: int, now: Optional[datetime] = None) -> Assignment:
    now = now or clock.utcnow()
    assignment = get_assignment(assignment_id, db)
    if assignment.state == AssignmentStatus.RETURNED.value:
        raise ConflictError("Book already returned")

    fine = calculate_fine(assignment.due_at, now) if now > assignment.due_at else 0.0

    closed = (
        db.query(Assignment)
        .filter(Assignment.id == assignment_id, Assignment.open_clause())
        .update(
            {
                Assignment.state: AssignmentStatus.RETURNED.value,
                Assignment.returned_at: now,
                Assignment.fine_amount: fine,
            },
            synchronize_session=False,
        )
    )
    if not closed:
        db.rollback()
        raise ConflictError("Book already returned")

    db.query(Book).filter(
        Book.id == assignment.book_id,
        Book.available_copies < Book.total_copies,
    ).update({Book.available_copies: Book.available_copies + 1}, synchronize_session=False)
    db.commit()
    db.refresh(assignment)
    logger.info("Assignment %s returned (fine %.2f)", assignment_id, fine)
    return assignment


def pay_fine(db: Session, assignment_id: int) -> Assignment:
    assignment = get_assignment(assignment_id, db)
    if not assignment.fine_amount or assignment.fine_amount <= 0:
        raise ValidationError("No fine to pay")
    if assignment.fine_paid:
        raise ConflictError("Fine already paid")

    paid = (
        db.query(Assignment)
        .filter(
            Assignment.id == assignment_id,
            Assignment.fine_amount > 0,
            Assignment.fine_paid.is_(False),
        )
        .update({Assignment.fine_paid: True}, synchronize_session=False)
    )
    if not paid:
        db.rollback()
        raise ConflictError("Fine already paid")
    db.commit()
    db.refresh(assignment)
    logger.info("Fine of %.2f paid for assignment %s", assignment.fine_amount, assignment_id)
    return assignment


def _day_start(value: date) -> datetime:
    return datetime.combine(value, time.min)


def list_assignments(
    db: Session,
    page: int = 1,
    limit: int = 10,
    status: Optional[AssignmentStatus] = None,
    borrower_id: Optional[int] = None,
    book_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    book_title: Optional[str] = None,
    borrower_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Filtered page of assignments, newest borrow first.

    ``start_date``/``end_date`` bound ``borrowed_at`` and are inclusive whole
    days.
    """
    now = now or clock.utcnow()
    query = db.query(Assignment)
    if status:
        query = query.filter(Assignment.status_clause(AssignmentStatus(status), now))
    if borrower_id is not None:
        query = query.filter(Assignment.borrower_id == borrower_id)
    if book_id is not None:
        query = query.filter(Assignment.book_id == book_id)
    if start_date:
        query = query.filter(Assignment.borrowed_at >= _day_start(start_date))
    if end_date:
        query = query.filter(Assignment.borrowed_at < _day_start(end_date) + timedelta(days=1))
    if book_title:
        query = query.join(Book, Assignment.book_id == Book.id).filter(Book.title.ilike(like(book_title)))
    if borrower_name:
        query = query.join(Borrower, Assignment.borrower_id == Borrower.id).filter(Borrower.name.ilike(like(borrower_name)))
    query = query.order_by(Assignment.borrowed_at.desc(), Assignment.id.desc())
    return paginate(query, page, limit)


def borrower_summary(db: Session, borrower_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Student dashboard: counts, unpaid fines and full history for one borrower."""
    now = now or clock.utcnow()
    borrower = db.query(Borrower).filter(Borrower.id == borrower_id).first()
    if not borrower:
        raise NotFoundError("Borrower not found")

    history = (
        db.query(Assignment)
        .filter(Assignment.borrower_id == borrower_id)
        .order_by(Assignment.borrowed_at.desc(), Assignment.id.desc())
        .all()
    )
    statuses = [a.status_at(now) for a in history]
    currently_borrowed = sum(1 for s in statuses if s != AssignmentStatus.RETURNED)
    borrower.borrowed_books = currently_borrowed
    return {
        "borrower": borrower,
        "total_books": len(history),
        "currently_borrowed": currently_borrowed,
        "overdue": sum(1 for s in statuses if s == AssignmentStatus.OVERDUE),
        "outstanding_fines": round(sum(a.fine_amount for a in history if a.fine_amount > 0 and not a.fine_paid), 2),
        "history": history,
    }
