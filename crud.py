import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import clock
import config
from auth_schemas import PasswordChange, ProfileUpdate, StaffCreate, StaffUpdate
from auth_utils import AuthSession, get_password_hash, verify_password
from errors import ConflictError, NotFoundError, ValidationError
from models import Assignment, AssignmentStatus, AuthLog, Book, Borrower, StaffRole, User
from schemas import BookCreate, BookUpdate, BorrowerCreate, BorrowerUpdate
from utils import like, paginate

logger = logging.getLogger(__name__)


def _commit(db: Session, conflict_message: str) -> None:
    """Commit, turning a racing unique-constraint violation into a ConflictError."""
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning("Integrity error: %s", getattr(e, "orig", e))
        raise ConflictError(conflict_message)


def _delete_closed_assignments(db: Session, **filters) -> int:
    return (
        db.query(Assignment)
        .filter_by(**filters)
        .filter(Assignment.state == AssignmentStatus.RETURNED.value)
        .delete(synchronize_session=False)
    )


# --- Book CRUD ---
def create_book(book_data: BookCreate, db: Session) -> Book:
    # Guard against duplicates before hitting DB constraints
    if db.query(Book).filter(Book.isbn == book_data.isbn).first():
        raise ConflictError("A book with this ISBN already exists.")

    new_book = Book(
        title=book_data.title.strip(),
        author=book_data.author.strip(),
        isbn=book_data.isbn.strip(),
        category=book_data.category.strip(),
        description=book_data.description,
        total_copies=book_data.total_copies,
        available_copies=book_data.total_copies,
        created_at=clock.utcnow(),
    )
    db.add(new_book)
    _commit(db, "A book with this ISBN already exists.")
    db.refresh(new_book)
    logger.info("Created book id=%s isbn=%s", new_book.id, new_book.isbn)
    return new_book


def get_book(book_id: int, db: Session) -> Book:
    book = db.query(Book).filter(Book.id == book_id).first()
    if not book:
        raise NotFoundError("Book not found")
    return book


def update_book(book_id: int, book_data: BookUpdate, db: Session) -> Book:
    book = get_book(book_id, db)
    data = book_data.model_dump(exclude_unset=True)

    for key in ("title", "author", "isbn", "category"):
        if data.get(key):
            data[key] = data[key].strip()

    if data.get("isbn") and data["isbn"] != book.isbn:
        if db.query(Book).filter(Book.isbn == data["isbn"]).first():
            raise ConflictError("A book with this ISBN already exists.")

    new_total = data.pop("total_copies", None)
    if new_total is not None and new_total != book.total_copies:
        delta = new_total - book.total_copies
        # shift the available counter in place so concurrent borrows are not lost
        updated = (
            db.query(Book)
            .filter(Book.id == book_id, Book.available_copies + delta >= 0)
            .update(
                {Book.total_copies: new_total, Book.available_copies: Book.available_copies + delta},
                synchronize_session=False,
            )
        )
        if not updated:
            db.rollback()
            raise ValidationError("Total copies cannot be lower than the number of copies currently borrowed")

    for key, value in data.items():
        if value is not None:
            setattr(book, key, value)
    _commit(db, "A book with this ISBN already exists.")
    db.refresh(book)
    return book


def delete_book(book_id: int, db: Session) -> None:
    book = get_book(book_id, db)
    active = db.query(Assignment).filter(Assignment.book_id == book_id, Assignment.open_clause()).count()
    if active:
        raise ConflictError("Cannot delete book with active borrows")
    removed = _delete_closed_assignments(db, book_id=book_id)
    db.query(Book).filter(Book.id == book.id).delete(synchronize_session=False)
    db.commit()
    logger.info("Deleted book id=%s (with %s closed assignments)", book_id, removed)


def list_books(
    db: Session,
    page: int = 1,
    limit: int = 10,
    title: Optional[str] = None,
    author: Optional[str] = None,
    category: Optional[str] = None,
    available: Optional[bool] = None,
    search: Optional[str] = None,
) -> Dict[str, Any]:
    query = db.query(Book)
    if title:
        query = query.filter(Book.title.ilike(like(title)))
    if author:
        query = query.filter(Book.author.ilike(like(author)))
    if category:
        query = query.filter(func.lower(Book.category) == category.strip().lower())
    if available is True:
        query = query.filter(Book.available_copies > 0)
    elif available is False:
        query = query.filter(Book.available_copies == 0)
    if search:
        query = query.filter(
            (Book.title.ilike(like(search)))
            | (Book.author.ilike(like(search)))
            | (Book.isbn.ilike(like(search)))
        )
    return paginate(query.order_by(Book.title, Book.id), page, limit)


# --- Borrower CRUD ---
def _check_borrower_unique(db: Session, email: Optional[str], external_id: Optional[str], exclude_id: Optional[int] = None) -> None:
    if email:
        q = db.query(Borrower).filter(func.lower(Borrower.email) == email.lower())
        if exclude_id is not None:
            q = q.filter(Borrower.id != exclude_id)
        if q.first():
            raise ConflictError("A borrower with this email already exists.")
    if external_id:
        q = db.query(Borrower).filter(Borrower.external_id == external_id)
        if exclude_id is not None:
            q = q.filter(Borrower.id != exclude_id)
        if q.first():
            raise ConflictError("A borrower with this student/faculty id already exists.")


def create_borrower(borrower_data: BorrowerCreate, db: Session) -> Borrower:
    _check_borrower_unique(db, borrower_data.email, borrower_data.external_id)
    new_borrower = Borrower(
        name=borrower_data.name.strip(),
        external_id=borrower_data.external_id.strip(),
        email=str(borrower_data.email),
        phone=borrower_data.phone,
        department=borrower_data.department.strip(),
        type=borrower_data.type.value,
        hashed_password=get_password_hash(borrower_data.password) if borrower_data.password else None,
        created_at=clock.utcnow(),
    )
    db.add(new_borrower)
    _commit(db, "A borrower with this email or student/faculty id already exists.")
    db.refresh(new_borrower)
    logger.info("Created borrower id=%s external_id=%s", new_borrower.id, new_borrower.external_id)
    return new_borrower


def get_borrower(borrower_id: int, db: Session) -> Borrower:
    borrower = db.query(Borrower).filter(Borrower.id == borrower_id).first()
    if not borrower:
        raise NotFoundError("Borrower not found")
    return borrower


def count_open_assignments(db: Session, borrower_id: int) -> int:
    return db.query(Assignment).filter(Assignment.borrower_id == borrower_id, Assignment.open_clause()).count()


def get_borrower_detail(borrower_id: int, db: Session) -> Borrower:
    """Borrower with ``borrowed_books`` and ``borrowing_history`` attached."""
    borrower = get_borrower(borrower_id, db)
    borrower.borrowed_books = count_open_assignments(db, borrower_id)
    borrower.borrowing_history = (
        db.query(Assignment)
        .filter(Assignment.borrower_id == borrower_id)
        .order_by(Assignment.borrowed_at.desc(), Assignment.id.desc())
        .all()
    )
    return borrower


def update_borrower(borrower_id: int, borrower_data: BorrowerUpdate, db: Session) -> Borrower:
    borrower = get_borrower(borrower_id, db)
    data = borrower_data.model_dump(exclude_unset=True)
    _check_borrower_unique(db, data.get("email"), data.get("external_id"), exclude_id=borrower_id)

    password = data.pop("password", None)
    if password:
        borrower.hashed_password = get_password_hash(password)
    for key, value in data.items():
        if value is None:
            continue
        if key == "type":
            value = value.value if hasattr(value, "value") else value
        elif key == "email":
            value = str(value)
        setattr(borrower, key, value)
    _commit(db, "A borrower with this email or student/faculty id already exists.")
    db.refresh(borrower)
    return borrower


def delete_borrower(borrower_id: int, db: Session) -> None:
    get_borrower(borrower_id, db)
    if count_open_assignments(db, borrower_id):
        raise ConflictError("Cannot delete borrower with active borrows")
    removed = _delete_closed_assignments(db, borrower_id=borrower_id)
    db.query(Borrower).filter(Borrower.id == borrower_id).delete(synchronize_session=False)
    db.commit()
    logger.info("Deleted borrower id=%s (with %s closed assignments)", borrower_id, removed)


def list_borrowers(
    db: Session,
    page: int = 1,
    limit: int = 10,
    name: Optional[str] = None,
    department: Optional[str] = None,
    type: Optional[str] = None,
) -> Dict[str, Any]:
    query = db.query(Borrower)
    if name:
        query = query.filter(Borrower.name.ilike(like(name)))
    if department:
        query = query.filter(Borrower.department == department)
    if type:
        query = query.filter(Borrower.type == type.lower())
    result = paginate(query.order_by(Borrower.name, Borrower.id), page, limit)

    ids = [b.id for b in result["items"]]
    counts = {}
    if ids:
        counts = dict(
            db.query(Assignment.borrower_id, func.count(Assignment.id))
            .filter(Assignment.borrower_id.in_(ids), Assignment.open_clause())
            .group_by(Assignment.borrower_id)
            .all()
        )
    for b in result["items"]:
        b.borrowed_books = counts.get(b.id, 0)
    return result


# --- Staff accounts ---
def create_staff_user(staff_data: StaffCreate, db: Session) -> User:
    if db.query(User).filter(User.username == staff_data.username).first():
        raise ConflictError("Username already registered")
    user = User(
        username=staff_data.username,
        hashed_password=get_password_hash(staff_data.password),
        full_name=staff_data.full_name,
        role=staff_data.role.value,
        is_active=True,
        created_at=clock.utcnow(),
    )
    db.add(user)
    _commit(db, "Username already registered")
    db.refresh(user)
    logger.info("Created %s account %s", user.role, user.username)
    return user


def list_staff_users(db: Session, role: Optional[StaffRole] = None) -> List[User]:
    query = db.query(User)
    if role:
        query = query.filter(User.role == role.value)
    return query.order_by(User.username).all()


def delete_staff_user(user_id: int, db: Session, acting_user_id: Optional[int] = None) -> None:
    if acting_user_id is not None and user_id == acting_user_id:
        raise ValidationError("Cannot delete yourself")
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError("User not found")
    db.delete(user)
    db.commit()
    logger.info("Deleted staff account id=%s", user_id)


def update_staff_user(user_id: int, staff_data: StaffUpdate, db: Session, acting_user_id: Optional[int] = None) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError("User not found")
    data = staff_data.model_dump(exclude_unset=True)

    if acting_user_id is not None and user_id == acting_user_id:
        if data.get("is_active") is False or (data.get("role") and data["role"].value != user.role):
            raise ValidationError("Cannot change your own role or status")

    if data.get("role") is not None:
        user.role = data["role"].value
    if data.get("is_active") is not None:
        user.is_active = data["is_active"]
    if "full_name" in data:
        user.full_name = data["full_name"]
    db.commit()
    db.refresh(user)
    logger.info("Updated staff account %s (role=%s, active=%s)", user.username, user.role, user.is_active)
    return user


def _account_for(session: AuthSession, db: Session):
    model = User if session.is_staff else Borrower
    account = db.query(model).filter(model.id == session.user_id).first()
    if not account:
        raise NotFoundError("User not found")
    return account


def change_password(session: AuthSession, payload: PasswordChange, db: Session) -> None:
    """Replace the caller's password after checking the current one."""
    account = _account_for(session, db)
    if not account.hashed_password or not verify_password(payload.current_password, account.hashed_password):
        raise ValidationError("Current password is incorrect")
    if payload.new_password != payload.confirm_password:
        raise ValidationError("Passwords do not match")
    account.hashed_password = get_password_hash(payload.new_password)
    db.commit()
    logger.info("Password changed for %s", session.subject)


def update_profile(session: AuthSession, payload: ProfileUpdate, db: Session):
    account = _account_for(session, db)
    data = payload.model_dump(exclude_unset=True)

    if session.is_staff:
        if data.get("email") is not None or data.get("phone") is not None:
            raise ValidationError("Staff accounts only have a name")
        if data.get("name"):
            account.full_name = data["name"].strip()
        db.commit()
    else:
        _check_borrower_unique(db, data.get("email"), None, exclude_id=account.id)
        if data.get("name"):
            account.name = data["name"].strip()
        if data.get("email") is not None:
            account.email = str(data["email"])
        if "phone" in data:
            account.phone = data["phone"]
        _commit(db, "A borrower with this email already exists.")
    db.refresh(account)
    return account


def ensure_default_admin(db: Session) -> Optional[User]:
    """Create the configured admin account if no user with that name exists."""
    if db.query(User).filter(User.username == config.DEFAULT_ADMIN_USERNAME).first():
        return None
    admin = User(
        username=config.DEFAULT_ADMIN_USERNAME,
        hashed_password=get_password_hash(config.DEFAULT_ADMIN_PASSWORD),
        full_name="Admin User",
        role=StaffRole.ADMIN.value,
        is_active=True,
        created_at=clock.utcnow(),
    )
    db.add(admin)
    db.commit()
    logger.info("Created default admin user %s", admin.username)
    return admin


# --- Auth Logs ---
def log_auth_event(user_id: Optional[int], identifier: Optional[str], event: str, role: Optional[str], ip_address: Optional[str], db: Session):
    entry = AuthLog(user_id=user_id, identifier=identifier, event=event, role=role, ip_address=ip_address, timestamp=clock.utcnow())
    db.add(entry)
    db.commit()


def get_auth_logs(db: Session, skip: int = 0, limit: int = 100):
    return db.query(AuthLog).order_by(AuthLog.timestamp.desc(), AuthLog.id.desc()).offset(skip).limit(limit).all()


# --- Dashboard ---
def dashboard_stats(db: Session, now: Optional[datetime] = None, limit: int = 5) -> dict:
    """Counts, recent activity and overdue alerts for the librarian dashboard."""
    now = now or clock.utcnow()
    stats: Dict[str, Any] = {}
    stats["total_books"] = db.query(Book).count()
    stats["borrowed_books"] = db.query(Assignment).filter(Assignment.open_clause()).count()
    stats["overdue_books"] = db.query(Assignment).filter(Assignment.status_clause(AssignmentStatus.OVERDUE, now)).count()
    stats["active_borrowers"] = (
        db.query(func.count(func.distinct(Assignment.borrower_id))).filter(Assignment.open_clause()).scalar() or 0
    )
    unpaid = (
        db.query(func.coalesce(func.sum(Assignment.fine_amount), 0.0))
        .filter(Assignment.fine_paid.is_(False), Assignment.fine_amount > 0)
        .scalar()
    )
    stats["unpaid_fines"] = round(float(unpaid or 0), 2)

    recent = db.query(Assignment).order_by(Assignment.borrowed_at.desc(), Assignment.id.desc()).limit(limit).all()
    stats["recent_activities"] = [
        {
            "id": a.id,
            "action": "Book Returned" if a.returned_at else "Book Borrowed",
            "book": a.book_title,
            "borrower": a.borrower_name,
            "date": a.returned_at or a.borrowed_at,
            "status": a.status_at(now),
        }
        for a in recent
    ]

    overdue = (
        db.query(Assignment)
        .filter(Assignment.status_clause(AssignmentStatus.OVERDUE, now))
        .order_by(Assignment.due_at.asc(), Assignment.id.asc())
        .limit(limit)
        .all()
    )
    stats["overdue_alerts"] = [
        {
            "id": a.id,
            "book": a.book_title,
            "borrower": a.borrower_name,
            "due_at": a.due_at,
            "days_overdue": math.ceil((now - a.due_at) / timedelta(days=1)),
        }
        for a in overdue
    ]
    return stats
