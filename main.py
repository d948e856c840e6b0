import logging
import time
from datetime import date
from typing import Optional

import uvicorn
from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

import assignments
import config
import crud
import models  # ensure models are imported so tables are registered
import notifications
from admin import router as admin_router
from auth import router as auth_router
from auth_utils import AuthSession, Capability, require_capability
from database import Base, SessionLocal, engine, get_db
from errors import Forbidden, LibraryError
from models import AssignmentStatus, BorrowerType
from schemas import (
    AssignmentCreate,
    AssignmentOut,
    BookCreate,
    BookOut,
    BookUpdate,
    BorrowerCreate,
    BorrowerDetail,
    BorrowerOut,
    BorrowerSummary,
    BorrowerUpdate,
    Page,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger("library")

app = FastAPI(title="College Library API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        raise
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message}, headers=exc.headers)


app.include_router(auth_router)
app.include_router(admin_router)


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        crud.ensure_default_admin(db)
    finally:
        db.close()


@app.get("/health")
def health(db: Session = Depends(get_db)):
    """Basic health check endpoint. Returns DB connectivity and basic counts."""
    try:
        db.execute(text("SELECT 1"))
        total = db.query(models.Book).count()
        borrowers = db.query(models.Borrower).count()
        return {"status": "ok", "database": "connected", "total_books": total, "total_borrowers": borrowers}
    except Exception as e:
        logger.error("Health check failed: %s", e)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "error", "database": "disconnected"},
        )


# Books
@app.get("/books/", response_model=Page[BookOut])
def list_books(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    title: Optional[str] = None,
    author: Optional[str] = None,
    category: Optional[str] = None,
    available: Optional[bool] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """
    Browse the catalog, ordered by title.
    - **available**: true for books with at least one copy on the shelf
    - **search**: matches title, author or ISBN
    """
    return crud.list_books(
        db, page=page, limit=limit, title=title, author=author,
        category=category, available=available, search=search,
    )


@app.get("/books/{book_id}", response_model=BookOut)
def retrieve_book(book_id: int, db: Session = Depends(get_db)):
    return crud.get_book(book_id, db)


@app.post("/books/", response_model=BookOut, status_code=status.HTTP_201_CREATED)
def create_book(
    book: BookCreate,
    db: Session = Depends(get_db),
    _staff: AuthSession = Depends(require_capability(Capability.MANAGE_CATALOG)),
):
    return crud.create_book(book, db)


@app.put("/books/{book_id}", response_model=BookOut)
def modify_book(
    book_id: int,
    book: BookUpdate,
    db: Session = Depends(get_db),
    _staff: AuthSession = Depends(require_capability(Capability.MANAGE_CATALOG)),
):
    return crud.update_book(book_id, book, db)


@app.delete("/books/{book_id}")
def remove_book(
    book_id: int,
    db: Session = Depends(get_db),
    _staff: AuthSession = Depends(require_capability(Capability.MANAGE_CATALOG)),
):
    crud.delete_book(book_id, db)
    return {"detail": "Book deleted"}


# Borrowers
@app.get("/borrowers/", response_model=Page[BorrowerOut])
def list_borrowers(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    name: Optional[str] = None,
    department: Optional[str] = None,
    type: Optional[BorrowerType] = None,
    db: Session = Depends(get_db),
    _staff: AuthSession = Depends(require_capability(Capability.MANAGE_BORROWERS)),
):
    return crud.list_borrowers(
        db, page=page, limit=limit, name=name, department=department,
        type=type.value if type else None,
    )


@app.post("/borrowers/", response_model=BorrowerOut, status_code=status.HTTP_201_CREATED)
def create_borrower(
    borrower: BorrowerCreate,
    db: Session = Depends(get_db),
    _staff: AuthSession = Depends(require_capability(Capability.MANAGE_BORROWERS)),
):
    return crud.create_borrower(borrower, db)


@app.get("/borrowers/{borrower_id}", response_model=BorrowerDetail)
def retrieve_borrower(
    borrower_id: int,
    db: Session = Depends(get_db),
    _staff: AuthSession = Depends(require_capability(Capability.MANAGE_BORROWERS)),
):
    return crud.get_borrower_detail(borrower_id, db)


@app.put("/borrowers/{borrower_id}", response_model=BorrowerOut)
def modify_borrower(
    borrower_id: int,
    borrower: BorrowerUpdate,
    db: Session = Depends(get_db),
    _staff: AuthSession = Depends(require_capability(Capability.MANAGE_BORROWERS)),
):
    return crud.update_borrower(borrower_id, borrower, db)


@app.delete("/borrowers/{borrower_id}")
def remove_borrower(
    borrower_id: int,
    db: Session = Depends(get_db),
    _staff: AuthSession = Depends(require_capability(Capability.MANAGE_BORROWERS)),
):
    crud.delete_borrower(borrower_id, db)
    return {"detail": "Borrower deleted"}


# Assignments
@app.get("/assignments/", response_model=Page[AssignmentOut])
def list_assignments(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[AssignmentStatus] = None,
    borrower_id: Optional[int] = None,
    book_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    book_title: Optional[str] = None,
    borrower_name: Optional[str] = None,
    db: Session = Depends(get_db),
    _staff: AuthSession = Depends(require_capability(Capability.MANAGE_ASSIGNMENTS)),
):
    return assignments.list_assignments(
        db, page=page, limit=limit, status=status, borrower_id=borrower_id, book_id=book_id,
        start_date=start_date, end_date=end_date, book_title=book_title, borrower_name=borrower_name,
    )


@app.get("/assignments/{assignment_id}", response_model=AssignmentOut)
def retrieve_assignment(
    assignment_id: int,
    db: Session = Depends(get_db),
    _staff: AuthSession = Depends(require_capability(Capability.MANAGE_ASSIGNMENTS)),
):
    return assignments.get_assignment(assignment_id, db)


@app.post("/assignments/", response_model=AssignmentOut, status_code=status.HTTP_201_CREATED)
def record_borrow(
    payload: AssignmentCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    _staff: AuthSession = Depends(require_capability(Capability.MANAGE_ASSIGNMENTS)),
):
    a = assignments.record_borrow(db, payload.book_id, payload.borrower_id, payload.due_at)
    background_tasks.add_task(
        notifications.notify_book_borrowed,
        a.borrower.email, a.borrower.name, a.book.title, a.borrowed_at, a.due_at,
    )
    return a


@app.put("/assignments/{assignment_id}/return", response_model=AssignmentOut)
def return_book(
    assignment_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    _staff: AuthSession = Depends(require_capability(Capability.MANAGE_ASSIGNMENTS)),
):
    a = assignments.return_book(db, assignment_id)
    background_tasks.add_task(
        notifications.notify_book_returned,
        a.borrower.email, a.borrower.name, a.book.title, a.returned_at, a.fine_amount,
    )
    return a


@app.put("/assignments/{assignment_id}/pay-fine", response_model=AssignmentOut)
def pay_fine(
    assignment_id: int,
    db: Session = Depends(get_db),
    session: AuthSession = Depends(require_capability(Capability.PAY_FINE)),
):
    if not session.is_staff:
        a = assignments.get_assignment(assignment_id, db)
        if a.borrower_id != session.user_id:
            raise Forbidden("You can only pay your own fines")
    return assignments.pay_fine(db, assignment_id)


# Borrower self-service
@app.get("/me/assignments", response_model=Page[AssignmentOut])
def my_assignments(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[AssignmentStatus] = None,
    db: Session = Depends(get_db),
    session: AuthSession = Depends(require_capability(Capability.VIEW_OWN_ASSIGNMENTS)),
):
    return assignments.list_assignments(db, page=page, limit=limit, status=status, borrower_id=session.user_id)


@app.get("/me/summary", response_model=BorrowerSummary)
def my_summary(
    db: Session = Depends(get_db),
    session: AuthSession = Depends(require_capability(Capability.VIEW_OWN_ASSIGNMENTS)),
):
    return assignments.borrower_summary(db, session.user_id)


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=9000,
        reload=True
    )
