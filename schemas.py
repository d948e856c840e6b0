from datetime import datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from models import AssignmentStatus, BorrowerType

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    limit: int
    total_pages: int


# --- Books ---
class BookCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    author: str = Field(..., min_length=1, max_length=200)
    isbn: str = Field(..., min_length=1, max_length=50)
    category: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    total_copies: int = Field(1, ge=0)


class BookUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    author: Optional[str] = Field(None, min_length=1, max_length=200)
    isbn: Optional[str] = Field(None, min_length=1, max_length=50)
    category: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    total_copies: Optional[int] = Field(None, ge=0)


class BookOut(BaseModel):
    id: int
    title: str
    author: str
    isbn: str
    category: str
    description: Optional[str] = None
    total_copies: int
    available_copies: int
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


# --- Borrowers ---
class BorrowerBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    external_id: str = Field(..., min_length=1, max_length=100, description="Student or faculty id")
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=50)
    department: str = Field(..., min_length=1, max_length=100)
    type: BorrowerType = BorrowerType.STUDENT


class BorrowerCreate(BorrowerBase):
    # without a password the borrower exists but cannot log in
    password: Optional[str] = Field(None, min_length=8)


class BorrowerUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    external_id: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=50)
    department: Optional[str] = Field(None, min_length=1, max_length=100)
    type: Optional[BorrowerType] = None
    password: Optional[str] = Field(None, min_length=8)


class BorrowerOut(BorrowerBase):
    id: int
    created_at: Optional[datetime] = None
    borrowed_books: int = 0
    model_config = ConfigDict(from_attributes=True)


# --- Assignments ---
class AssignmentCreate(BaseModel):
    book_id: int
    borrower_id: int
    due_at: Optional[datetime] = Field(None, description="Defaults to the standard loan period")


class AssignmentOut(BaseModel):
    id: int
    book_id: int
    book_title: Optional[str] = None
    borrower_id: int
    borrower_name: Optional[str] = None
    borrower_type: Optional[BorrowerType] = None
    borrowed_at: datetime
    due_at: datetime
    returned_at: Optional[datetime] = None
    status: AssignmentStatus
    fine_amount: float
    fine_paid: bool
    model_config = ConfigDict(from_attributes=True)


class BorrowerDetail(BorrowerOut):
    borrowing_history: List[AssignmentOut] = []


class BorrowerSummary(BaseModel):
    borrower: BorrowerOut
    total_books: int
    currently_borrowed: int
    overdue: int
    outstanding_fines: float
    history: List[AssignmentOut]


# --- Dashboard ---
class RecentActivity(BaseModel):
    id: int
    action: str
    book: Optional[str] = None
    borrower: Optional[str] = None
    date: datetime
    status: AssignmentStatus


class OverdueAlert(BaseModel):
    id: int
    book: Optional[str] = None
    borrower: Optional[str] = None
    due_at: datetime
    days_overdue: int


class DashboardStats(BaseModel):
    total_books: int
    borrowed_books: int
    overdue_books: int
    active_borrowers: int
    unpaid_fines: float
    recent_activities: List[RecentActivity]
    overdue_alerts: List[OverdueAlert]


class AuthLogOut(BaseModel):
    id: int
    user_id: Optional[int] = None
    identifier: Optional[str] = None
    event: str
    role: Optional[str] = None
    ip_address: Optional[str] = None
    timestamp: datetime
    model_config = ConfigDict(from_attributes=True)
