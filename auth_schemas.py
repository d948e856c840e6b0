from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from models import StaffRole


class Role(str, Enum):
    ADMIN = "admin"
    LIBRARIAN = "librarian"
    STUDENT = "student"
    FACULTY = "faculty"

    @property
    def is_staff(self) -> bool:
        return self in (Role.ADMIN, Role.LIBRARIAN)


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, description="Staff username or student/faculty id")
    password: str = Field(..., min_length=1)
    role: Optional[Role] = Field(None, description="Narrows the lookup to one credential pool")


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: int
    role: Role
    name: Optional[str] = None
    expires_at: datetime


class SessionOut(BaseModel):
    user_id: int
    role: Role
    name: Optional[str] = None
    identifier: Optional[str] = None


class StaffCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=100)
    password: str = Field(..., min_length=8)
    full_name: Optional[str] = Field(None, max_length=200)
    role: StaffRole = StaffRole.LIBRARIAN


class StaffOut(BaseModel):
    id: int
    username: str
    full_name: Optional[str] = None
    role: StaffRole
    is_active: bool
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class StaffUpdate(BaseModel):
    full_name: Optional[str] = Field(None, max_length=200)
    role: Optional[StaffRole] = None
    is_active: Optional[bool] = None


class PasswordChange(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8)
    confirm_password: str = Field(..., min_length=8)


class ProfileUpdate(BaseModel):
    """Self-service profile fields. Staff accounts only carry a name."""

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=50)
