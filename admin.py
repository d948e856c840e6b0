from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

import auth_schemas
import crud
import schemas
from auth_utils import AuthSession, Capability, require_capability
from database import get_db
from models import StaffRole

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    responses={404: {"description": "Not found"}},
)


# Librarian account management
@router.post("/librarians/", response_model=auth_schemas.StaffOut, status_code=status.HTTP_201_CREATED)
def create_librarian(
    staff: auth_schemas.StaffCreate,
    db: Session = Depends(get_db),
    _admin: AuthSession = Depends(require_capability(Capability.MANAGE_STAFF)),
):
    return crud.create_staff_user(staff, db)


@router.get("/librarians/", response_model=List[auth_schemas.StaffOut])
def list_librarians(
    role: Optional[StaffRole] = None,
    db: Session = Depends(get_db),
    _admin: AuthSession = Depends(require_capability(Capability.MANAGE_STAFF)),
):
    return crud.list_staff_users(db, role=role)


@router.delete("/librarians/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_librarian(
    user_id: int,
    db: Session = Depends(get_db),
    admin: AuthSession = Depends(require_capability(Capability.MANAGE_STAFF)),
):
    crud.delete_staff_user(user_id, db, acting_user_id=admin.user_id)
    return None


@router.put("/librarians/{user_id}", response_model=auth_schemas.StaffOut)
def update_librarian(
    user_id: int,
    staff: auth_schemas.StaffUpdate,
    db: Session = Depends(get_db),
    admin: AuthSession = Depends(require_capability(Capability.MANAGE_STAFF)),
):
    """Change a staff account's name, role or active flag. Deactivated accounts lose access at once."""
    return crud.update_staff_user(user_id, staff, db, acting_user_id=admin.user_id)


@router.get("/auth-logs", response_model=List[schemas.AuthLogOut])
def list_auth_logs(
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    _admin: AuthSession = Depends(require_capability(Capability.VIEW_AUDIT_LOG)),
):
    return crud.get_auth_logs(db, skip=skip, limit=limit)


@router.get("/stats", response_model=schemas.DashboardStats)
def dashboard_stats(
    db: Session = Depends(get_db),
    _staff: AuthSession = Depends(require_capability(Capability.VIEW_DASHBOARD)),
):
    """Counts, recent activity and overdue alerts for the staff dashboards."""
    return crud.dashboard_stats(db)
