import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import auth_schemas
import auth_utils
import config
import crud
from database import get_db
from errors import InvalidCredentials

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _record(db: Session, **event) -> None:
    # the audit trail must not decide whether a login succeeds
    try:
        crud.log_auth_event(db=db, **event)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Could not write auth log entry: %s", e)


@router.post("/login", response_model=auth_schemas.Token)
def login(request: Request, response: Response, login_data: auth_schemas.LoginRequest, db: Session = Depends(get_db)):
    client_ip = _client_ip(request)
    try:
        session = auth_utils.authenticate(db, login_data.identifier, login_data.password, login_data.role)
    except InvalidCredentials:
        logger.warning("Failed login for %r from %s", login_data.identifier, client_ip)
        _record(db, user_id=None, identifier=login_data.identifier, event="login_failed", role=None, ip_address=client_ip)
        raise

    access_token, expires_at = auth_utils.create_access_token(session)
    response.set_cookie(
        key=config.AUTH_COOKIE_NAME,
        value=access_token,
        max_age=config.SESSION_EXPIRE_MINUTES * 60,
        httponly=True,
        samesite="lax",
    )
    _record(db, user_id=session.user_id, identifier=session.identifier, event="login_success", role=session.role.value, ip_address=client_ip)
    logger.info("Login %s as %s", session.subject, session.role.value)

    return {
        "access_token": access_token,
        "token_type": "bearer",
        "user_id": session.user_id,
        "role": session.role,
        "name": session.name,
        "expires_at": expires_at,
    }


@router.get("/me", response_model=auth_schemas.SessionOut)
def read_session(session: auth_utils.AuthSession = Depends(auth_utils.get_current_session)):
    return {
        "user_id": session.user_id,
        "role": session.role,
        "name": session.name,
        "identifier": session.identifier,
    }


@router.post("/logout")
def logout(response: Response):
    # JWTs are stateless; dropping the cookie ends a browser session
    response.delete_cookie(config.AUTH_COOKIE_NAME)
    return {"message": "Successfully logged out"}


@router.put("/me", response_model=auth_schemas.SessionOut)
def update_profile(
    payload: auth_schemas.ProfileUpdate,
    db: Session = Depends(get_db),
    session: auth_utils.AuthSession = Depends(auth_utils.get_current_session),
):
    account = crud.update_profile(session, payload, db)
    return {
        "user_id": session.user_id,
        "role": session.role,
        "name": account.full_name if session.is_staff else account.name,
        "identifier": session.identifier,
    }


@router.put("/password")
def change_password(
    payload: auth_schemas.PasswordChange,
    db: Session = Depends(get_db),
    session: auth_utils.AuthSession = Depends(auth_utils.get_current_session),
):
    crud.change_password(session, payload, db)
    return {"message": "Password updated"}
