import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

import clock
import config
import models
from auth_schemas import Role
from database import get_db
from errors import Forbidden, InvalidCredentials, Unauthorized

logger = logging.getLogger(__name__)

SECRET_KEY = config.SECRET_KEY
ALGORITHM = config.ALGORITHM
ACCESS_TOKEN_EXPIRE_MINUTES = config.SESSION_EXPIRE_MINUTES

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl="auth/login",
    # Do not automatically return a 401 when no header is sent; the
    # session cookie is checked as a fallback.
    auto_error=False,
)


class Capability(str, Enum):
    MANAGE_CATALOG = "manage_catalog"
    MANAGE_BORROWERS = "manage_borrowers"
    MANAGE_ASSIGNMENTS = "manage_assignments"
    MANAGE_STAFF = "manage_staff"
    VIEW_DASHBOARD = "view_dashboard"
    VIEW_AUDIT_LOG = "view_audit_log"
    VIEW_OWN_ASSIGNMENTS = "view_own_assignments"
    PAY_FINE = "pay_fine"


_BORROWER_CAPABILITIES = frozenset({Capability.VIEW_OWN_ASSIGNMENTS, Capability.PAY_FINE})

ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.ADMIN: frozenset(Capability),
    Role.LIBRARIAN: frozenset({
        Capability.MANAGE_CATALOG,
        Capability.MANAGE_BORROWERS,
        Capability.MANAGE_ASSIGNMENTS,
        Capability.VIEW_DASHBOARD,
        Capability.PAY_FINE,
    }),
    Role.STUDENT: _BORROWER_CAPABILITIES,
    Role.FACULTY: _BORROWER_CAPABILITIES,
}


def has_capability(role: Role, capability: Capability) -> bool:
    return capability in ROLE_CAPABILITIES.get(role, frozenset())


@dataclass(frozen=True)
class AuthSession:
    """An authenticated caller: a staff user or a borrower."""

    user_id: int
    role: Role
    name: Optional[str] = None
    identifier: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role.is_staff

    @property
    def subject(self) -> str:
        kind = "staff" if self.is_staff else "borrower"
        return f"{kind}:{self.user_id}"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a hash."""
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Generate a password hash."""
    return pwd_context.hash(password)


def _staff_session(user: models.User) -> AuthSession:
    return AuthSession(user_id=user.id, role=Role(user.role), name=user.full_name or user.username, identifier=user.username)


def _borrower_session(borrower: models.Borrower) -> AuthSession:
    return AuthSession(user_id=borrower.id, role=Role(borrower.type), name=borrower.name, identifier=borrower.external_id)


def authenticate(db: Session, identifier: str, secret: str, role_hint: Optional[Role] = None) -> AuthSession:
    """Resolve credentials against the staff and borrower pools.

    Staff accounts are keyed by username, borrowers by student/faculty id.
    ``role_hint`` restricts the lookup to one pool and to that exact role.
    Every failure raises the same :class:`InvalidCredentials`.
    """
    check_staff = role_hint is None or role_hint.is_staff
    check_borrowers = role_hint is None or not role_hint.is_staff

    # exactly one hash check per attempt, whichever pool the identifier is in
    hashed = None
    if check_staff:
        user = db.query(models.User).filter(models.User.username == identifier).first()
        if user is not None:
            hashed = user.hashed_password
            if verify_password(secret, hashed):
                if user.is_active and (role_hint is None or user.role == role_hint.value):
                    return _staff_session(user)
                raise InvalidCredentials()

    if check_borrowers and hashed is None:
        borrower = db.query(models.Borrower).filter(models.Borrower.external_id == identifier).first()
        if borrower is not None and borrower.hashed_password:
            hashed = borrower.hashed_password
            if verify_password(secret, hashed):
                if role_hint is None or borrower.type == role_hint.value:
                    return _borrower_session(borrower)
                raise InvalidCredentials()

    if hashed is None:
        pwd_context.dummy_verify()
    raise InvalidCredentials()


def create_access_token(session: AuthSession, expires_delta: Optional[timedelta] = None) -> Tuple[str, datetime]:
    """Create a signed JWT for a session. Returns (token, expires_at)."""
    expire = clock.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": session.subject, "role": session.role.value, "exp": expire}
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt, expire


def decode_access_token(token: str) -> Tuple[str, int]:
    """Return (kind, id) from a token's subject or raise Unauthorized."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise Unauthorized()
    subject = payload.get("sub")
    if not subject or ":" not in subject:
        raise Unauthorized()
    kind, _, raw_id = subject.partition(":")
    if kind not in ("staff", "borrower"):
        raise Unauthorized()
    try:
        return kind, int(raw_id)
    except ValueError:
        raise Unauthorized()


def _token_from_request(request: Request, header_token: Optional[str]) -> Optional[str]:
    return header_token or request.cookies.get(config.AUTH_COOKIE_NAME)


def get_current_session(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> AuthSession:
    """Resolve the bearer token (or session cookie) into an AuthSession."""
    token = _token_from_request(request, token)
    if not token:
        raise Unauthorized()
    kind, subject_id = decode_access_token(token)

    # Roles come from the stored account so demotions apply immediately
    if kind == "staff":
        user = db.query(models.User).filter(models.User.id == subject_id).first()
        if user is None or not user.is_active:
            raise Unauthorized()
        return _staff_session(user)

    borrower = db.query(models.Borrower).filter(models.Borrower.id == subject_id).first()
    if borrower is None:
        raise Unauthorized()
    return _borrower_session(borrower)


def require_capability(capability: Capability):
    """Dependency factory: the caller's role must grant ``capability``."""

    def guard(session: AuthSession = Depends(get_current_session)) -> AuthSession:
        if not has_capability(session.role, capability):
            logger.info("Denied %s to %s (%s)", capability.value, session.subject, session.role.value)
            raise Forbidden()
        return session

    return guard
