"""Domain errors raised by the catalog, ledger and auth layers.

Each error carries the HTTP status the API maps it to; ``main.py`` registers
a single handler for :class:`LibraryError`.
"""

from typing import Dict, Optional

from fastapi import status


class LibraryError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal Server Error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return None


class ValidationError(LibraryError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class NotFoundError(LibraryError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class ConflictError(LibraryError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Conflict"


class Unauthorized(LibraryError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Could not validate credentials"

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return {"WWW-Authenticate": "Bearer"}


class Forbidden(LibraryError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Not enough permissions"


class InvalidCredentials(Unauthorized):
    # Same message whichever of identifier or password was wrong
    default_message = "Invalid username/ID or password"

    def __init__(self):
        super().__init__(self.default_message)
