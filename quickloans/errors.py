"""
Error taxonomy for Quick Loans.

- Precondition failures block an operation before any store call.
- Store errors wrap every failed external call (database, storage).
- Policy errors (permission, not found, invalid transition) come from the
  row-level access rules.
"""

import logging
from typing import Optional

from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError

logger = logging.getLogger(__name__)

CHECK_VIOLATION = "23514"
UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"
NOT_NULL_VIOLATION = "23502"

# SQLite reports constraint failures by message text only
_SQLITE_CODES = {
    "CHECK constraint failed": CHECK_VIOLATION,
    "UNIQUE constraint failed": UNIQUE_VIOLATION,
    "FOREIGN KEY constraint failed": FOREIGN_KEY_VIOLATION,
    "NOT NULL constraint failed": NOT_NULL_VIOLATION,
}

FRIENDLY_MESSAGES = {
    CHECK_VIOLATION: "Please ensure all fields meet the minimum requirements",
    UNIQUE_VIOLATION: "This record already exists",
    FOREIGN_KEY_VIOLATION: "The referenced record does not exist",
    NOT_NULL_VIOLATION: "Please fill in all required fields",
}


class QuickLoansError(Exception):
    """Base class for all application errors."""

    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PreconditionFailed(QuickLoansError):
    code = "precondition_failed"


class ProfileIncomplete(PreconditionFailed):
    code = "profile_incomplete"

    def __init__(self, message: str = "Please complete your profile before continuing"):
        super().__init__(message)


class AttachmentTooLarge(PreconditionFailed):
    code = "attachment_too_large"

    def __init__(self, size: int, limit: int):
        super().__init__(f"File size must be less than {limit // (1024 * 1024)}MB")
        self.size = size
        self.limit = limit


class EmptyMessage(PreconditionFailed):
    code = "empty_message"

    def __init__(self):
        super().__init__("Message must contain text or an attachment")


class PermissionDenied(QuickLoansError):
    code = "permission_denied"


class NotFound(QuickLoansError):
    code = "not_found"


class InvalidStatusTransition(QuickLoansError):
    code = "invalid_status_transition"


class StoreError(QuickLoansError):
    """A failed call to one of the platform stores."""

    code = "store_error"

    def __init__(self, operation: str, message: str, sqlstate: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
        self.sqlstate = sqlstate

    @property
    def is_constraint_violation(self) -> bool:
        return self.sqlstate is not None and self.sqlstate.startswith("23")


class ObjectStoreError(StoreError):
    code = "object_store_error"


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = exc.orig
    # psycopg2 exposes pgcode, psycopg 3 exposes sqlstate
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code:
        return code
    text = str(orig)
    for fragment, sqlstate in _SQLITE_CODES.items():
        if fragment in text:
            return sqlstate
    return None


def translate_store_error(operation: str, exc: Exception) -> StoreError:
    """
    Turn a raw store exception into a StoreError with a user-facing message.

    Constraint violations are matched on their SQLSTATE code and get a
    friendlier message; anything else keeps its raw message.
    """
    if isinstance(exc, StoreError):
        return exc

    if isinstance(exc, IntegrityError):
        sqlstate = _sqlstate(exc)
        message = FRIENDLY_MESSAGES.get(sqlstate, str(exc.orig))
        return StoreError(operation, message, sqlstate=sqlstate)

    if isinstance(exc, DBAPIError):
        return StoreError(operation, str(exc.orig), sqlstate=_sqlstate(exc))

    if isinstance(exc, SQLAlchemyError):
        return StoreError(operation, str(exc))

    return StoreError(operation, str(exc) or exc.__class__.__name__)
