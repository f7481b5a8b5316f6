"""Lending Engine - Core Package

Business rules for lending and reservations:
- Domain records and status enums (models.py)
- Error kinds and the operation result type (errors.py)
- Lending policy and library settings (policy.py)
- Overdue fine computation (fines.py)
- Loan lifecycle rules (loans.py)
- Reservation queue rules (reservations.py)
- SQLite record stores (stores.py)
"""

from .errors import (
    ErrorKind,
    ExternalServiceError,
    LendingError,
    NotFound,
    OperationResult,
    PolicyViolation,
    StoreFailure,
)
from .fines import compute_fine, days_between
from .loans import LoanLifecycle
from .models import (
    Book,
    BookCopy,
    CopyCondition,
    CopyStatus,
    Librarian,
    Loan,
    LoanStatus,
    Member,
    MemberStatus,
    Reservation,
    ReservationStatus,
    Role,
    Session,
    User,
)
from .policy import LendingPolicy
from .reservations import ReservationQueue

__all__ = [
    # errors
    "ErrorKind",
    "ExternalServiceError",
    "LendingError",
    "NotFound",
    "OperationResult",
    "PolicyViolation",
    "StoreFailure",
    # rules
    "compute_fine",
    "days_between",
    "LendingPolicy",
    "LoanLifecycle",
    "ReservationQueue",
    # models
    "Book",
    "BookCopy",
    "CopyCondition",
    "CopyStatus",
    "Librarian",
    "Loan",
    "LoanStatus",
    "Member",
    "MemberStatus",
    "Reservation",
    "ReservationStatus",
    "Role",
    "Session",
    "User",
]
