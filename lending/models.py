from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def from_cents(cents: Optional[int]) -> Decimal:
    return (Decimal(cents or 0) / 100).quantize(CENT)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Role(Enum):
    MEMBER = "Member"
    LIBRARIAN = "Librarian"
    ADMIN = "Admin"


class MemberStatus(Enum):
    ACTIVE = "Active"
    SUSPENDED = "Suspended"
    EXPIRED = "Expired"


class CopyStatus(Enum):
    AVAILABLE = "Available"
    BORROWED = "Borrowed"
    RESERVED = "Reserved"
    MAINTENANCE = "Maintenance"
    LOST = "Lost"


class CopyCondition(Enum):
    NEW = "New"
    GOOD = "Good"
    FAIR = "Fair"
    POOR = "Poor"
    DAMAGED = "Damaged"


class LoanStatus(Enum):
    ACTIVE = "Active"
    RETURNED = "Returned"
    OVERDUE = "Overdue"
    LOST = "Lost"


class ReservationStatus(Enum):
    PENDING = "Pending"
    READY = "Ready"
    FULFILLED = "Fulfilled"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"


class Record:
    """Shared row <-> dataclass conversion for the entities below.

    Enum fields are stored by value, ``Decimal`` amounts as integer cents in a
    ``<name>_cents`` column and datetimes as ISO-8601 text.
    """

    table: str = ""
    key: str = ""
    enums: Dict[str, type] = {}
    money: tuple = ()
    dates: tuple = ()
    flags: tuple = ()

    def to_row(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {}
        for name, value in asdict(self).items():
            if name in self.money:
                row[f"{name}_cents"] = to_cents(value)
            elif name in self.dates:
                row[name] = to_iso(value)
            elif name in self.enums:
                row[name] = value.value
            elif name in self.flags:
                row[name] = int(bool(value))
            else:
                row[name] = value
        return row

    @classmethod
    def from_row(cls, row: Any):
        data = dict(row)
        kwargs: Dict[str, Any] = {}
        for name in cls.__dataclass_fields__:  # type: ignore[attr-defined]
            if name in cls.money:
                kwargs[name] = from_cents(data.get(f"{name}_cents"))
            elif name in cls.dates:
                kwargs[name] = from_iso(data.get(name))
            elif name in cls.enums:
                kwargs[name] = cls.enums[name](data[name])
            elif name in cls.flags:
                kwargs[name] = bool(data.get(name))
            else:
                kwargs[name] = data.get(name)
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation used by the API and CLI."""
        out: Dict[str, Any] = {}
        for name, value in asdict(self).items():
            if name == "password_hash":
                continue
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, datetime):
                value = value.isoformat()
            out[name] = value
        return out


@dataclass
class User(Record):
    email: str
    password_hash: str
    first_name: str
    last_name: str
    role: Role = Role.MEMBER
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    is_active: bool = True
    registration_date: Optional[datetime] = None
    user_id: Optional[int] = None

    table = "users"
    key = "user_id"
    enums = {"role": Role}
    dates = ("registration_date",)
    flags = ("is_active",)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


@dataclass
class Member(Record):
    user_id: int
    card_number: str = ""
    status: MemberStatus = MemberStatus.ACTIVE
    fines_owed: Decimal = Decimal("0.00")
    current_books_count: int = 0
    max_books_allowed: int = 3
    membership_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    member_id: Optional[int] = None

    table = "members"
    key = "member_id"
    enums = {"status": MemberStatus}
    money = ("fines_owed",)
    dates = ("membership_date", "expiry_date")

    @property
    def is_active(self) -> bool:
        return self.status is MemberStatus.ACTIVE


@dataclass
class Librarian(Record):
    user_id: int
    employee_id: str = ""
    department: Optional[str] = None
    hire_date: Optional[datetime] = None
    is_admin: bool = False
    librarian_id: Optional[int] = None

    table = "librarians"
    key = "librarian_id"
    dates = ("hire_date",)
    flags = ("is_admin",)


@dataclass
class Book(Record):
    isbn: str
    title: str
    author: str = ""
    publisher: Optional[str] = None
    category: Optional[str] = None
    publication_year: Optional[int] = None
    language: str = "English"
    description: Optional[str] = None
    total_copies: int = 0
    available_copies: int = 0
    is_retired: bool = False
    created_at: Optional[datetime] = None
    book_id: Optional[int] = None

    table = "books"
    key = "book_id"
    dates = ("created_at",)
    flags = ("is_retired",)

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"


@dataclass
class BookCopy(Record):
    book_id: int
    barcode: str
    status: CopyStatus = CopyStatus.AVAILABLE
    condition: CopyCondition = CopyCondition.NEW
    acquisition_date: Optional[datetime] = None
    last_borrowed_date: Optional[datetime] = None
    copy_id: Optional[int] = None

    table = "book_copies"
    key = "copy_id"
    enums = {"status": CopyStatus, "condition": CopyCondition}
    dates = ("acquisition_date", "last_borrowed_date")


@dataclass
class Loan(Record):
    member_id: int
    copy_id: int
    loan_date: datetime
    due_date: datetime
    status: LoanStatus = LoanStatus.ACTIVE
    return_date: Optional[datetime] = None
    fine_amount: Decimal = Decimal("0.00")
    fine_paid: bool = False
    renewal_count: int = 0
    librarian_id: Optional[int] = None
    loan_id: Optional[int] = None

    table = "loans"
    key = "loan_id"
    enums = {"status": LoanStatus}
    money = ("fine_amount",)
    dates = ("loan_date", "due_date", "return_date")
    flags = ("fine_paid",)

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        return self.return_date is None and now > self.due_date

    def days_overdue(self, now: Optional[datetime] = None) -> int:
        end = self.return_date or now or datetime.now()
        return max(0, (end - self.due_date).days)


@dataclass
class Reservation(Record):
    member_id: int
    book_id: int
    queue_position: int
    reservation_date: datetime
    status: ReservationStatus = ReservationStatus.PENDING
    assigned_copy_id: Optional[int] = None
    available_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    fulfilled_date: Optional[datetime] = None
    reservation_id: Optional[int] = None

    table = "reservations"
    key = "reservation_id"
    enums = {"status": ReservationStatus}
    dates = ("reservation_date", "available_date", "expiry_date", "fulfilled_date")

    @property
    def is_open(self) -> bool:
        return self.status in (ReservationStatus.PENDING, ReservationStatus.READY)


@dataclass
class Session:
    """Explicit caller context handed to every library operation."""

    user_id: Optional[int]
    role: Role
    member_id: Optional[int] = None
    librarian_id: Optional[int] = None
    issued_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def system(cls) -> "Session":
        """Operator context used by the CLI and the reservation-expiry scheduler."""
        return cls(user_id=None, role=Role.ADMIN)

    @property
    def is_staff(self) -> bool:
        return self.role in (Role.LIBRARIAN, Role.ADMIN)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "role": self.role.value,
            "member_id": self.member_id,
            "librarian_id": self.librarian_id,
            "issued_at": self.issued_at.isoformat(),
        }
