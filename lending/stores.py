"""Record stores backed by a SQLite connection.

Each store exposes the four record operations the lending engine relies on:
``get_by_id``, ``get_by_filter``, ``insert`` and ``update``. Stores never
commit; the caller owns the transaction the connection is in.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Sequence, Type, TypeVar

from .errors import StoreFailure
from .models import (
    Book,
    BookCopy,
    CopyStatus,
    Librarian,
    Loan,
    Member,
    Record,
    Reservation,
    ReservationStatus,
    User,
)

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)


def _param(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class RecordStore(Generic[R]):
    model: Type[R]

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    # ------------------------- Low level ------------------------- #
    def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            return self.conn.execute(sql, [_param(p) for p in params])
        except sqlite3.Error as exc:
            logger.error(f"{self.model.table} store failed: {exc}")
            raise StoreFailure(f"Store operation on {self.model.table} failed: {exc}") from exc

    def select(self, where: str = "", params: Sequence[Any] = (), order_by: Optional[str] = None) -> List[R]:
        sql = f"SELECT * FROM {self.model.table}"
        if where:
            sql += f" WHERE {where}"
        sql += f" ORDER BY {order_by or self.model.key}"
        return [self.model.from_row(row) for row in self._execute(sql, params).fetchall()]

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = self._execute(sql, params).fetchone()
        return row[0] if row else None

    # ------------------------- Record operations ------------------------- #
    def get_by_id(self, record_id: Any) -> Optional[R]:
        rows = self.select(f"{self.model.key} = ?", [record_id])
        return rows[0] if rows else None

    def get_by_filter(self, order_by: Optional[str] = None, **fields: Any) -> List[R]:
        clauses: List[str] = []
        params: List[Any] = []
        for name, value in fields.items():
            if value is None:
                clauses.append(f"{name} IS NULL")
            elif isinstance(value, (list, tuple, set, frozenset)):
                values = list(value)
                clauses.append(f"{name} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
            else:
                clauses.append(f"{name} = ?")
                params.append(value)
        return self.select(" AND ".join(clauses), params, order_by)

    def insert(self, record: R) -> R:
        row = record.to_row()
        row.pop(self.model.key, None)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        cursor = self._execute(
            f"INSERT INTO {self.model.table} ({columns}) VALUES ({placeholders})", list(row.values())
        )
        setattr(record, self.model.key, cursor.lastrowid)
        return record

    def update(self, record: R) -> R:
        row = record.to_row()
        record_id = row.pop(self.model.key)
        assignments = ", ".join(f"{name} = ?" for name in row)
        cursor = self._execute(
            f"UPDATE {self.model.table} SET {assignments} WHERE {self.model.key} = ?",
            [*row.values(), record_id],
        )
        if cursor.rowcount != 1:
            raise StoreFailure(f"{self.model.table} record {record_id} was not updated")
        return record


class UserStore(RecordStore[User]):
    model = User

    def get_by_email(self, email: str) -> Optional[User]:
        rows = self.select("email = ? COLLATE NOCASE", [email.strip()])
        return rows[0] if rows else None


class MemberStore(RecordStore[Member]):
    model = Member

    def get_by_user(self, user_id: int) -> Optional[Member]:
        rows = self.get_by_filter(user_id=user_id)
        return rows[0] if rows else None


class LibrarianStore(RecordStore[Librarian]):
    model = Librarian

    def get_by_user(self, user_id: int) -> Optional[Librarian]:
        rows = self.get_by_filter(user_id=user_id)
        return rows[0] if rows else None


class BookStore(RecordStore[Book]):
    model = Book

    def get_by_isbn(self, isbn: str) -> Optional[Book]:
        rows = self.get_by_filter(isbn=isbn)
        return rows[0] if rows else None

    def search(self, title: Optional[str] = None, author: Optional[str] = None,
               category: Optional[str] = None) -> List[Book]:
        clauses = ["is_retired = 0"]
        params: List[Any] = []
        for column, term in (("title", title), ("author", author), ("category", category)):
            if term:
                clauses.append(f"{column} LIKE ?")
                params.append(f"%{term.strip()}%")
        return self.select(" AND ".join(clauses), params, order_by="title")

    def available(self) -> List[Book]:
        return self.select("is_retired = 0 AND available_copies > 0", order_by="title")

    def created_since(self, cutoff: datetime) -> List[Book]:
        return self.select("is_retired = 0 AND created_at >= ?", [cutoff], order_by="created_at DESC")


class CopyStore(RecordStore[BookCopy]):
    model = BookCopy

    def for_book(self, book_id: int) -> List[BookCopy]:
        return self.get_by_filter(book_id=book_id)

    def count_available(self, book_id: int) -> int:
        return self.scalar(
            "SELECT COUNT(*) FROM book_copies WHERE book_id = ? AND status = ?",
            [book_id, CopyStatus.AVAILABLE],
        )


class LoanStore(RecordStore[Loan]):
    model = Loan

    def active_for_member(self, member_id: int) -> List[Loan]:
        return self.get_by_filter(member_id=member_id, return_date=None, order_by="due_date")

    def count_active(self, member_id: int) -> int:
        return self.scalar(
            "SELECT COUNT(*) FROM loans WHERE member_id = ? AND return_date IS NULL", [member_id]
        )

    def history_for_member(self, member_id: int) -> List[Loan]:
        return self.get_by_filter(member_id=member_id, order_by="loan_date DESC, loan_id DESC")

    def overdue(self, now: datetime) -> List[Loan]:
        return self.select("return_date IS NULL AND due_date < ?", [now], order_by="due_date")

    def unpaid_fines(self, member_id: int) -> List[Loan]:
        return self.select("member_id = ? AND fine_amount_cents > 0 AND fine_paid = 0", [member_id])


class ReservationStore(RecordStore[Reservation]):
    model = Reservation

    def pending_for_book(self, book_id: int) -> List[Reservation]:
        return self.get_by_filter(book_id=book_id, status=ReservationStatus.PENDING, order_by="queue_position")

    def open_for_book(self, book_id: int) -> List[Reservation]:
        return self.get_by_filter(
            book_id=book_id,
            status=(ReservationStatus.PENDING.value, ReservationStatus.READY.value),
            order_by="queue_position",
        )

    def max_position(self, book_id: int) -> int:
        return self.scalar(
            "SELECT COALESCE(MAX(queue_position), 0) FROM reservations WHERE book_id = ?", [book_id]
        )

    def count_pending_for_member(self, member_id: int) -> int:
        return self.scalar(
            "SELECT COUNT(*) FROM reservations WHERE member_id = ? AND status = ?",
            [member_id, ReservationStatus.PENDING],
        )

    def for_member(self, member_id: int) -> List[Reservation]:
        return self.get_by_filter(member_id=member_id, order_by="reservation_date DESC, reservation_id DESC")

    def ready_holding(self, copy_id: int) -> Optional[Reservation]:
        rows = self.get_by_filter(assigned_copy_id=copy_id, status=ReservationStatus.READY)
        return rows[0] if rows else None

    def ready(self) -> List[Reservation]:
        return self.get_by_filter(status=ReservationStatus.READY, order_by="expiry_date")


class SettingsStore:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def all(self) -> Dict[str, str]:
        try:
            rows = self.conn.execute("SELECT setting_key, setting_value FROM library_settings").fetchall()
        except sqlite3.Error as exc:
            raise StoreFailure(f"Reading library settings failed: {exc}") from exc
        return {row["setting_key"]: row["setting_value"] for row in rows}

    def put(self, key: str, value: str, description: Optional[str] = None) -> None:
        try:
            self.conn.execute(
                "INSERT INTO library_settings (setting_key, setting_value, description) VALUES (?, ?, ?) "
                "ON CONFLICT(setting_key) DO UPDATE SET setting_value = excluded.setting_value",
                (key, value, description),
            )
        except sqlite3.Error as exc:
            raise StoreFailure(f"Writing library setting {key} failed: {exc}") from exc


class Stores:
    """All record stores bound to one connection (and so one transaction)."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.users = UserStore(conn)
        self.members = MemberStore(conn)
        self.librarians = LibrarianStore(conn)
        self.books = BookStore(conn)
        self.copies = CopyStore(conn)
        self.loans = LoanStore(conn)
        self.reservations = ReservationStore(conn)
        self.settings = SettingsStore(conn)
