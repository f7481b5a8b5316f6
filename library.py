import hashlib
import hmac
import logging
import secrets
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional

import database
from config import settings
from lending.errors import LendingError, NotFound, PolicyViolation, StoreFailure
from lending.loans import LoanLifecycle
from lending.models import (
    Book,
    BookCopy,
    CopyCondition,
    CopyStatus,
    Librarian,
    Loan,
    Member,
    MemberStatus,
    Reservation,
    ReservationStatus,
    Role,
    Session,
    User,
    from_cents,
)
from lending.policy import SETTING_KEYS, LendingPolicy, parse_setting
from lending.reservations import ReservationQueue
from lending.services.open_library import OpenLibraryClient
from lending.stores import Stores
from utils.validators import AmountValidator, ISBNValidator, TextValidator

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), PBKDF2_ITERATIONS)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    salt, _, _ = stored.partition("$")
    return hmac.compare_digest(hash_password(password, salt), stored)


@dataclass
class _Work:
    stores: Stores
    policy: LendingPolicy
    loans: LoanLifecycle
    queue: ReservationQueue
    now: datetime


class Library:
    """Library transaction coordinator.

    Every public operation receives an explicit ``Session`` and runs as one
    SQLite transaction: preconditions are read and validated first, then the
    loan/reservation rules compute the new state and all writes are committed
    together. A failure anywhere rolls the whole operation back.

    This class is the only writer of the cross-entity counters
    (``Book.available_copies``, ``Member.current_books_count`` and
    ``Member.fines_owed``).
    """

    def __init__(self, db_file: Optional[str] = None, clock: Optional[Callable[[], datetime]] = None,
                 policy: Optional[LendingPolicy] = None,
                 catalog: Optional[OpenLibraryClient] = None) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        self.clock = clock or datetime.now
        self.base_policy = policy or LendingPolicy.from_settings(settings)
        self.catalog = catalog
        database.initialize_database(self.db_file)

    # ------------------------- Unit of work ------------------------- #
    @contextmanager
    def _work(self, write: bool = True) -> Iterator[_Work]:
        opener = database.transaction if write else database.read_only
        try:
            with opener(self.db_file) as conn:
                stores = Stores(conn)
                policy = self.base_policy.with_overrides(stores.settings.all())
                yield _Work(stores, policy, LoanLifecycle(policy), ReservationQueue(policy), self.clock())
        except PolicyViolation as exc:
            logger.warning(f"Rejected: {exc.message}")
            raise
        except LendingError:
            raise
        except sqlite3.Error as exc:
            logger.error(f"Store failure, transaction rolled back: {exc}")
            raise StoreFailure(f"Store operation failed: {exc}") from exc

    # ------------------------- Access control ------------------------- #
    @staticmethod
    def _require_staff(session: Session) -> None:
        if not session.is_staff:
            raise PolicyViolation("Operation requires a librarian or admin session")

    @staticmethod
    def _require_admin(session: Session) -> None:
        if session.role is not Role.ADMIN:
            raise PolicyViolation("Operation requires an admin session")

    @staticmethod
    def _require_member_access(session: Session, member_id: int) -> None:
        if not session.is_staff and session.member_id != member_id:
            raise PolicyViolation("Members may only act on their own account")

    # ------------------------- Lookups ------------------------- #
    @staticmethod
    def _member(work: _Work, member_id: int) -> Member:
        member = work.stores.members.get_by_id(member_id)
        if member is None:
            raise NotFound.for_entity("Member", member_id)
        return member

    @staticmethod
    def _book(work: _Work, book_id: int) -> Book:
        book = work.stores.books.get_by_id(book_id)
        if book is None:
            raise NotFound.for_entity("Book", book_id)
        return book

    @staticmethod
    def _copy(work: _Work, copy_id: int) -> BookCopy:
        copy = work.stores.copies.get_by_id(copy_id)
        if copy is None:
            raise NotFound.for_entity("Book copy", copy_id)
        return copy

    @staticmethod
    def _loan(work: _Work, loan_id: int) -> Loan:
        loan = work.stores.loans.get_by_id(loan_id)
        if loan is None:
            raise NotFound.for_entity("Loan", loan_id)
        return loan

    @staticmethod
    def _reservation(work: _Work, reservation_id: int) -> Reservation:
        reservation = work.stores.reservations.get_by_id(reservation_id)
        if reservation is None:
            raise NotFound.for_entity("Reservation", reservation_id)
        return reservation

    # ------------------------- Copy accounting ------------------------- #
    @staticmethod
    def _move_copy(book: Book, copy: BookCopy, status: CopyStatus) -> None:
        """Change a copy's status and keep ``book.available_copies`` in step."""
        was_available = copy.status is CopyStatus.AVAILABLE
        copy.status = status
        book.available_copies += int(status is CopyStatus.AVAILABLE) - int(was_available)

    def _offer_copy(self, work: _Work, book: Book, copy: BookCopy) -> Optional[Reservation]:
        """Hand a freed copy to the head of the book's queue, if anyone is waiting."""
        head = work.queue.select_next(work.stores.reservations.pending_for_book(book.book_id))
        if head is None:
            return None
        self._move_copy(book, copy, CopyStatus.RESERVED)
        work.queue.mark_ready(head, copy, work.now)
        work.stores.reservations.update(head)
        return head

    # ------------------------- Authentication ------------------------- #
    def login(self, email: str, password: str) -> Session:
        with self._work(write=False) as work:
            user = work.stores.users.get_by_email(email or "")
            if user is None or not verify_password(password or "", user.password_hash):
                raise PolicyViolation("Invalid email or password")
            if not user.is_active:
                raise PolicyViolation(f"Account {user.email} is deactivated")
            member = work.stores.members.get_by_user(user.user_id)
            librarian = work.stores.librarians.get_by_user(user.user_id)
            logger.info(f"User {user.user_id} logged in as {user.role.value}")
            return Session(
                user_id=user.user_id,
                role=user.role,
                member_id=member.member_id if member else None,
                librarian_id=librarian.librarian_id if librarian else None,
                issued_at=work.now,
            )

    # ------------------------- Registration ------------------------- #
    def _new_user(self, work: _Work, email: str, password: str, first_name: str, last_name: str,
                  role: Role, **contact: Optional[str]) -> User:
        if not TextValidator.validate_email(email):
            raise PolicyViolation(f"Invalid email address '{email}'")
        if not (TextValidator.validate_name(first_name) and TextValidator.validate_name(last_name)):
            raise PolicyViolation("First and last name are required")
        if not password or len(password) < 6:
            raise PolicyViolation("Password must be at least 6 characters")
        if work.stores.users.get_by_email(email) is not None:
            raise PolicyViolation(f"Email {email} is already registered")
        user = User(
            email=email.strip(),
            password_hash=hash_password(password),
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            role=role,
            registration_date=work.now,
            **contact,
        )
        return work.stores.users.insert(user)

    def register_member(self, session: Session, email: str, password: str, first_name: str, last_name: str,
                        phone: Optional[str] = None, address: Optional[str] = None, city: Optional[str] = None,
                        postal_code: Optional[str] = None, max_books_allowed: Optional[int] = None) -> Member:
        """Create the identity record and the member profile together."""
        self._require_staff(session)
        if max_books_allowed is not None and max_books_allowed < 0:
            raise PolicyViolation("Borrowing limit cannot be negative")
        with self._work() as work:
            user = self._new_user(work, email, password, first_name, last_name, Role.MEMBER,
                                  phone=phone, address=address, city=city, postal_code=postal_code)
            if max_books_allowed is None:
                max_books_allowed = work.policy.max_books_per_member
            member = Member(
                user_id=user.user_id,
                card_number=f"M{user.user_id:06d}",
                status=MemberStatus.ACTIVE,
                max_books_allowed=max_books_allowed,
                membership_date=work.now,
            )
            work.stores.members.insert(member)
            logger.info(f"Registered member {member.member_id} ({member.card_number})")
            return member

    def register_librarian(self, session: Session, email: str, password: str, first_name: str, last_name: str,
                           employee_id: str, department: Optional[str] = None, is_admin: bool = False,
                           phone: Optional[str] = None) -> Librarian:
        self._require_admin(session)
        if not employee_id or not employee_id.strip():
            raise PolicyViolation("Employee ID is required")
        with self._work() as work:
            role = Role.ADMIN if is_admin else Role.LIBRARIAN
            user = self._new_user(work, email, password, first_name, last_name, role, phone=phone)
            librarian = Librarian(
                user_id=user.user_id,
                employee_id=employee_id.strip(),
                department=department,
                hire_date=work.now,
                is_admin=is_admin,
            )
            work.stores.librarians.insert(librarian)
            logger.info(f"Registered librarian {librarian.librarian_id} ({role.value})")
            return librarian

    # ------------------------- Member administration ------------------------- #
    def set_member_status(self, session: Session, member_id: int, status: MemberStatus) -> Member:
        self._require_staff(session)
        with self._work() as work:
            member = self._member(work, member_id)
            member.status = status
            work.stores.members.update(member)
            logger.info(f"Member {member_id} is now {status.value}")
            return member

    def suspend_member(self, session: Session, member_id: int) -> Member:
        return self.set_member_status(session, member_id, MemberStatus.SUSPENDED)

    def activate_member(self, session: Session, member_id: int) -> Member:
        return self.set_member_status(session, member_id, MemberStatus.ACTIVE)

    def update_member(self, session: Session, member_id: int, *, phone: Optional[str] = None,
                      address: Optional[str] = None, city: Optional[str] = None,
                      postal_code: Optional[str] = None, max_books_allowed: Optional[int] = None) -> Member:
        self._require_member_access(session, member_id)
        if max_books_allowed is not None and not session.is_staff:
            raise PolicyViolation("Only staff may change a member's borrowing limit")
        if max_books_allowed is not None and max_books_allowed < 0:
            raise PolicyViolation("Borrowing limit cannot be negative")
        with self._work() as work:
            member = self._member(work, member_id)
            user = work.stores.users.get_by_id(member.user_id)
            if user is None:
                raise NotFound.for_entity("User", member.user_id)
            for name, value in (("phone", phone), ("address", address), ("city", city),
                                ("postal_code", postal_code)):
                if value is not None:
                    setattr(user, name, value.strip())
            work.stores.users.update(user)
            if max_books_allowed is not None:
                member.max_books_allowed = max_books_allowed
                work.stores.members.update(member)
            return member

    # ------------------------- Catalog intake ------------------------- #
    def _normalized_isbn(self, isbn: str) -> str:
        norm = ISBNValidator.normalize_isbn(isbn)
        if not ISBNValidator.is_valid_isbn(norm):
            raise PolicyViolation(f"Invalid ISBN '{isbn}'")
        return norm

    @staticmethod
    def _new_copies(work: _Work, book: Book, count: int) -> List[BookCopy]:
        """Create ``count`` copies with barcodes continuing the book's sequence."""
        copies: List[BookCopy] = []
        for seq in range(book.total_copies + 1, book.total_copies + count + 1):
            copy = BookCopy(
                book_id=book.book_id,
                barcode=f"{book.isbn}-{seq:03d}",
                status=CopyStatus.AVAILABLE,
                condition=CopyCondition.NEW,
                acquisition_date=work.now,
            )
            copies.append(work.stores.copies.insert(copy))
        book.total_copies += count
        book.available_copies += count
        return copies

    def add_book(self, session: Session, title: str, isbn: str, author: str = "",
                 publisher: Optional[str] = None, category: Optional[str] = None,
                 publication_year: Optional[int] = None, language: str = "English",
                 description: Optional[str] = None, copy_count: int = 1) -> Book:
        """Catalog a new book and create ``copy_count`` physical copies of it."""
        self._require_staff(session)
        norm = self._normalized_isbn(isbn)
        if not TextValidator.validate_title(title):
            raise PolicyViolation("Title is required")
        if copy_count < 0:
            raise PolicyViolation("Copy count cannot be negative")
        with self._work() as work:
            if work.stores.books.get_by_isbn(norm) is not None:
                raise PolicyViolation(f"Book with ISBN {norm} already exists")
            book = work.stores.books.insert(Book(
                isbn=norm,
                title=title.strip(),
                author=(author or "").strip(),
                publisher=publisher,
                category=category,
                publication_year=publication_year,
                language=language or "English",
                description=description,
                created_at=work.now,
            ))
            self._new_copies(work, book, copy_count)
            work.stores.books.update(book)
            logger.info(f"Added book {book.book_id} '{book.title}' with {copy_count} copies")
            return book

    def add_book_by_isbn(self, session: Session, isbn: str, copy_count: int = 1) -> Book:
        """Fetch metadata from Open Library by ISBN, then catalog the book."""
        self._require_staff(session)
        norm = self._normalized_isbn(isbn)
        if not settings.enable_open_library:
            raise PolicyViolation("Open Library lookups are disabled")
        # the lookup runs before the transaction so no write lock is held during I/O
        catalog = self.catalog or OpenLibraryClient()
        details = catalog.lookup(norm)
        if not details:
            raise NotFound(f"ISBN {norm} not found in Open Library")
        return self.add_book(session, isbn=norm, copy_count=copy_count, **details)

    def add_copies(self, session: Session, book_id: int, count: int) -> List[BookCopy]:
        self._require_staff(session)
        if count < 1:
            raise PolicyViolation("At least one copy must be added")
        with self._work() as work:
            book = self._book(work, book_id)
            if book.is_retired:
                raise PolicyViolation(f"Book {book_id} is retired")
            copies = self._new_copies(work, book, count)
            # freshly added copies go to waiting readers first
            for copy in copies:
                if self._offer_copy(work, book, copy) is not None:
                    work.stores.copies.update(copy)
            work.stores.books.update(book)
            return copies

    def update_book(self, session: Session, book_id: int, **changes: Any) -> Book:
        self._require_staff(session)
        editable = {"title", "author", "publisher", "category", "publication_year", "language", "description"}
        unknown = set(changes) - editable
        if unknown:
            raise PolicyViolation(f"Cannot update book field(s): {', '.join(sorted(unknown))}")
        if "title" in changes and not TextValidator.validate_title(changes["title"]):
            raise PolicyViolation("Title is required")
        with self._work() as work:
            book = self._book(work, book_id)
            for name, value in changes.items():
                if value is not None:
                    setattr(book, name, value.strip() if isinstance(value, str) else value)
            return work.stores.books.update(book)

    def retire_book(self, session: Session, book_id: int) -> Book:
        self._require_staff(session)
        with self._work() as work:
            book = self._book(work, book_id)
            book.is_retired = True
            logger.info(f"Book {book_id} retired from circulation")
            return work.stores.books.update(book)

    # ------------------------- Loans ------------------------- #
    def issue_loan(self, session: Session, member_id: int, copy_id: int) -> Loan:
        """Lend ``copy_id`` to ``member_id``.

        A copy held for this member by a Ready reservation may be lent too;
        the reservation is then fulfilled.
        """
        self._require_staff(session)
        with self._work() as work:
            member = self._member(work, member_id)
            copy = self._copy(work, copy_id)
            book = self._book(work, copy.book_id)
            pickup = None
            if copy.status is CopyStatus.RESERVED:
                held = work.stores.reservations.ready_holding(copy.copy_id)
                if held is not None and work.loans.is_pickup(held, member, copy):
                    pickup = held
            work.loans.check_issue(member, copy, work.stores.loans.count_active(member_id), pickup)

            loan = work.stores.loans.insert(work.loans.open_loan(member, copy, work.now, session.librarian_id))
            if pickup is not None:
                work.stores.reservations.update(work.queue.fulfill(pickup, work.now))
            self._move_copy(book, copy, CopyStatus.BORROWED)
            copy.last_borrowed_date = work.now
            work.stores.copies.update(copy)
            work.stores.books.update(book)
            member.current_books_count += 1
            work.stores.members.update(member)
            logger.info(f"Loan {loan.loan_id}: copy {copy_id} to member {member_id}, due {loan.due_date:%Y-%m-%d}")
            return loan

    def renew_loan(self, session: Session, loan_id: int) -> Loan:
        with self._work() as work:
            loan = self._loan(work, loan_id)
            self._require_member_access(session, loan.member_id)
            copy = self._copy(work, loan.copy_id)
            waiting = len(work.stores.reservations.pending_for_book(copy.book_id))
            work.loans.check_renewal(loan, waiting)
            work.stores.loans.update(work.loans.renew(loan))
            logger.info(f"Loan {loan_id} renewed ({loan.renewal_count}), due {loan.due_date:%Y-%m-%d}")
            return loan

    def return_loan(self, session: Session, loan_id: int) -> Loan:
        """Check a copy back in, charge any overdue fine and serve the reservation queue."""
        self._require_staff(session)
        with self._work() as work:
            loan = self._loan(work, loan_id)
            work.loans.check_return(loan)
            member = self._member(work, loan.member_id)
            copy = self._copy(work, loan.copy_id)
            book = self._book(work, copy.book_id)

            fine = work.loans.close(loan, work.now)
            work.stores.loans.update(loan)
            if fine > 0:
                member.fines_owed += fine
            self._move_copy(book, copy, CopyStatus.AVAILABLE)
            member.current_books_count = max(0, member.current_books_count - 1)
            ready = self._offer_copy(work, book, copy)

            work.stores.copies.update(copy)
            work.stores.books.update(book)
            work.stores.members.update(member)
            logger.info(
                f"Loan {loan_id} returned"
                + (f", fine {fine}" if fine > 0 else "")
                + (f", copy held for reservation {ready.reservation_id}" if ready else "")
            )
            return loan

    # ------------------------- Reservations ------------------------- #
    def request_reservation(self, session: Session, member_id: int, book_id: int) -> Reservation:
        self._require_member_access(session, member_id)
        with self._work() as work:
            member = self._member(work, member_id)
            book = self._book(work, book_id)
            work.queue.check_request(member, book, work.stores.reservations.count_pending_for_member(member_id))
            position = work.stores.reservations.max_position(book_id) + 1
            reservation = work.stores.reservations.insert(work.queue.open(member, book, position, work.now))
            logger.info(f"Reservation {reservation.reservation_id}: member {member_id} queued #{position} for book {book_id}")
            return reservation

    def approve_reservation(self, session: Session, reservation_id: int, copy_id: int) -> Reservation:
        self._require_staff(session)
        with self._work() as work:
            reservation = self._reservation(work, reservation_id)
            copy = self._copy(work, copy_id)
            work.queue.check_approval(reservation, copy)
            book = self._book(work, reservation.book_id)
            self._move_copy(book, copy, CopyStatus.RESERVED)
            work.queue.mark_ready(reservation, copy, work.now)
            work.stores.reservations.update(reservation)
            work.stores.copies.update(copy)
            work.stores.books.update(book)
            return reservation

    def cancel_reservation(self, session: Session, reservation_id: int) -> Reservation:
        with self._work() as work:
            reservation = self._reservation(work, reservation_id)
            self._require_member_access(session, reservation.member_id)
            held_copy_id = reservation.assigned_copy_id if reservation.status is ReservationStatus.READY else None
            work.stores.reservations.update(work.queue.cancel(reservation))
            if held_copy_id is not None:
                self._release_copy(work, held_copy_id)
            logger.info(f"Reservation {reservation_id} cancelled")
            return reservation

    def _release_copy(self, work: _Work, copy_id: int) -> None:
        copy = self._copy(work, copy_id)
        book = self._book(work, copy.book_id)
        self._move_copy(book, copy, CopyStatus.AVAILABLE)
        self._offer_copy(work, book, copy)
        work.stores.copies.update(copy)
        work.stores.books.update(book)

    def expire_reservations(self, session: Session) -> List[Reservation]:
        """Expire Ready reservations past their pickup date and pass the copies on.

        Meant to be triggered by an external scheduler (CLI or API).
        """
        self._require_staff(session)
        with self._work() as work:
            expired = work.queue.lapsed(work.stores.reservations.ready(), work.now)
            for reservation in expired:
                copy_id = reservation.assigned_copy_id
                work.stores.reservations.update(work.queue.expire(reservation))
                if copy_id is not None:
                    self._release_copy(work, copy_id)
            if expired:
                logger.info(f"Expired {len(expired)} unclaimed reservation(s)")
            return expired

    # ------------------------- Fines ------------------------- #
    def pay_fine(self, session: Session, member_id: int, amount: Any) -> Member:
        """Reduce the member's balance; paying more than is owed leaves it at zero."""
        self._require_member_access(session, member_id)
        value = AmountValidator.parse_amount(amount)
        if value is None or value <= 0:
            raise PolicyViolation(f"Payment amount must be a positive number, got '{amount}'")
        with self._work() as work:
            member = self._member(work, member_id)
            member.fines_owed = max(Decimal("0.00"), member.fines_owed - value)
            work.stores.members.update(member)
            if member.fines_owed == 0:
                for loan in work.stores.loans.unpaid_fines(member_id):
                    loan.fine_paid = True
                    work.stores.loans.update(loan)
            logger.info(f"Member {member_id} paid {value}, now owes {member.fines_owed}")
            return member

    # ------------------------- Settings ------------------------- #
    def get_policy(self) -> LendingPolicy:
        with self._work(write=False) as work:
            return work.policy

    def update_setting(self, session: Session, key: str, value: Any) -> LendingPolicy:
        self._require_staff(session)
        parse_setting(key, str(value))
        with self._work() as work:
            work.stores.settings.put(key, str(value), description=SETTING_KEYS[key])
            logger.info(f"Library setting {key} set to {value}")
            return work.policy.with_overrides({key: str(value)})

    # ------------------------- Queries ------------------------- #
    def get_member(self, session: Session, member_id: int) -> Member:
        self._require_member_access(session, member_id)
        with self._work(write=False) as work:
            return self._member(work, member_id)

    def get_loan(self, session: Session, loan_id: int) -> Loan:
        with self._work(write=False) as work:
            loan = self._loan(work, loan_id)
            self._require_member_access(session, loan.member_id)
            return loan

    def get_member_loan_history(self, session: Session, member_id: int) -> List[Loan]:
        self._require_member_access(session, member_id)
        with self._work(write=False) as work:
            self._member(work, member_id)
            return work.stores.loans.history_for_member(member_id)

    def get_member_active_loans(self, session: Session, member_id: int) -> List[Loan]:
        self._require_member_access(session, member_id)
        with self._work(write=False) as work:
            self._member(work, member_id)
            return work.stores.loans.active_for_member(member_id)

    def get_member_reservations(self, session: Session, member_id: int) -> List[Reservation]:
        self._require_member_access(session, member_id)
        with self._work(write=False) as work:
            self._member(work, member_id)
            return work.stores.reservations.for_member(member_id)

    def get_overdue_loans(self, session: Session) -> List[Dict[str, Any]]:
        """Unreturned loans past due, each with its provisional fine as of now."""
        self._require_staff(session)
        with self._work(write=False) as work:
            return [
                {
                    "loan": loan,
                    "days_overdue": loan.days_overdue(work.now),
                    "provisional_fine": work.loans.provisional_fine(loan, work.now),
                }
                for loan in work.stores.loans.overdue(work.now)
            ]

    def get_book(self, book_id: int) -> Book:
        with self._work(write=False) as work:
            return self._book(work, book_id)

    def get_copies(self, book_id: int) -> List[BookCopy]:
        with self._work(write=False) as work:
            self._book(work, book_id)
            return work.stores.copies.for_book(book_id)

    def get_book_queue(self, book_id: int) -> List[Reservation]:
        with self._work(write=False) as work:
            self._book(work, book_id)
            return work.stores.reservations.open_for_book(book_id)

    def search_books(self, title: Optional[str] = None, author: Optional[str] = None,
                     category: Optional[str] = None) -> List[Book]:
        with self._work(write=False) as work:
            return work.stores.books.search(title, author, category)

    def get_available_books(self) -> List[Book]:
        with self._work(write=False) as work:
            return work.stores.books.available()

    def get_new_arrivals(self, days: int) -> List[Book]:
        if days < 0:
            raise PolicyViolation("Days must not be negative")
        with self._work(write=False) as work:
            return work.stores.books.created_since(work.now - timedelta(days=days))

    def get_statistics(self) -> Dict[str, Any]:
        with self._work(write=False) as work:
            s = work.stores.books
            return {
                "total_books": s.scalar("SELECT COUNT(*) FROM books"),
                "total_copies": s.scalar("SELECT COALESCE(SUM(total_copies), 0) FROM books"),
                "available_copies": s.scalar("SELECT COALESCE(SUM(available_copies), 0) FROM books"),
                "total_members": s.scalar("SELECT COUNT(*) FROM members"),
                "active_loans": s.scalar("SELECT COUNT(*) FROM loans WHERE return_date IS NULL"),
                "overdue_loans": len(work.stores.loans.overdue(work.now)),
                "outstanding_fines": str(from_cents(
                    s.scalar("SELECT COALESCE(SUM(fines_owed_cents), 0) FROM members")
                )),
                "pending_reservations": s.scalar(
                    "SELECT COUNT(*) FROM reservations WHERE status = ?", [ReservationStatus.PENDING]
                ),
            }

    def audit(self) -> List[str]:
        """Report every book or member whose stored counters disagree with the records."""
        problems: List[str] = []
        with self._work(write=False) as work:
            for book in work.stores.books.select():
                available = work.stores.copies.count_available(book.book_id)
                if book.available_copies != available:
                    problems.append(
                        f"Book {book.book_id}: available_copies={book.available_copies}, "
                        f"Available copies on shelf={available}"
                    )
            for member in work.stores.members.select():
                active = work.stores.loans.count_active(member.member_id)
                if member.current_books_count != active:
                    problems.append(
                        f"Member {member.member_id}: current_books_count={member.current_books_count}, "
                        f"unreturned loans={active}"
                    )
        return problems

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
