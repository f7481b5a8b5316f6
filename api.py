import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from threading import RLock
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from config import settings
from library import Library
from lending.errors import ErrorKind, ExternalServiceError, LendingError, OperationResult
from lending.models import Session

logger = logging.getLogger(__name__)

library = Library(db_file=os.getenv("LIBRARY_DB_FILE"))

app = FastAPI(title=settings.app_name, version=settings.app_version)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Error translation ---
STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.POLICY_VIOLATION: 409,
    ErrorKind.STORE_FAILURE: 503,
}


@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError):
    return JSONResponse(status_code=STATUS_BY_KIND[exc.kind], content=OperationResult.failure(exc).to_dict())


@app.exception_handler(ExternalServiceError)
async def external_service_error_handler(request: Request, exc: ExternalServiceError):
    return JSONResponse(
        status_code=502,
        content={"success": False, "error_kind": "ExternalServiceError", "detail": str(exc)},
    )


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")
optional_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that validates the API key on mutating routes."""
    if api_key == settings.api_key:
        return api_key
    else:
        raise HTTPException(
            status_code=403,
            detail="Could not validate credentials",
        )


# --- Sessions ---
# token -> (session, expiry); tokens live only as long as the process
_sessions: Dict[str, Tuple[Session, datetime]] = {}
_sessions_lock = RLock()


def issue_token(session: Session) -> str:
    token = secrets.token_urlsafe(32)
    now = datetime.now()
    expires = now + timedelta(minutes=settings.session_ttl_minutes)
    with _sessions_lock:
        for stale in [key for key, (_, expiry) in _sessions.items() if expiry < now]:
            del _sessions[stale]
        _sessions[token] = (session, expires)
    return token


def current_session(
    token: Optional[str] = Header(None, alias="X-Session-Token"),
    api_key: Optional[str] = Security(optional_api_key_header),
) -> Session:
    """Resolve the caller: a logged-in user by token, else the operator holding the API key."""
    if token:
        with _sessions_lock:
            entry = _sessions.get(token)
            if entry is not None and entry[1] < datetime.now():
                del _sessions[token]
                entry = None
        if entry is None:
            raise HTTPException(status_code=401, detail="Invalid or expired session token")
        return entry[0]
    if api_key == settings.api_key:
        return Session.system()
    raise HTTPException(status_code=401, detail="Session token required")


# --- Models ---
class LoginModel(BaseModel):
    email: str
    password: str


class MemberCreateModel(BaseModel):
    email: str
    password: str
    first_name: str
    last_name: str
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    postal_code: str | None = None
    max_books_allowed: int | None = Field(default=None, ge=0)


class MemberUpdateModel(BaseModel):
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    postal_code: str | None = None
    max_books_allowed: int | None = Field(default=None, ge=0)


class LibrarianCreateModel(BaseModel):
    email: str
    password: str
    first_name: str
    last_name: str
    employee_id: str
    department: str | None = None
    is_admin: bool = False
    phone: str | None = None


class BookCreateModel(BaseModel):
    isbn: str
    title: str
    author: str = ""
    publisher: str | None = None
    category: str | None = None
    publication_year: int | None = None
    language: str = "English"
    description: str | None = None
    copy_count: int = Field(default=1, ge=0, description="Number of physical copies to create")


class IsbnIntakeModel(BaseModel):
    isbn: str
    copy_count: int = Field(default=1, ge=0)


class BookUpdateModel(BaseModel):
    title: str | None = None
    author: str | None = None
    publisher: str | None = None
    category: str | None = None
    publication_year: int | None = None
    language: str | None = None
    description: str | None = None


class CopiesModel(BaseModel):
    count: int = Field(default=1, ge=1)


class LoanCreateModel(BaseModel):
    member_id: int
    copy_id: int


class ReservationCreateModel(BaseModel):
    member_id: int
    book_id: int


class ApproveModel(BaseModel):
    copy_id: int


class PaymentModel(BaseModel):
    amount: Decimal


class SettingModel(BaseModel):
    key: str
    value: str


def _dicts(records: List[Any]) -> List[Dict[str, Any]]:
    return [r.to_dict() for r in records]


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health endpoint; reports whether the store answers."""
    db_ok = True
    total_books = None
    try:
        total_books = library.get_statistics()["total_books"]
    except LendingError:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.app_version,
        "db": db_ok,
        "total_books": total_books,
        "services": {"open_library": settings.enable_open_library},
    }


# --- Auth ---
@app.post("/auth/login")
def login(payload: LoginModel):
    """Exchange credentials for a session token sent back as X-Session-Token."""
    session = library.login(payload.email, payload.password)
    return {"token": issue_token(session), "session": session.to_dict()}


# --- Members ---
@app.post("/members", dependencies=[Depends(get_api_key)], status_code=201)
def register_member(payload: MemberCreateModel, session: Session = Depends(current_session)):
    member = library.register_member(session, **payload.model_dump())
    return member.to_dict()


@app.post("/librarians", dependencies=[Depends(get_api_key)], status_code=201)
def register_librarian(payload: LibrarianCreateModel, session: Session = Depends(current_session)):
    librarian = library.register_librarian(session, **payload.model_dump())
    return librarian.to_dict()


@app.get("/members/{member_id}")
def get_member(member_id: int, session: Session = Depends(current_session)):
    return library.get_member(session, member_id).to_dict()


@app.patch("/members/{member_id}")
def update_member(member_id: int, payload: MemberUpdateModel, session: Session = Depends(current_session)):
    return library.update_member(session, member_id, **payload.model_dump()).to_dict()


@app.post("/members/{member_id}/suspend", dependencies=[Depends(get_api_key)])
def suspend_member(member_id: int, session: Session = Depends(current_session)):
    return library.suspend_member(session, member_id).to_dict()


@app.post("/members/{member_id}/activate", dependencies=[Depends(get_api_key)])
def activate_member(member_id: int, session: Session = Depends(current_session)):
    return library.activate_member(session, member_id).to_dict()


@app.get("/members/{member_id}/loans")
def member_loans(member_id: int, active: bool = Query(False, description="Only unreturned loans"),
                 session: Session = Depends(current_session)):
    if active:
        return _dicts(library.get_member_active_loans(session, member_id))
    return _dicts(library.get_member_loan_history(session, member_id))


@app.get("/members/{member_id}/reservations")
def member_reservations(member_id: int, session: Session = Depends(current_session)):
    return _dicts(library.get_member_reservations(session, member_id))


@app.post("/members/{member_id}/fines/pay")
def pay_fine(member_id: int, payload: PaymentModel, session: Session = Depends(current_session)):
    return library.pay_fine(session, member_id, payload.amount).to_dict()


# --- Books ---
@app.post("/books", dependencies=[Depends(get_api_key)], status_code=201)
def add_book(payload: BookCreateModel, session: Session = Depends(current_session)):
    """Catalog a book from full details and create its copies."""
    return library.add_book(session, **payload.model_dump()).to_dict()


@app.post("/books/isbn", dependencies=[Depends(get_api_key)], status_code=201)
def add_book_by_isbn(payload: IsbnIntakeModel, session: Session = Depends(current_session)):
    """Catalog a book using Open Library metadata for its ISBN."""
    return library.add_book_by_isbn(session, payload.isbn, copy_count=payload.copy_count).to_dict()


@app.get("/books")
def search_books(
    title: Optional[str] = Query(None, description="Title contains"),
    author: Optional[str] = Query(None, description="Author contains"),
    category: Optional[str] = Query(None, description="Category contains"),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    offset: int = Query(0, ge=0),
):
    """Search the catalog (retired books excluded), with limit/offset paging."""
    books = library.search_books(title, author, category)
    return _dicts(books[offset:offset + limit])


@app.get("/books/available")
def available_books():
    return _dicts(library.get_available_books())


@app.get("/books/new")
def new_arrivals(days: int = Query(30, ge=0)):
    return _dicts(library.get_new_arrivals(days))


@app.get("/books/{book_id}")
def get_book(book_id: int):
    return library.get_book(book_id).to_dict()


@app.patch("/books/{book_id}", dependencies=[Depends(get_api_key)])
def update_book(book_id: int, payload: BookUpdateModel, session: Session = Depends(current_session)):
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="Provide at least one field to update.")
    return library.update_book(session, book_id, **changes).to_dict()


@app.get("/books/{book_id}/copies")
def book_copies(book_id: int):
    return _dicts(library.get_copies(book_id))


@app.get("/books/{book_id}/queue")
def book_queue(book_id: int):
    return _dicts(library.get_book_queue(book_id))


@app.post("/books/{book_id}/retire", dependencies=[Depends(get_api_key)])
def retire_book(book_id: int, session: Session = Depends(current_session)):
    return library.retire_book(session, book_id).to_dict()


@app.post("/books/{book_id}/copies", dependencies=[Depends(get_api_key)], status_code=201)
def add_copies(book_id: int, payload: CopiesModel, session: Session = Depends(current_session)):
    return _dicts(library.add_copies(session, book_id, payload.count))


# --- Loans ---
@app.post("/loans", dependencies=[Depends(get_api_key)], status_code=201)
def issue_loan(payload: LoanCreateModel, session: Session = Depends(current_session)):
    return library.issue_loan(session, payload.member_id, payload.copy_id).to_dict()


@app.get("/loans/overdue")
def overdue_loans(session: Session = Depends(current_session)):
    return [
        {**row["loan"].to_dict(), "days_overdue": row["days_overdue"],
         "provisional_fine": str(row["provisional_fine"])}
        for row in library.get_overdue_loans(session)
    ]


@app.get("/loans/{loan_id}")
def get_loan(loan_id: int, session: Session = Depends(current_session)):
    return library.get_loan(session, loan_id).to_dict()


@app.post("/loans/{loan_id}/renew")
def renew_loan(loan_id: int, session: Session = Depends(current_session)):
    return library.renew_loan(session, loan_id).to_dict()


@app.post("/loans/{loan_id}/return", dependencies=[Depends(get_api_key)])
def return_loan(loan_id: int, session: Session = Depends(current_session)):
    return library.return_loan(session, loan_id).to_dict()


# --- Reservations ---
@app.post("/reservations", status_code=201)
def request_reservation(payload: ReservationCreateModel, session: Session = Depends(current_session)):
    return library.request_reservation(session, payload.member_id, payload.book_id).to_dict()


@app.post("/reservations/expire", dependencies=[Depends(get_api_key)])
def expire_reservations(session: Session = Depends(current_session)):
    """Scheduler hook: expire unclaimed Ready reservations."""
    return _dicts(library.expire_reservations(session))


@app.post("/reservations/{reservation_id}/approve", dependencies=[Depends(get_api_key)])
def approve_reservation(reservation_id: int, payload: ApproveModel, session: Session = Depends(current_session)):
    return library.approve_reservation(session, reservation_id, payload.copy_id).to_dict()


@app.post("/reservations/{reservation_id}/cancel")
def cancel_reservation(reservation_id: int, session: Session = Depends(current_session)):
    return library.cancel_reservation(session, reservation_id).to_dict()


# --- Stats & settings ---
@app.get("/stats")
def get_library_stats():
    """Totals for books, copies, members, loans, fines and reservations."""
    return library.get_statistics()


@app.get("/settings")
def get_settings():
    policy = library.get_policy()
    return {field: str(value) for field, value in vars(policy).items()}


@app.put("/settings", dependencies=[Depends(get_api_key)])
def update_setting(payload: SettingModel, session: Session = Depends(current_session)):
    policy = library.update_setting(session, payload.key, payload.value)
    return {field: str(value) for field, value in vars(policy).items()}
