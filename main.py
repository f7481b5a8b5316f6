import json
import os
import subprocess
import sys
import webbrowser
from typing import Any, Callable, Optional

import typer

import database
from config import settings
from library import Library
from lending.errors import ExternalServiceError, OperationResult
from lending.models import Session
from lending.policy import SETTING_KEYS
from utils.ui_helpers import (
    BOOK_COLUMNS,
    COPY_COLUMNS,
    LOAN_COLUMNS,
    RESERVATION_COLUMNS,
    get_output_mode,
    print_error,
    print_record,
    print_records,
    print_stats_result,
    set_output_mode,
)

APP_NAME = "Library CLI"


class LibraryManager:
    """Holds the Library used by CLI commands, rebuilt when the database file changes."""

    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        current_db = database.DATABASE_FILE
        if cls._instance is None or current_db != cls._db_file_snapshot:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = Library(db_file=current_db)
            cls._db_file_snapshot = current_db
        return cls._instance


def _run(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Call a library operation; report a failure and exit non-zero."""
    result = OperationResult.capture(func, *args, **kwargs)
    if not result.success:
        print_error(result.error_kind.value, result.message)
        raise typer.Exit(code=1)
    return result.value


def _operator() -> Session:
    return Session.system()


# --- Typer CLI Application ---
app = typer.Typer(help="Library lending CLI")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    if output:
        set_output_mode(output)


@app.command("init-db")
def cli_init_db():
    """Create the database schema if it does not exist yet."""
    database.initialize_database(database.DATABASE_FILE)
    print(f"Database initialized at {database.DATABASE_FILE}")


# ------------------------- Catalog ------------------------- #
@app.command("add-book")
def cli_add_book(
    isbn: str = typer.Argument(..., help="ISBN-10 or ISBN-13"),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Title; omit to fetch details from Open Library"),
    author: str = typer.Option("", "--author", "-a"),
    publisher: Optional[str] = typer.Option(None, "--publisher"),
    category: Optional[str] = typer.Option(None, "--category", "-c"),
    year: Optional[int] = typer.Option(None, "--year"),
    copies: int = typer.Option(1, "--copies", "-n", help="Number of physical copies"),
):
    """Catalog a book and its copies."""
    lib = LibraryManager.get_instance()
    if title:
        book = _run(lib.add_book, _operator(), title=title, isbn=isbn, author=author, publisher=publisher,
                    category=category, publication_year=year, copy_count=copies)
    else:
        try:
            book = _run(lib.add_book_by_isbn, _operator(), isbn, copy_count=copies)
        except ExternalServiceError as e:
            print_error("ExternalServiceError", str(e))
            raise typer.Exit(code=1)
    print_record(book, f"Added book {book.book_id}: {book.title} by {book.author} ({book.total_copies} copies)")


@app.command("add-copies")
def cli_add_copies(book_id: int, count: int = typer.Argument(1)):
    """Add physical copies to an existing book."""
    lib = LibraryManager.get_instance()
    created = _run(lib.add_copies, _operator(), book_id, count)
    if get_output_mode() == "plain":
        print(f"Added {len(created)} copies to book {book_id}")
    print_records(created, COPY_COLUMNS, "Copies", "No copies added.")


@app.command("register-member")
def cli_register_member(
    email: str,
    first_name: str,
    last_name: str,
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True),
    phone: Optional[str] = typer.Option(None, "--phone"),
):
    """Register a new library member."""
    lib = LibraryManager.get_instance()
    member = _run(lib.register_member, _operator(), email, password, first_name, last_name, phone=phone)
    print_record(member, f"Registered member {member.member_id} (card {member.card_number})")


# ------------------------- Circulation ------------------------- #
@app.command("lend")
def cli_lend(member_id: int, copy_id: int):
    """Lend a copy to a member."""
    lib = LibraryManager.get_instance()
    loan = _run(lib.issue_loan, _operator(), member_id, copy_id)
    print_record(loan, f"Loan {loan.loan_id}: copy {copy_id} to member {member_id}, due {loan.due_date:%Y-%m-%d}")


@app.command("return")
def cli_return(loan_id: int):
    """Check a loaned copy back in."""
    lib = LibraryManager.get_instance()
    loan = _run(lib.return_loan, _operator(), loan_id)
    message = f"Returned loan {loan_id}"
    if loan.fine_amount > 0:
        message += f", fine {loan.fine_amount}"
    print_record(loan, message)


@app.command("renew")
def cli_renew(loan_id: int):
    """Extend a loan by one loan period."""
    lib = LibraryManager.get_instance()
    loan = _run(lib.renew_loan, _operator(), loan_id)
    print_record(loan, f"Renewed loan {loan_id}, now due {loan.due_date:%Y-%m-%d}")


@app.command("reserve")
def cli_reserve(member_id: int, book_id: int):
    """Put a member in the reservation queue for a book."""
    lib = LibraryManager.get_instance()
    res = _run(lib.request_reservation, _operator(), member_id, book_id)
    print_record(res, f"Reservation {res.reservation_id}: member {member_id} is #{res.queue_position} for book {book_id}")


@app.command("approve")
def cli_approve(reservation_id: int, copy_id: int):
    """Hold an available copy for a pending reservation."""
    lib = LibraryManager.get_instance()
    res = _run(lib.approve_reservation, _operator(), reservation_id, copy_id)
    print_record(res, f"Reservation {reservation_id} ready: copy {copy_id} held until {res.expiry_date:%Y-%m-%d}")


@app.command("cancel")
def cli_cancel(reservation_id: int):
    """Cancel a pending or ready reservation."""
    lib = LibraryManager.get_instance()
    res = _run(lib.cancel_reservation, _operator(), reservation_id)
    print_record(res, f"Reservation {reservation_id} cancelled")


@app.command("pay")
def cli_pay(member_id: int, amount: str):
    """Record a fine payment."""
    lib = LibraryManager.get_instance()
    member = _run(lib.pay_fine, _operator(), member_id, amount)
    print_record(member, f"Member {member_id} now owes {member.fines_owed}")


@app.command("expire-reservations")
def cli_expire_reservations():
    """Expire unclaimed ready reservations and pass their copies on (run from a scheduler)."""
    lib = LibraryManager.get_instance()
    expired = _run(lib.expire_reservations, _operator())
    if get_output_mode() == "json":
        print(json.dumps([r.to_dict() for r in expired], ensure_ascii=False))
    else:
        print(f"Expired {len(expired)} reservation(s)")


# ------------------------- Queries ------------------------- #
@app.command("loans")
def cli_loans(member_id: int, active: bool = typer.Option(False, "--active", help="Only unreturned loans")):
    """Show a member's loans."""
    lib = LibraryManager.get_instance()
    query = lib.get_member_active_loans if active else lib.get_member_loan_history
    print_records(_run(query, _operator(), member_id), LOAN_COLUMNS, "Loans", "No loans found.")


@app.command("reservations")
def cli_reservations(member_id: int):
    """Show a member's reservations."""
    lib = LibraryManager.get_instance()
    rows = _run(lib.get_member_reservations, _operator(), member_id)
    print_records(rows, RESERVATION_COLUMNS, "Reservations", "No reservations found.")


@app.command("search")
def cli_search(
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Filter by title"),
    author: Optional[str] = typer.Option(None, "--author", "-a", help="Filter by author"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Filter by category"),
):
    """Search the catalog."""
    lib = LibraryManager.get_instance()
    books = _run(lib.search_books, title=title, author=author, category=category)
    print_records(books, BOOK_COLUMNS, "📚 Books", "No books match the criteria.")


@app.command("available")
def cli_available():
    """Books with at least one copy on the shelf."""
    lib = LibraryManager.get_instance()
    print_records(_run(lib.get_available_books), BOOK_COLUMNS, "📚 Available", "No books available.")


@app.command("new-arrivals")
def cli_new_arrivals(days: int = typer.Option(30, "--days", "-d")):
    """Books cataloged in the last N days."""
    lib = LibraryManager.get_instance()
    print_records(_run(lib.get_new_arrivals, days), BOOK_COLUMNS, "📚 New arrivals", "No new arrivals.")


@app.command("queue")
def cli_queue(book_id: int):
    """Show the open reservation queue of a book."""
    lib = LibraryManager.get_instance()
    rows = _run(lib.get_book_queue, book_id)
    print_records(rows, RESERVATION_COLUMNS, "Queue", "Nobody is waiting for this book.")


@app.command("overdue")
def cli_overdue():
    """Unreturned loans past their due date, with the fine accrued so far."""
    lib = LibraryManager.get_instance()
    rows = _run(lib.get_overdue_loans, _operator())
    if get_output_mode() == "json":
        payload = [
            {**r["loan"].to_dict(), "days_overdue": r["days_overdue"], "provisional_fine": str(r["provisional_fine"])}
            for r in rows
        ]
        print(json.dumps(payload, ensure_ascii=False))
        return
    if not rows:
        print("No overdue loans.")
        return
    for r in rows:
        loan = r["loan"]
        print(f"Loan {loan.loan_id} | Member {loan.member_id} | Copy {loan.copy_id} | "
              f"Due {loan.due_date:%Y-%m-%d} | {r['days_overdue']} day(s) | Fine {r['provisional_fine']}")


@app.command("stats")
def cli_stats():
    """Show library statistics."""
    lib = LibraryManager.get_instance()
    print_stats_result(_run(lib.get_statistics))


@app.command("settings")
def cli_settings():
    """Show the lending policy in effect."""
    lib = LibraryManager.get_instance()
    policy = _run(lib.get_policy)
    print_stats_result({key: str(getattr(policy, name)) for key, name in SETTING_KEYS.items()})


@app.command("set-setting")
def cli_set_setting(key: str, value: str):
    """Override a lending policy value (e.g. MaxBooksPerMember 5)."""
    lib = LibraryManager.get_instance()
    _run(lib.update_setting, _operator(), key, value)
    print(f"{key} set to {value}")


@app.command("audit")
def cli_audit():
    """Check stored availability and loan counters against the records."""
    lib = LibraryManager.get_instance()
    problems = _run(lib.audit)
    if not problems:
        print("All counters consistent.")
        return
    for line in problems:
        print(line)
    raise typer.Exit(code=1)


@app.command("serve")
def cli_serve(timeout: int = typer.Option(0, "--timeout", help="Seconds to run before shutting down (0 = no timeout)")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting API server on {url}")
    try:
        webbrowser.open(url)
    except webbrowser.Error:
        pass
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if timeout and timeout > 0:
        # no reloader, so the single child process can be terminated cleanly
        start_new_session = os.name != "nt"
        proc = subprocess.Popen(args, start_new_session=start_new_session)
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
    else:
        args.append("--reload")
        subprocess.run(args)


if __name__ == "__main__":
    app()
