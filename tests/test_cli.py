import json

import pytest
from typer.testing import CliRunner
from unittest.mock import patch, MagicMock

import database
from main import app
from library import Library
from lending.errors import ExternalServiceError, NotFound
from lending.models import Book, Session

runner = CliRunner()


@pytest.fixture
def cli_lib(tmp_path, monkeypatch):
    # Point the CLI at a per-test database
    db_file = str(tmp_path / "cli.db")
    monkeypatch.setattr(database, "DATABASE_FILE", db_file)
    monkeypatch.setenv("LIB_CLI_OUTPUT", "plain")
    return Library(db_file=db_file)


def test_search_no_books(cli_lib):
    result = runner.invoke(app, ["search"])
    assert result.exit_code == 0
    assert "No books match the criteria." in result.stdout


def test_add_book_with_details(cli_lib):
    result = runner.invoke(app, ["add-book", "9780441172719", "--title", "Dune", "--author", "Frank Herbert",
                                 "--copies", "2"])
    assert result.exit_code == 0
    assert "Added book 1: Dune by Frank Herbert (2 copies)" in result.stdout

    listed = runner.invoke(app, ["available"])
    assert "ISBN: 9780441172719" in listed.stdout
    assert "Available: 2" in listed.stdout


def test_add_book_by_isbn(cli_lib, monkeypatch):
    mock_book = Book(isbn="9780132350884", title="Clean Code", author="Robert C. Martin", total_copies=1, book_id=4)
    add_mock = MagicMock(return_value=mock_book)
    monkeypatch.setattr(Library, "add_book_by_isbn", add_mock)

    result = runner.invoke(app, ["add-book", "9780132350884"])
    assert result.exit_code == 0
    assert "Added book 4: Clean Code by Robert C. Martin (1 copies)" in result.stdout
    add_mock.assert_called_once()


def test_add_book_not_found(cli_lib, monkeypatch):
    monkeypatch.setattr(Library, "add_book_by_isbn",
                        MagicMock(side_effect=NotFound("ISBN 9780132350884 not found in Open Library")))

    result = runner.invoke(app, ["add-book", "9780132350884"])
    assert result.exit_code == 1
    assert "Error (NotFound): ISBN 9780132350884 not found in Open Library" in result.stdout


def test_add_book_service_down(cli_lib, monkeypatch):
    monkeypatch.setattr(Library, "add_book_by_isbn",
                        MagicMock(side_effect=ExternalServiceError("Open Library unreachable")))

    result = runner.invoke(app, ["add-book", "9780132350884"])
    assert result.exit_code == 1
    assert "Error (ExternalServiceError): Open Library unreachable" in result.stdout


def test_lend_return_and_stats(cli_lib):
    admin = Session.system()
    book = cli_lib.add_book(admin, title="Dune", isbn="9780441172719", author="Frank Herbert")
    member = cli_lib.register_member(admin, "ada@example.com", "secret123", "Ada", "Lovelace")
    copy_id = cli_lib.get_copies(book.book_id)[0].copy_id

    lent = runner.invoke(app, ["lend", str(member.member_id), str(copy_id)])
    assert lent.exit_code == 0
    assert f"Loan 1: copy {copy_id} to member {member.member_id}" in lent.stdout

    again = runner.invoke(app, ["lend", str(member.member_id), str(copy_id)])
    assert again.exit_code == 1
    assert "Error (PolicyViolation)" in again.stdout

    loans = runner.invoke(app, ["loans", str(member.member_id), "--active"])
    assert "ID: 1" in loans.stdout

    returned = runner.invoke(app, ["return", "1"])
    assert returned.exit_code == 0
    assert "Returned loan 1" in returned.stdout

    stats = runner.invoke(app, ["stats"])
    assert "Total Books: 1" in stats.stdout
    assert "Active Loans: 0" in stats.stdout


def test_register_member(cli_lib):
    result = runner.invoke(app, ["register-member", "ada@example.com", "Ada", "Lovelace", "--password", "secret123"])
    assert result.exit_code == 0
    assert "Registered member 1 (card M000001)" in result.stdout


def test_reserve_cancel_json_output(cli_lib):
    admin = Session.system()
    book = cli_lib.add_book(admin, title="Dune", isbn="9780441172719")
    member = cli_lib.register_member(admin, "ada@example.com", "secret123", "Ada", "Lovelace")

    result = runner.invoke(app, ["--output", "json", "reserve", str(member.member_id), str(book.book_id)])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["success"] is True
    assert payload["value"]["queue_position"] == 1

    cancelled = runner.invoke(app, ["--output", "json", "cancel", str(payload["value"]["reservation_id"])])
    assert json.loads(cancelled.stdout)["value"]["status"] == "Cancelled"

    failed = runner.invoke(app, ["--output", "json", "cancel", "999"])
    assert failed.exit_code == 1
    assert json.loads(failed.stdout) == {
        "success": False, "error_kind": "NotFound", "detail": "Reservation 999 not found",
    }


def test_pay_rejects_bad_amount(cli_lib):
    member = cli_lib.register_member(Session.system(), "ada@example.com", "secret123", "Ada", "Lovelace")
    result = runner.invoke(app, ["pay", str(member.member_id), "0"])
    assert result.exit_code == 1
    assert "Error (PolicyViolation)" in result.stdout


def test_expire_and_overdue_empty(cli_lib):
    assert "Expired 0 reservation(s)" in runner.invoke(app, ["expire-reservations"]).stdout
    assert "No overdue loans." in runner.invoke(app, ["overdue"]).stdout


def test_settings_and_audit(cli_lib):
    result = runner.invoke(app, ["set-setting", "MaxBooksPerMember", "5"])
    assert result.exit_code == 0
    shown = runner.invoke(app, ["settings"])
    assert "MaxBooksPerMember: 5" in shown.stdout
    assert "All counters consistent." in runner.invoke(app, ["audit"]).stdout


@patch('subprocess.run')
@patch('webbrowser.open')
def test_serve_command(mock_webbrowser_open, mock_subprocess_run, cli_lib):
    result = runner.invoke(app, ["serve"])
    assert result.exit_code == 0
    assert "Starting API server on" in result.stdout
    mock_webbrowser_open.assert_called_once()
    mock_subprocess_run.assert_called_once()
    # Check if uvicorn is called with correct arguments
    args = mock_subprocess_run.call_args[0][0]
    assert "uvicorn" in args
    assert "api:app" in args
    assert "--host" in args
    assert "--port" in args
