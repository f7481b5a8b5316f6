import os
from datetime import datetime, timedelta
import importlib
import pytest
from unittest.mock import MagicMock
from fastapi.testclient import TestClient
from config import settings
from lending.errors import ExternalServiceError
from lending.models import Session
from lending.services.open_library import OpenLibraryClient

KEY = {"X-API-Key": settings.api_key}


@pytest.fixture
def client(tmp_path, request):
    # Create a unique per-test DB and ensure api picks it up at import time
    db_file = str(tmp_path / f"api_test_{request.node.name}.db")
    os.environ["LIBRARY_DB_FILE"] = db_file

    import api as api_module
    # Reload api so its global Library() instance uses the test-specific DB
    importlib.reload(api_module)

    test_client = TestClient(api_module.app)
    try:
        yield test_client
    finally:
        # Cleanup DB file and env var after test
        os.environ.pop("LIBRARY_DB_FILE", None)
        if os.path.exists(db_file):
            try:
                os.remove(db_file)
            except OSError:
                pass


def _add_book(client, isbn="9780441172719", copies=1):
    payload = {"isbn": isbn, "title": "Dune", "author": "Frank Herbert", "copy_count": copies}
    response = client.post("/books", headers=KEY, json=payload)
    assert response.status_code == 201
    return response.json()


def _register(client, email="ada@example.com"):
    payload = {"email": email, "password": "secret123", "first_name": "Ada", "last_name": "Lovelace"}
    response = client.post("/members", headers=KEY, json=payload)
    assert response.status_code == 201
    return response.json()


def _copy_ids(client, book_id):
    return [c["copy_id"] for c in client.get(f"/books/{book_id}/copies").json()]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["total_books"] == 0


def test_get_books(client):
    response = client.get("/books")
    assert response.status_code == 200
    assert isinstance(response.json(), list)


def test_add_book_with_valid_api_key(client):
    book = _add_book(client, copies=2)
    assert book["isbn"] == "9780441172719"
    assert book["available_copies"] == 2
    assert [b["title"] for b in client.get("/books", params={"title": "dune"}).json()] == ["Dune"]


def test_add_book_with_invalid_api_key(client):
    headers = {"X-API-Key": "invalid-key"}
    payload = {"isbn": "9780441172719", "title": "Dune"}
    response = client.post("/books", headers=headers, json=payload)
    assert response.status_code == 403


def test_unknown_book_is_404(client):
    response = client.get("/books/999")
    assert response.status_code == 404
    assert response.json() == {"success": False, "error_kind": "NotFound", "detail": "Book 999 not found"}


def test_duplicate_isbn_is_409(client):
    _add_book(client)
    response = client.post("/books", headers=KEY, json={"isbn": "9780441172719", "title": "Dune"})
    assert response.status_code == 409
    assert response.json()["error_kind"] == "PolicyViolation"


def test_member_data_requires_credentials(client):
    member = _register(client)
    assert client.get(f"/members/{member['member_id']}").status_code == 401
    bad = client.get(f"/members/{member['member_id']}", headers={"X-Session-Token": "nope"})
    assert bad.status_code == 401


def test_login_and_member_flow(client):
    book = _add_book(client)
    member = _register(client)
    login = client.post("/auth/login", json={"email": "ada@example.com", "password": "secret123"})
    assert login.status_code == 200
    token = login.json()["token"]
    assert login.json()["session"]["role"] == "Member"
    as_member = {**KEY, "X-Session-Token": token}

    # members cannot lend to themselves
    copy_id = _copy_ids(client, book["book_id"])[0]
    denied = client.post("/loans", headers=as_member, json={"member_id": member["member_id"], "copy_id": copy_id})
    assert denied.status_code == 409

    loan = client.post("/loans", headers=KEY, json={"member_id": member["member_id"], "copy_id": copy_id})
    assert loan.status_code == 201
    loan_id = loan.json()["loan_id"]

    renewed = client.post(f"/loans/{loan_id}/renew", headers=as_member)
    assert renewed.status_code == 200
    assert renewed.json()["renewal_count"] == 1

    history = client.get(f"/members/{member['member_id']}/loans", headers={"X-Session-Token": token})
    assert [row["loan_id"] for row in history.json()] == [loan_id]


def test_bad_login_is_409(client):
    _register(client)
    response = client.post("/auth/login", json={"email": "ada@example.com", "password": "wrong-one"})
    assert response.status_code == 409
    assert response.json()["detail"] == "Invalid email or password"


def test_return_serves_reservation_queue(client):
    book = _add_book(client)
    first = _register(client, "ada@example.com")
    second = _register(client, "alan@example.com")
    copy_id = _copy_ids(client, book["book_id"])[0]
    loan = client.post("/loans", headers=KEY, json={"member_id": first["member_id"], "copy_id": copy_id}).json()
    res = client.post("/reservations", headers=KEY,
                      json={"member_id": second["member_id"], "book_id": book["book_id"]})
    assert res.status_code == 201
    assert res.json()["queue_position"] == 1

    client.post(f"/loans/{loan['loan_id']}/return", headers=KEY)
    [ready] = client.get(f"/books/{book['book_id']}/queue").json()
    assert ready["status"] == "Ready"
    assert ready["assigned_copy_id"] == copy_id
    assert client.get(f"/books/{book['book_id']}").json()["available_copies"] == 0

    expired = client.post("/reservations/expire", headers=KEY)
    assert expired.status_code == 200
    assert expired.json() == []


def test_pay_fine_rejects_non_positive(client):
    member = _register(client)
    response = client.post(f"/members/{member['member_id']}/fines/pay", headers=KEY, json={"amount": "0"})
    assert response.status_code == 409
    ok = client.post(f"/members/{member['member_id']}/fines/pay", headers=KEY, json={"amount": "5.00"})
    assert ok.status_code == 200
    assert ok.json()["fines_owed"] == "0.00"


def test_settings_roundtrip(client):
    response = client.put("/settings", headers=KEY, json={"key": "MaxRenewalCount", "value": "4"})
    assert response.status_code == 200
    assert client.get("/settings").json()["max_renewal_count"] == "4"
    bad = client.put("/settings", headers=KEY, json={"key": "Nope", "value": "1"})
    assert bad.status_code == 409


def test_add_book_by_isbn_uses_open_library(client, monkeypatch):
    lookup = MagicMock(return_value={
        "title": "Clean Code",
        "author": "Robert C. Martin",
        "publisher": "Prentice Hall",
        "publication_year": 2008,
        "description": None,
    })
    monkeypatch.setattr(OpenLibraryClient, "lookup", lookup)
    response = client.post("/books/isbn", headers=KEY, json={"isbn": "9780132350884", "copy_count": 2})
    assert response.status_code == 201
    assert response.json()["title"] == "Clean Code"
    assert response.json()["total_copies"] == 2
    lookup.assert_called_once_with("9780132350884")


def test_open_library_down_is_502(client, monkeypatch):
    monkeypatch.setattr(OpenLibraryClient, "lookup", MagicMock(side_effect=ExternalServiceError("Open Library unreachable")))
    response = client.post("/books/isbn", headers=KEY, json={"isbn": "9780132350884"})
    assert response.status_code == 502
    assert response.json()["error_kind"] == "ExternalServiceError"


def test_stats(client):
    _add_book(client, copies=3)
    stats = client.get("/stats").json()
    assert stats["total_books"] == 1
    assert stats["available_copies"] == 3


def _login(client, email="ada@example.com"):
    response = client.post("/auth/login", json={"email": email, "password": "secret123"})
    assert response.status_code == 200
    return {"X-Session-Token": response.json()["token"]}


def test_member_token_alone_covers_own_account(client):
    book = _add_book(client)
    ada = _register(client, "ada@example.com")
    alan = _register(client, "alan@example.com")
    as_ada = _login(client, "ada@example.com")
    copy_id = _copy_ids(client, book["book_id"])[0]
    loan = client.post("/loans", headers=KEY, json={"member_id": ada["member_id"], "copy_id": copy_id}).json()

    renewed = client.post(f"/loans/{loan['loan_id']}/renew", headers=as_ada)
    assert renewed.status_code == 200

    reserved = client.post("/reservations", headers=as_ada,
                           json={"member_id": ada["member_id"], "book_id": book["book_id"]})
    assert reserved.status_code == 201
    cancelled = client.post(f"/reservations/{reserved.json()['reservation_id']}/cancel", headers=as_ada)
    assert cancelled.json()["status"] == "Cancelled"

    paid = client.post(f"/members/{ada['member_id']}/fines/pay", headers=as_ada, json={"amount": "1.00"})
    assert paid.status_code == 200
    updated = client.patch(f"/members/{ada['member_id']}", headers=as_ada, json={"phone": "555-0100"})
    assert updated.status_code == 200

    # someone else's account
    other = client.post("/reservations", headers=as_ada,
                        json={"member_id": alan["member_id"], "book_id": book["book_id"]})
    assert other.status_code == 409
    assert other.json()["error_kind"] == "PolicyViolation"


def test_member_token_cannot_reach_staff_routes(client):
    book = _add_book(client)
    ada = _register(client)
    as_ada = _login(client)
    copy_id = _copy_ids(client, book["book_id"])[0]
    response = client.post("/loans", headers=as_ada, json={"member_id": ada["member_id"], "copy_id": copy_id})
    assert response.status_code == 403
    assert client.post("/reservations", json={"member_id": ada["member_id"], "book_id": book["book_id"]}).status_code == 401


def test_issuing_token_drops_expired_sessions(client):
    import api

    stale = api.issue_token(Session.system())
    with api._sessions_lock:
        session, _ = api._sessions[stale]
        api._sessions[stale] = (session, datetime.now() - timedelta(minutes=1))

    fresh = api.issue_token(Session.system())
    assert stale not in api._sessions
    assert fresh in api._sessions
