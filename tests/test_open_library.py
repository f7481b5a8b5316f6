from unittest.mock import MagicMock

import httpx
import pytest

from lending.errors import ExternalServiceError
from lending.services import open_library
from lending.services.open_library import OpenLibraryClient


def _response(status_code, payload):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    return resp


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(open_library.time, "sleep", lambda _: None)


def test_lookup_parses_book_and_author(monkeypatch):
    book = {
        "ISBN:9780132350884": {
            "title": "Clean Code",
            "authors": [{"key": "/authors/OL1A"}],
            "publishers": [{"name": "Prentice Hall"}],
            "publish_date": "August 1, 2008",
            "description": {"value": "A handbook of agile software craftsmanship"},
        }
    }
    calls = []

    def fake_get(url, timeout):
        calls.append(url)
        if "/authors/" in url:
            return _response(200, {"name": "Robert C. Martin"})
        return _response(200, book)

    monkeypatch.setattr(open_library.httpx, "get", fake_get)
    details = OpenLibraryClient(timeout=1).lookup("9780132350884")
    assert details == {
        "title": "Clean Code",
        "author": "Robert C. Martin",
        "publisher": "Prentice Hall",
        "publication_year": 2008,
        "description": "A handbook of agile software craftsmanship",
    }
    assert calls[1].endswith("/authors/OL1A.json")


def test_unknown_isbn_returns_none(monkeypatch):
    monkeypatch.setattr(open_library.httpx, "get", MagicMock(return_value=_response(200, {})))
    assert OpenLibraryClient(timeout=1).lookup("9780132350884") is None


def test_retries_then_raises(monkeypatch):
    get = MagicMock(side_effect=httpx.ConnectError("down"))
    monkeypatch.setattr(open_library.httpx, "get", get)
    with pytest.raises(ExternalServiceError):
        OpenLibraryClient(timeout=1, retries=3).lookup("9780132350884")
    assert get.call_count == 3


def test_recovers_after_transient_error(monkeypatch):
    ok = _response(200, {"ISBN:9780441172719": {"title": "Dune", "authors": [{"name": "Frank Herbert"}]}})
    get = MagicMock(side_effect=[httpx.ReadTimeout("slow"), ok])
    monkeypatch.setattr(open_library.httpx, "get", get)
    details = OpenLibraryClient(timeout=1).lookup("9780441172719")
    assert details["author"] == "Frank Herbert"
    assert details["publication_year"] is None
