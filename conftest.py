import os
from datetime import datetime, timedelta

import pytest

from library import Library
from lending.models import Session


class FakeClock:
    """Clock handed to Library so tests control what "now" is."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)

    def set(self, value: datetime) -> None:
        self.now = value


@pytest.fixture
def clock():
    # a loan issued at this moment falls due on 2024-01-01 10:00
    return FakeClock(datetime(2023, 12, 18, 10, 0, 0))


@pytest.fixture
def lib(tmp_path, request, clock):
    # A unique database file for every test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file, clock=clock)
    yield lib
    lib.close()
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def admin():
    return Session.system()


@pytest.fixture
def librarian_session(lib, admin):
    lib.register_librarian(admin, "desk@library.test", "secret123", "Dana", "Desk", employee_id="E-001")
    return lib.login("desk@library.test", "secret123")


@pytest.fixture
def member(lib, admin):
    return lib.register_member(admin, "ada@example.com", "secret123", "Ada", "Lovelace")


@pytest.fixture
def other_member(lib, admin):
    return lib.register_member(admin, "alan@example.com", "secret123", "Alan", "Turing")


@pytest.fixture
def member_session(lib, member):
    return lib.login("ada@example.com", "secret123")


@pytest.fixture
def book(lib, admin):
    return lib.add_book(admin, title="Dune", isbn="9780441172719", author="Frank Herbert",
                        category="Science Fiction", copy_count=2)
