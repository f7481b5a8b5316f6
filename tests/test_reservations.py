from datetime import datetime, timedelta

import pytest

from lending.errors import PolicyViolation
from lending.models import Book, BookCopy, CopyStatus, Member, MemberStatus, Reservation, ReservationStatus
from lending.policy import LendingPolicy
from lending.reservations import ReservationQueue

NOW = datetime(2024, 3, 1, 9, 0, 0)


@pytest.fixture
def queue():
    return ReservationQueue(LendingPolicy())


def _res(position, status=ReservationStatus.PENDING, **extra):
    return Reservation(member_id=position, book_id=1, queue_position=position, reservation_date=NOW,
                       status=status, reservation_id=position, **extra)


def test_request_limits(queue):
    member = Member(user_id=1, member_id=1)
    book = Book(isbn="9780441172719", title="Dune", book_id=1)
    queue.check_request(member, book, pending_for_member=2)
    with pytest.raises(PolicyViolation, match="maximum reservation limit"):
        queue.check_request(member, book, pending_for_member=3)
    with pytest.raises(PolicyViolation, match="not active"):
        queue.check_request(Member(user_id=1, member_id=1, status=MemberStatus.SUSPENDED), book, 0)
    with pytest.raises(PolicyViolation, match="retired"):
        queue.check_request(member, Book(isbn="9780441172719", title="Dune", is_retired=True), 0)


def test_positions_continue_after_gaps(queue):
    assert queue.next_position([]) == 1
    assert queue.next_position([_res(1, ReservationStatus.CANCELLED), _res(4)]) == 5


def test_select_next_takes_lowest_pending(queue):
    pending = [_res(5), _res(2, ReservationStatus.READY), _res(3), _res(1, ReservationStatus.CANCELLED)]
    assert queue.select_next(pending).queue_position == 3
    assert queue.select_next([]) is None


def test_mark_ready_holds_copy(queue):
    res = _res(1)
    copy = BookCopy(book_id=1, barcode="x-001", copy_id=9)
    queue.mark_ready(res, copy, NOW)
    assert res.status is ReservationStatus.READY
    assert res.assigned_copy_id == 9
    assert res.expiry_date == NOW + timedelta(days=3)
    assert copy.status is CopyStatus.RESERVED


def test_approval_requires_matching_available_copy(queue):
    with pytest.raises(PolicyViolation, match="does not belong"):
        queue.check_approval(_res(1), BookCopy(book_id=2, barcode="y-001", copy_id=3))
    with pytest.raises(PolicyViolation, match="not available"):
        queue.check_approval(_res(1), BookCopy(book_id=1, barcode="x-001", status=CopyStatus.BORROWED))
    with pytest.raises(PolicyViolation, match="not Pending"):
        queue.check_approval(_res(1, ReservationStatus.READY), BookCopy(book_id=1, barcode="x-001"))


def test_cancel_only_open_reservations(queue):
    assert queue.cancel(_res(1)).status is ReservationStatus.CANCELLED
    with pytest.raises(PolicyViolation, match="already"):
        queue.cancel(_res(1, ReservationStatus.FULFILLED))


def test_lapsed_ready_reservations(queue):
    stale = _res(1, ReservationStatus.READY, expiry_date=NOW - timedelta(minutes=1))
    fresh = _res(2, ReservationStatus.READY, expiry_date=NOW + timedelta(days=1))
    assert queue.lapsed([stale, fresh], NOW) == [stale]
    assert queue.expire(stale).status is ReservationStatus.EXPIRED
