from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from .errors import PolicyViolation
from .models import Book, BookCopy, CopyStatus, Member, Reservation, ReservationStatus
from .policy import LendingPolicy

logger = logging.getLogger(__name__)


class ReservationQueue:
    """Per-book FIFO queue of reservations.

    Queue order is decided by ``queue_position`` alone. Positions are handed
    out monotonically per book and never reused, so after cancellations the
    sequence is sparse and selection simply takes the minimum.
    """

    def __init__(self, policy: LendingPolicy) -> None:
        self.policy = policy

    def check_request(self, member: Member, book: Book, pending_for_member: int) -> None:
        if not member.is_active:
            raise PolicyViolation(f"Member {member.member_id} is not active ({member.status.value})")
        if pending_for_member >= self.policy.max_reservations_per_member:
            raise PolicyViolation(
                f"Member {member.member_id} has reached the maximum reservation limit "
                f"({self.policy.max_reservations_per_member})"
            )
        if book.is_retired:
            raise PolicyViolation(f"Book {book.book_id} is retired and cannot be reserved")

    @staticmethod
    def next_position(existing: Iterable[Reservation]) -> int:
        return max((r.queue_position for r in existing), default=0) + 1

    def open(self, member: Member, book: Book, position: int, now: datetime) -> Reservation:
        return Reservation(
            member_id=member.member_id,
            book_id=book.book_id,
            queue_position=position,
            reservation_date=now,
            status=ReservationStatus.PENDING,
        )

    @staticmethod
    def select_next(pending: Iterable[Reservation]) -> Optional[Reservation]:
        candidates = [r for r in pending if r.status is ReservationStatus.PENDING]
        return min(candidates, key=lambda r: r.queue_position, default=None)

    def check_approval(self, reservation: Reservation, copy: BookCopy) -> None:
        if reservation.status is not ReservationStatus.PENDING:
            raise PolicyViolation(
                f"Reservation {reservation.reservation_id} is {reservation.status.value}, not Pending"
            )
        if copy.book_id != reservation.book_id:
            raise PolicyViolation(
                f"Book copy {copy.copy_id} does not belong to book {reservation.book_id}"
            )
        if copy.status is not CopyStatus.AVAILABLE:
            raise PolicyViolation(f"Book copy {copy.copy_id} is not available ({copy.status.value})")

    def mark_ready(self, reservation: Reservation, copy: BookCopy, now: datetime) -> Reservation:
        reservation.status = ReservationStatus.READY
        reservation.assigned_copy_id = copy.copy_id
        reservation.available_date = now
        reservation.expiry_date = now + timedelta(days=self.policy.reservation_pickup_days)
        copy.status = CopyStatus.RESERVED
        logger.info(
            f"Reservation {reservation.reservation_id} ready: copy {copy.copy_id} held until "
            f"{reservation.expiry_date:%Y-%m-%d}"
        )
        return reservation

    def fulfill(self, reservation: Reservation, now: datetime) -> Reservation:
        reservation.status = ReservationStatus.FULFILLED
        reservation.fulfilled_date = now
        return reservation

    def cancel(self, reservation: Reservation) -> Reservation:
        if not reservation.is_open:
            raise PolicyViolation(
                f"Reservation {reservation.reservation_id} is already {reservation.status.value}"
            )
        reservation.status = ReservationStatus.CANCELLED
        return reservation

    @staticmethod
    def lapsed(ready: Iterable[Reservation], now: datetime) -> List[Reservation]:
        return [
            r for r in ready
            if r.status is ReservationStatus.READY and r.expiry_date is not None and r.expiry_date < now
        ]

    def expire(self, reservation: Reservation) -> Reservation:
        reservation.status = ReservationStatus.EXPIRED
        logger.info(f"Reservation {reservation.reservation_id} expired unclaimed")
        return reservation
