from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from .errors import PolicyViolation
from .fines import compute_fine
from .models import BookCopy, CopyStatus, Loan, LoanStatus, Member, Reservation, ReservationStatus
from .policy import LendingPolicy

logger = logging.getLogger(__name__)


class LoanLifecycle:
    """Borrowing rules: who may borrow, for how long, and what a late return costs.

    The checks only read the records handed to them; the coordinator is the
    one persisting loans and adjusting member/book counters.
    """

    def __init__(self, policy: LendingPolicy) -> None:
        self.policy = policy

    # ------------------------- Issue ------------------------- #
    def check_issue(self, member: Member, copy: BookCopy, active_loans: int,
                    pickup: Optional[Reservation] = None) -> None:
        if not member.is_active:
            raise PolicyViolation(f"Member {member.member_id} is not active ({member.status.value})")
        if active_loans >= member.max_books_allowed:
            raise PolicyViolation(
                f"Member {member.member_id} has reached the maximum book limit ({member.max_books_allowed})"
            )
        if member.fines_owed > self.policy.max_fine_allowed:
            raise PolicyViolation(
                f"Member {member.member_id} owes {member.fines_owed} in fines, more than the "
                f"{self.policy.max_fine_allowed} allowed; fines must be paid before borrowing"
            )
        if copy.status is CopyStatus.AVAILABLE:
            return
        if copy.status is CopyStatus.RESERVED and pickup is not None:
            return
        raise PolicyViolation(f"Book copy {copy.copy_id} is not available ({copy.status.value})")

    def open_loan(self, member: Member, copy: BookCopy, now: datetime,
                  librarian_id: Optional[int] = None) -> Loan:
        return Loan(
            member_id=member.member_id,
            copy_id=copy.copy_id,
            loan_date=now,
            due_date=now + timedelta(days=self.policy.loan_period_days),
            status=LoanStatus.ACTIVE,
            librarian_id=librarian_id,
        )

    @staticmethod
    def is_pickup(reservation: Reservation, member: Member, copy: BookCopy) -> bool:
        """True when ``copy`` is being held for ``member`` by a Ready reservation."""
        return (
            reservation.status is ReservationStatus.READY
            and reservation.member_id == member.member_id
            and reservation.assigned_copy_id == copy.copy_id
        )

    # ------------------------- Renew ------------------------- #
    def check_renewal(self, loan: Loan, pending_reservations: int) -> None:
        if loan.return_date is not None:
            raise PolicyViolation(f"Loan {loan.loan_id} has already been returned")
        if loan.renewal_count >= self.policy.max_renewal_count:
            raise PolicyViolation(
                f"Loan {loan.loan_id} reached the maximum renewal limit ({self.policy.max_renewal_count})"
            )
        if pending_reservations > 0:
            raise PolicyViolation(
                f"Loan {loan.loan_id} cannot be renewed: the book has {pending_reservations} pending reservation(s)"
            )

    def renew(self, loan: Loan) -> Loan:
        loan.due_date = loan.due_date + timedelta(days=self.policy.loan_period_days)
        loan.renewal_count += 1
        return loan

    # ------------------------- Return ------------------------- #
    def check_return(self, loan: Loan) -> None:
        if loan.return_date is not None:
            raise PolicyViolation(f"Loan {loan.loan_id} has already been returned")

    def close(self, loan: Loan, now: datetime) -> Decimal:
        """Mark ``loan`` returned at ``now`` and return the fine it accrued."""
        loan.return_date = now
        loan.status = LoanStatus.RETURNED
        fine = compute_fine(loan.due_date, now, self.policy.fine_per_day)
        if fine > 0:
            loan.fine_amount = fine
            loan.fine_paid = False
            logger.info(f"Loan {loan.loan_id} returned {loan.days_overdue(now)} day(s) late, fine {fine}")
        return fine

    def provisional_fine(self, loan: Loan, now: datetime) -> Decimal:
        if loan.return_date is not None:
            return loan.fine_amount
        return compute_fine(loan.due_date, now, self.policy.fine_per_day)
