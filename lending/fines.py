from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from .models import CENT


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from ``start`` to ``end``; a partial day is not counted."""
    seconds = (end - start).total_seconds()
    return int(seconds // 86400) if seconds >= 0 else -int(-seconds // 86400)


def compute_fine(due_date: datetime, return_date: Optional[datetime] = None,
                 rate_per_day: Decimal = Decimal("0.50")) -> Decimal:
    """Overdue fine for a loan.

    ``return_date`` defaults to now, which gives the provisional fine of a loan
    that is still out. Returning on or before the due date costs nothing.
    """
    return_date = return_date or datetime.now()
    days = max(0, days_between(due_date, return_date))
    return (Decimal(days) * Decimal(rate_per_day)).quantize(CENT)
