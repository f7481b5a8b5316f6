from __future__ import annotations

from dataclasses import dataclass, fields, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping

from .errors import PolicyViolation


# library_settings keys mapped onto LendingPolicy fields
SETTING_KEYS: Dict[str, str] = {
    "MaxBooksPerMember": "max_books_per_member",
    "MaxReservationsPerMember": "max_reservations_per_member",
    "DefaultLoanPeriodDays": "loan_period_days",
    "MaxRenewalCount": "max_renewal_count",
    "FinePerDay": "fine_per_day",
    "MaxFineAllowed": "max_fine_allowed",
    "ReservationExpiryDays": "reservation_pickup_days",
}


@dataclass(frozen=True)
class LendingPolicy:
    max_books_per_member: int = 3
    max_reservations_per_member: int = 3
    loan_period_days: int = 14
    max_renewal_count: int = 2
    fine_per_day: Decimal = Decimal("0.50")
    max_fine_allowed: Decimal = Decimal("10.00")
    reservation_pickup_days: int = 3

    @classmethod
    def from_settings(cls, settings: Any) -> "LendingPolicy":
        return cls(**{f.name: getattr(settings, f.name) for f in fields(cls)})

    def with_overrides(self, overrides: Mapping[str, str]) -> "LendingPolicy":
        """Apply library_settings rows (``SettingKey -> text value``) on top of this policy."""
        changes: Dict[str, Any] = {}
        for key, raw in overrides.items():
            if key in SETTING_KEYS:
                changes[SETTING_KEYS[key]] = parse_setting(key, raw)
        return replace(self, **changes) if changes else self


def parse_setting(key: str, raw: str) -> Any:
    """Convert a textual setting value to the type of its policy field."""
    if key not in SETTING_KEYS:
        raise PolicyViolation(f"Unknown library setting '{key}'")
    field_name = SETTING_KEYS[key]
    field_type = LendingPolicy.__dataclass_fields__[field_name].type
    try:
        if field_type in ("Decimal", Decimal):
            value: Any = Decimal(str(raw))
        else:
            value = int(str(raw))
    except (InvalidOperation, ValueError) as exc:
        raise PolicyViolation(f"Setting '{key}' expects a number, got '{raw}'") from exc
    if value < 0:
        raise PolicyViolation(f"Setting '{key}' cannot be negative")
    return value
