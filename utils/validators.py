import re
from decimal import Decimal, InvalidOperation
from typing import Optional

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ISBNValidator:
    """ISBN-10 / ISBN-13 normalization and checksum validation."""

    @staticmethod
    def normalize_isbn(raw: str) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: str) -> bool:
        if not isbn:
            return False
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            # ISBN-10: weights 1..10
            total = 0
            for i, ch in enumerate(s[:-1], 1):
                if not ch.isdigit():
                    return False
                total += i * int(ch)
            check = s[-1]
            if check == 'X':
                check_val = 10
            elif check.isdigit():
                check_val = int(check)
            else:
                return False
            return (total + 10 * check_val) % 11 == 0
        elif len(s) == 13 and s.isdigit():
            total = 0
            for i, ch in enumerate(s[:-1]):
                factor = 1 if i % 2 == 0 else 3
                total += factor * int(ch)
            check_val = (10 - (total % 10)) % 10
            return check_val == int(s[-1])
        return False


class TextValidator:
    """Basic text checks for registration and intake forms."""

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        if title is None:
            return False
        t = title.strip()
        return bool(t) and any(c.isalnum() for c in t)

    @staticmethod
    def validate_name(name: Optional[str]) -> bool:
        if name is None:
            return False
        t = name.strip()
        if not t:
            return False
        return not t.isdigit()

    @staticmethod
    def validate_email(email: Optional[str]) -> bool:
        return bool(email) and EMAIL_RE.match(email.strip()) is not None


class AmountValidator:
    @staticmethod
    def parse_amount(raw) -> Optional[Decimal]:
        """Parse a monetary amount to a 2-place Decimal, or None if it is not a number."""
        try:
            value = Decimal(str(raw).strip())
        except (InvalidOperation, ValueError):
            return None
        if not value.is_finite():
            return None
        return value.quantize(Decimal("0.01"))
