from decimal import Decimal

import pytest

from utils.validators import AmountValidator, ISBNValidator, TextValidator


@pytest.mark.parametrize("isbn", ["9780441172719", "978-0-13-235088-4", "0306406152", "080442957X"])
def test_valid_isbns(isbn):
    assert ISBNValidator.is_valid_isbn(isbn)


@pytest.mark.parametrize("isbn", ["", "9780441172710", "12345", "030640615X"])
def test_invalid_isbns(isbn):
    assert not ISBNValidator.is_valid_isbn(isbn)


def test_text_checks():
    assert TextValidator.validate_email("ada@example.com")
    assert not TextValidator.validate_email("ada@example")
    assert TextValidator.validate_name("Ada")
    assert not TextValidator.validate_name("   ")
    assert not TextValidator.validate_title("!!!")


def test_parse_amount():
    assert AmountValidator.parse_amount("2.5") == Decimal("2.50")
    assert AmountValidator.parse_amount(3) == Decimal("3.00")
    assert AmountValidator.parse_amount("ten") is None
    assert AmountValidator.parse_amount("NaN") is None
