from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from errors import ValidationError

AmountInput = Union[str, int, float, Decimal]

_CURRENCY_MARKS = ("R$", "US$", "$", "€")


def _clean(value: str) -> str:
    clean = value.strip()
    for mark in _CURRENCY_MARKS:
        clean = clean.replace(mark, "")
    clean = clean.replace(" ", "").replace("\u00a0", "")
    if "," in clean and "." in clean:
        # whichever separator comes last is the decimal one
        if clean.rfind(",") > clean.rfind("."):
            clean = clean.replace(".", "").replace(",", ".")
        else:
            clean = clean.replace(",", "")
    else:
        clean = clean.replace(",", ".")
        if clean.count(".") > 1:
            parts = clean.split(".")
            clean = "".join(parts[:-1]) + "." + parts[-1]
    return clean


def to_minor_units(value: AmountInput) -> int:
    """Convert a user-entered amount into integer cents.

    Rounds half-up to two decimal places. Zero, negative and unparseable
    input is rejected.
    """
    if isinstance(value, bool):
        raise ValidationError("Invalid amount")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    else:
        try:
            amount = Decimal(_clean(value))
        except InvalidOperation as exc:
            raise ValidationError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValidationError("Invalid amount")
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents <= 0:
        raise ValidationError("Amount must be positive")
    return cents


def to_plain_decimal_string(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    return f"{sign}{whole}.{frac:02d}"


def to_decimal_string(cents: int, *, locale: str = "pt_BR") -> str:
    """Format cents for display; not for arithmetic."""
    formatted = f"{Decimal(abs(cents)) / 100:,.2f}"
    if locale.startswith("pt"):
        formatted = formatted.replace(",", " ").replace(".", ",").replace(" ", ".")
    if cents < 0:
        formatted = "-" + formatted
    return formatted
