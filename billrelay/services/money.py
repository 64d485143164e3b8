"""Amount parsing: ambiguous gateway amounts to integer cents, and back."""

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

_DIGITS = re.compile(r"^\d+$")
_DECIMAL = re.compile(r"^\d*\.\d{1,2}$")


def normalize_amount(raw: str | int | float | Decimal | None) -> int | None:
    """
    Parse an amount into integer cents.
    Digit-only strings and ints are already cents ("250" -> 250).
    Decimal strings with one or two decimals are major units ("12.5" -> 1250);
    more decimals than a currency has make a string unusable. Floats and
    Decimals are major units rounded half-up to the cent.
    Returns None when the amount is unknown or unusable; never 0 as a stand-in.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw >= 0 else None
    if isinstance(raw, (float, Decimal)):
        return _major_to_cents(Decimal(str(raw)))
    s = str(raw).strip()
    if not s:
        return None
    if _DIGITS.match(s):
        return int(s)
    if not _DECIMAL.match(s):
        return None
    try:
        return _major_to_cents(Decimal(s))
    except InvalidOperation:
        return None


def _major_to_cents(value: Decimal) -> int | None:
    if not value.is_finite() or value < 0:
        return None
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_cents(cents: int | None) -> str | None:
    """5000 -> "50.00"."""
    if cents is None:
        return None
    return str((Decimal(cents) / 100).quantize(Decimal("0.01")))
