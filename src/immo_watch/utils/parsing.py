"""Parsing helpers for loosely formatted listing values."""

import math
import re
from typing import Final

# First numeric run, including German thousands/decimal separators
_NUMBER_PATTERN: Final = re.compile(r"\d[\d.,]*")

# "1.200" / "12.345.678": dots used as thousands separators
_THOUSANDS_DOTS: Final = re.compile(r"^\d{1,3}(\.\d{3})+$")


def parse_number(value: object) -> float | None:
    """Parse a price, size or room count into a positive float.

    Accepts numbers as-is and strings in German or plain notation, e.g.
    ``"1.234,50 €"``, ``"70 m²"``, ``"3,5 Zimmer"`` or ``"2.5"``.

    Args:
        value: Raw value from a provider payload.

    Returns:
        The parsed number, or None when nothing usable is found or the value is
        not strictly positive.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, int | float):
        try:
            number = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str):
        match = _NUMBER_PATTERN.search(value)
        if not match:
            return None
        token = match.group(0).rstrip(".,")
        if "," in token:
            token = token.replace(".", "").replace(",", ".")
        elif _THOUSANDS_DOTS.match(token):
            token = token.replace(".", "")
        try:
            number = float(token)
        except ValueError:
            return None
    else:
        return None

    if not math.isfinite(number) or number <= 0:
        return None
    return number


def format_number(value: float) -> str:
    """Render a number without a trailing ``.0`` (``70.0`` -> ``"70"``, ``2.5`` -> ``"2.5"``)."""
    if value == int(value):
        return str(int(value))
    return repr(value)


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up, unlike ``round()``."""
    return math.floor(value + 0.5)
