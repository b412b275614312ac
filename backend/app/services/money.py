"""
Money helpers - integer-cents arithmetic shared by every pricing engine.

Covers:
  - Half-up rounding (the single rounding primitive of the code base)
  - fr-FR currency display
  - Tolerant parsing of user-typed amounts ("12,50", " 1 234,56 ")
  - Basis-point tax computation

Amounts are always integer cents; rates are integer basis points
(10000 bp = 100 %).
"""
import math
import re
from typing import Optional, Union

Number = Union[int, float]

BP_SCALE: int = 10_000
CURRENCY_SYMBOL: str = "€"

# fr-FR groups thousands with a narrow no-break space and puts a no-break
# space before the currency symbol.
_GROUP_SEPARATOR = "\u202f"
_SYMBOL_SEPARATOR = "\u00a0"

_WHITESPACE = re.compile(r"\s+")
_NUMBER_PREFIX = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")


def round_half_up(value: Number) -> int:
    """Round to the nearest integer, halves going towards +infinity. Non-finite values give 0."""
    if isinstance(value, int):
        return int(value)
    if not math.isfinite(value):
        return 0
    return int(math.floor(value + 0.5))


def format_currency(cents: int) -> str:
    """Format integer cents as a fr-FR euro string, e.g. ``1 234,56 €``."""
    cents = int(cents)
    sign = "-" if cents < 0 else ""
    euros, remainder = divmod(abs(cents), 100)
    grouped = f"{euros:,}".replace(",", _GROUP_SEPARATOR)
    return f"{sign}{grouped},{remainder:02d}{_SYMBOL_SEPARATOR}{CURRENCY_SYMBOL}"


def parse_currency_input(text: Optional[str]) -> Optional[int]:
    """
    Parse a typed amount into cents.

    Whitespace is ignored and the first comma is read as the decimal
    separator. Trailing garbage after a valid number is ignored, the way
    browsers parse floats. Returns None when no finite number can be read.
    """
    if text is None:
        return None
    normalized = _WHITESPACE.sub("", str(text)).replace(",", ".", 1)
    match = _NUMBER_PREFIX.match(normalized)
    if not match:
        return None
    value = float(match.group(0))
    if not math.isfinite(value):
        return None
    return round_half_up(value * 100)


def compute_tax_cents(amount_cents: Number, tax_rate_bp: Number) -> int:
    """Tax on an amount: round(amount * bp / 10000), half up."""
    if isinstance(amount_cents, int) and _is_whole(tax_rate_bp):
        # exact for amounts of any size
        return (2 * amount_cents * int(tax_rate_bp) + BP_SCALE) // (2 * BP_SCALE)
    return round_half_up(amount_cents * tax_rate_bp / BP_SCALE)


def _is_whole(value: Number) -> bool:
    if isinstance(value, int):
        return True
    return isinstance(value, float) and value.is_integer()
