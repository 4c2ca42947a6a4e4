"""
Brazilian Real amounts as integer cents.

Portal pages use Brazilian notation: "." groups thousands and "," separates
cents ("R$ 1.234,56"). Values are kept as ``int`` cents everywhere else.
"""

from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal

_PLAIN_NUMBER = re.compile(r"-?\d+(\.\d+)?")


class InvalidMoneyFormat(ValueError):
    """Text is not a BRL amount."""


def from_float(value: float) -> int:
    """Convert reais to cents, rounding half away from zero."""
    return int(Decimal(str(value)).scaleb(2).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_brl(text: str) -> int:
    """Parse "R$ 1.234,56" (symbol and grouping optional) into cents."""
    s = (text or "").strip().replace("R$", "").strip()
    s = s.replace(".", "").replace(",", ".", 1)

    if s.count(".") > 1:
        raise InvalidMoneyFormat(f"too many decimal separators: {text!r}")
    if not _PLAIN_NUMBER.fullmatch(s):
        raise InvalidMoneyFormat(f"invalid BRL amount: {text!r}")

    return int(Decimal(s).scaleb(2).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_brl_or_zero(text: str) -> int:
    try:
        return parse_brl(text)
    except InvalidMoneyFormat:
        return 0


def format_brl(cents: int) -> str:
    """Format cents as "R$ 1.234,56" (negatives as "R$ -1.234,56")."""
    sign = "-" if cents < 0 else ""
    reais, rest = divmod(abs(cents), 100)
    grouped = f"{reais:,}".replace(",", ".")
    return f"R$ {sign}{grouped},{rest:02d}"
