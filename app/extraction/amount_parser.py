"""
Mexican amount parser.

Purchase orders arrive with either decimal convention:
- $1,234.56 MXN / 1,234.56 / 1234.56   -> dot decimal, comma thousands
- 1.234,56 / 80,57                      -> comma decimal, dot thousands
- 1,234 / 1.234 / 1234                  -> no decimals, separators are thousands

A separator counts as decimal only when at most two digits follow it.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Optional

from pydantic import BaseModel


class AmountParseResult(BaseModel):
    amount: Optional[Decimal] = None
    raw_text: str
    decimal_separator: Optional[str] = None  # ".", "," or None
    confidence: float = 0.0


_CURRENCY = re.compile(r"(MXN|M\.N\.|MN|\$|USD)", re.IGNORECASE)


def parse_amount(raw: str) -> AmountParseResult:
    """Parse a positive monetary amount in MX conventions."""
    s = _CURRENCY.sub("", raw or "").strip().replace(" ", "")

    if not s or not re.fullmatch(r"[\d.,]+", s) or not any(c.isdigit() for c in s):
        return AmountParseResult(amount=None, raw_text=raw or "")

    last_comma = s.rfind(",")
    last_dot = s.rfind(".")
    decimal_separator = None

    if last_comma > -1 and len(s) - last_comma <= 3 and last_comma > last_dot:
        s = s.replace(".", "").replace(",", ".")
        decimal_separator = ","
    elif last_dot > -1 and len(s) - last_dot <= 3:
        s = s.replace(",", "")
        # Anything before the final dot is a thousands separator
        head, _, tail = s.rpartition(".")
        s = f"{head.replace('.', '')}.{tail}"
        decimal_separator = "."
    else:
        s = s.replace(",", "").replace(".", "")

    try:
        amount = Decimal(s)
    except (InvalidOperation, ValueError):
        return AmountParseResult(amount=None, raw_text=raw)

    confidence = 0.95 if decimal_separator else 0.85
    if amount == 0:
        confidence = 0.5
    elif amount > Decimal("10000000"):
        confidence = 0.5  # Suspiciously large for a single service order

    return AmountParseResult(
        amount=amount,
        raw_text=raw,
        decimal_separator=decimal_separator,
        confidence=confidence,
    )


def is_amount_like(text: str) -> bool:
    """Quick check if text looks like it could be a monetary amount."""
    return parse_amount(text).amount is not None
