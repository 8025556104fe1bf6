"""
Amount parser for statement exports.

Handles both decimal conventions seen in bank CSV exports:
- 1.234,56 / 1234,56        -> European decimal comma (HR, DE, ...)
- 1,234.56 / 1234.56        -> decimal point
- (1.234,56)                -> negative (parentheses)
- 1.234,56 DR / 1.234,56 CR -> DR negative, CR positive
- -120,00 / 120,00-         -> negative (leading or trailing minus)
Currency codes and symbols (EUR, HRK, kn, GBP, EUR sign, ...) are stripped.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Optional

from pydantic import BaseModel

CURRENCY_TOKENS = ("EUR", "HRK", "GBP", "USD", "CHF", "KN")
CURRENCY_SYMBOLS = ("€", "£", "$")
MINUS_SIGNS = ("-", "−")


class AmountParseResult(BaseModel):
    amount: Optional[Decimal] = None
    raw_text: str
    is_negative: bool = False
    sign_convention: Optional[str] = None  # PARENTHESES, DR_CR, MINUS, NONE
    decimal_separator: Optional[str] = None


def _strip_currency(s: str) -> str:
    for symbol in CURRENCY_SYMBOLS:
        s = s.replace(symbol, "")
    s = re.sub(r"(?<![A-Za-z])(" + "|".join(CURRENCY_TOKENS) + r")(?![A-Za-z])", "", s, flags=re.IGNORECASE)
    return s.strip()


def _normalise_separators(s: str, decimal_hint: Optional[str]) -> tuple[str, Optional[str]]:
    """Return (plain decimal string, detected decimal separator)."""
    s = s.replace(" ", "").replace("\u00a0", "").replace("'", "")
    has_comma = "," in s
    has_dot = "." in s

    if has_comma and has_dot:
        # Whichever appears last is the decimal separator
        decimal_sep = "," if s.rfind(",") > s.rfind(".") else "."
    elif has_comma:
        if decimal_hint:
            decimal_sep = decimal_hint
        else:
            # 1,234 / 12,345,678 read as thousands; anything else as decimal comma
            decimal_sep = "" if re.fullmatch(r"\d{1,3}(,\d{3})+", s) else ","
    elif has_dot:
        if decimal_hint == "," and re.fullmatch(r"\d{1,3}(\.\d{3})+", s):
            decimal_sep = ""
        else:
            decimal_sep = "."
    else:
        return s, None

    thousands_sep = {",": ".", ".": ","}.get(decimal_sep)
    if decimal_sep == "":
        s = s.replace(",", "").replace(".", "")
        return s, None
    s = s.replace(thousands_sep, "").replace(decimal_sep, ".")
    return s, decimal_sep


def parse_amount(raw: Optional[str], decimal_hint: Optional[str] = None) -> AmountParseResult:
    """
    Parse a signed monetary amount.

    decimal_hint forces the decimal separator ("," or ".") when the column
    convention is known; otherwise it is inferred per value.
    """
    text = "" if raw is None else str(raw)
    s = _strip_currency(text.strip())

    if not s or s in ("-", "--", "---"):
        return AmountParseResult(amount=None, raw_text=text)

    is_negative = False
    sign_convention = "NONE"

    if s.startswith("(") and s.endswith(")"):
        s = s[1:-1].strip()
        is_negative = True
        sign_convention = "PARENTHESES"

    m = re.match(r"^(.+?)\s*(DR|CR)$", s, re.IGNORECASE)
    if m:
        s = m.group(1).strip()
        is_negative = m.group(2).upper() == "DR"
        sign_convention = "DR_CR"

    if not is_negative and s.endswith(MINUS_SIGNS):
        s = s[:-1].strip()
        is_negative = True
        sign_convention = "MINUS"

    if s.startswith(MINUS_SIGNS):
        s = s[1:].strip()
        is_negative = True
        sign_convention = "MINUS"
    elif s.startswith("+"):
        s = s[1:].strip()

    s, decimal_sep = _normalise_separators(s, decimal_hint)

    try:
        amount = Decimal(s)
    except (InvalidOperation, ValueError):
        return AmountParseResult(amount=None, raw_text=text)

    if is_negative:
        amount = -amount

    return AmountParseResult(
        amount=amount,
        raw_text=text,
        is_negative=is_negative,
        sign_convention=sign_convention,
        decimal_separator=decimal_sep,
    )


def is_amount_like(text: str) -> bool:
    """Quick check if text looks like it could be a monetary amount."""
    if not text or not text.strip():
        return False
    return parse_amount(text).amount is not None
