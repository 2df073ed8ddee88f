"""
Per-cell column transforms.

``apply_transform`` is pure and never raises for bad cell content: every
failure comes back as a TransformResult carrying a ParseError so the row
layer can decide whether the row survives. An empty cell is always a
successful ``None``; whether that is acceptable is the caller's concern.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, Optional

from ..errors import ParseError, ParseErrorKind
from ..schemas.templates import (
    ColumnTransform,
    CurrencyTransform,
    DateTransform,
    MapTransform,
    NoneTransform,
    NumberTransform,
    RegexTransform,
    SplitTransform,
)
from ..schemas.values import CURRENCY_PRECISION

MONTH_NAMES = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}

# Longest tokens first so "YYYY" is never read as two "YY"
_DATE_TOKENS = (
    ("YYYY", r"(?P<year>\d{4})"),
    ("YY", r"(?P<year2>\d{2})"),
    ("MMMM", r"(?P<month_name>[A-Za-z]+\.?)"),
    ("MMM", r"(?P<month_name>[A-Za-z]+\.?)"),
    ("MM", r"(?P<month>\d{1,2})"),
    ("M", r"(?P<month>\d{1,2})"),
    ("DD", r"(?P<day>\d{1,2})"),
    ("D", r"(?P<day>\d{1,2})"),
)

_CURRENCY_SYMBOLS = "$€£¥₹₽"
_NUMBER_RE = re.compile(r"(?:\d+(?:\.\d*)?|\.\d+)")


@dataclass(frozen=True)
class TransformResult:
    """Outcome of transforming one cell."""

    ok: bool
    value: Any = None
    error: Optional[ParseError] = None

    @classmethod
    def success(cls, value: Any) -> "TransformResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: ParseErrorKind, raw: str, message: str) -> "TransformResult":
        return cls(ok=False, error=ParseError(kind=kind, value=raw, message=message))


@lru_cache(maxsize=64)
def _compile_date_format(fmt: str) -> re.Pattern:
    pattern = []
    i = 0
    upper = fmt.upper()
    while i < len(fmt):
        for token, regex in _DATE_TOKENS:
            if upper.startswith(token, i):
                pattern.append(regex)
                i += len(token)
                break
        else:
            char = fmt[i]
            # Any whitespace in the format tolerates runs of whitespace
            pattern.append(r"\s+" if char.isspace() else re.escape(char))
            i += 1
    try:
        return re.compile("".join(pattern) + r"\Z", re.IGNORECASE)
    except re.error as e:
        raise ValueError(f"Invalid date format {fmt!r}: {e}") from e


def parse_date(text: str, fmt: str) -> date:
    """Parse ``text`` with an explicit token format such as ``DD/MM/YYYY``.

    Tokens: YYYY, YY (>50 means 19xx), MMMM/MMM (month name), MM/M, DD/D.
    Every other character is a literal. Raises ValueError when the value
    does not fit the format or names an impossible date.
    """
    match = _compile_date_format(fmt).match(text.strip())
    if not match:
        raise ValueError(f"{text!r} does not match date format {fmt!r}")
    parts = match.groupdict()

    if parts.get("year"):
        year = int(parts["year"])
    elif parts.get("year2"):
        short = int(parts["year2"])
        year = 1900 + short if short > 50 else 2000 + short
    else:
        raise ValueError(f"Date format {fmt!r} has no year token")

    if parts.get("month_name"):
        name = parts["month_name"].rstrip(".").lower()
        if name not in MONTH_NAMES:
            raise ValueError(f"Unknown month name {parts['month_name']!r}")
        month = MONTH_NAMES[name]
    elif parts.get("month"):
        month = int(parts["month"])
    else:
        raise ValueError(f"Date format {fmt!r} has no month token")

    if not parts.get("day"):
        raise ValueError(f"Date format {fmt!r} has no day token")
    day = int(parts["day"])

    # date() rejects month 13, Feb 30 and friends
    return date(year, month, day)


def _split_sign(text: str) -> tuple[bool, str]:
    """Strip accounting parentheses or a leading/trailing minus."""
    text = text.strip()
    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1].strip()
    if text.startswith("-"):
        negative = not negative
        text = text[1:].strip()
    elif text.endswith("-"):
        negative = not negative
        text = text[:-1].strip()
    return negative, text


def parse_number(text: str, thousands_sep: str = ",", decimal_sep: str = ".") -> Decimal:
    """Parse a localized number. Raises ValueError on anything non-numeric."""
    negative, body = _split_sign(text)
    if thousands_sep:
        body = body.replace(thousands_sep, "")
        if thousands_sep == " ":
            body = body.replace(" ", "")
    if decimal_sep != ".":
        if "." in body:
            raise ValueError(f"Unexpected '.' in {text!r}")
        body = body.replace(decimal_sep, ".")
    if body.count(".") > 1:
        raise ValueError(f"Multiple decimal points in {text!r}")
    if not _NUMBER_RE.fullmatch(body):
        raise ValueError(f"Not a number: {text!r}")
    try:
        amount = Decimal(body)
    except InvalidOperation as e:
        raise ValueError(f"Not a number: {text!r}") from e
    return -amount if negative else amount


def strip_currency(text: str, symbol: str = "") -> str:
    """Remove a currency symbol or ISO code from either end of ``text``."""
    body = text.strip()
    if symbol:
        if body.upper().startswith(symbol.upper()):
            body = body[len(symbol):].strip()
        elif body.upper().endswith(symbol.upper()):
            body = body[: -len(symbol)].strip()
    # Generic symbols and three-letter codes (e.g. "USD 1,200.00", "12,50 €")
    body = re.sub(rf"^(?:[{_CURRENCY_SYMBOLS}]|[A-Za-z]{{3}}(?=[\s\d.,]))\s*", "", body)
    body = re.sub(rf"\s*(?:[{_CURRENCY_SYMBOLS}]|(?<=[\s\d])[A-Za-z]{{3}})$", "", body)
    return body.strip()


def parse_currency(
    text: str,
    symbol: str = "",
    thousands_sep: str = ",",
    decimal_sep: str = ".",
) -> Decimal:
    negative, body = _split_sign(text)
    body = strip_currency(body, symbol)
    amount = parse_number(body, thousands_sep, decimal_sep).quantize(
        CURRENCY_PRECISION, rounding=ROUND_HALF_UP
    )
    return -amount if negative else amount


def apply_transform(transform: ColumnTransform, raw_value: Any) -> TransformResult:
    """Apply one column transform to one raw cell value."""
    raw = "" if raw_value is None else str(raw_value)
    text = raw.strip()
    if not text:
        return TransformResult.success(None)

    if isinstance(transform, NoneTransform):
        return TransformResult.success(text)

    if isinstance(transform, DateTransform):
        try:
            return TransformResult.success(parse_date(text, transform.format))
        except ValueError as e:
            return TransformResult.failure(ParseErrorKind.INVALID_DATE, raw, str(e))

    if isinstance(transform, NumberTransform):
        try:
            return TransformResult.success(
                parse_number(text, transform.thousands_sep, transform.decimal_sep)
            )
        except ValueError as e:
            return TransformResult.failure(ParseErrorKind.INVALID_NUMBER, raw, str(e))

    if isinstance(transform, CurrencyTransform):
        try:
            return TransformResult.success(
                parse_currency(
                    text, transform.symbol, transform.thousands_sep, transform.decimal_sep
                )
            )
        except ValueError as e:
            return TransformResult.failure(ParseErrorKind.INVALID_NUMBER, raw, str(e))

    if isinstance(transform, SplitTransform):
        parts = text.split(transform.delimiter) if transform.delimiter else [text]
        if transform.index < 0 or transform.index >= len(parts):
            return TransformResult.failure(
                ParseErrorKind.MISSING_PART,
                raw,
                f"Expected at least {transform.index + 1} parts split by "
                f"{transform.delimiter!r}, got {len(parts)}",
            )
        part = parts[transform.index].strip()
        return TransformResult.success(part or None)

    if isinstance(transform, RegexTransform):
        try:
            match = re.search(transform.pattern, text)
        except re.error as e:
            return TransformResult.failure(
                ParseErrorKind.NO_MATCH, raw, f"Invalid pattern {transform.pattern!r}: {e}"
            )
        if not match:
            return TransformResult.failure(
                ParseErrorKind.NO_MATCH, raw, f"No match for {transform.pattern!r}"
            )
        try:
            captured = match.group(transform.group)
        except IndexError:
            captured = None
        if captured is None:
            return TransformResult.failure(
                ParseErrorKind.NO_MATCH, raw, f"Group {transform.group} did not participate"
            )
        return TransformResult.success(captured.strip())

    if isinstance(transform, MapTransform):
        table = transform.table
        if text not in table:
            return TransformResult.failure(
                ParseErrorKind.UNMAPPED_VALUE, raw, f"No mapping for {text!r}"
            )
        return TransformResult.success(table[text])

    return TransformResult.failure(
        ParseErrorKind.UNKNOWN_TRANSFORM, raw, f"Unsupported transform {transform!r}"
    )
