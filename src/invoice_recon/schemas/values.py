"""
Money helpers and opaque stored values.

Opaque values carry an explicit type discriminator (``__type__``) so that
anything walking a stored record (the session replicator, the JSON codec)
can tell "traverse" from "pass through" without inspecting class names.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar

# Rounding precision for currency amounts
CURRENCY_PRECISION = Decimal("0.01")

# Tolerance for "amounts are equal" comparisons (one cent)
MONEY_EPSILON = Decimal("0.01")

TYPE_KEY = "__type__"


def to_decimal(value: Any) -> Decimal | None:
    """Convert a stored or computed amount to a quantized Decimal.

    Returns None for None/empty input. Floats go through ``str`` first so
    binary artifacts never leak into amounts.
    """
    if value is None or value == "":
        return None
    try:
        if isinstance(value, Decimal):
            amount = value
        elif isinstance(value, float):
            amount = Decimal(str(value))
        else:
            amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    return amount.quantize(CURRENCY_PRECISION, rounding=ROUND_HALF_UP)


def money(value: Any) -> Decimal:
    """Like :func:`to_decimal` but treats missing values as zero."""
    amount = to_decimal(value)
    return amount if amount is not None else Decimal("0.00")


def amounts_equal(a: Decimal, b: Decimal, epsilon: Decimal = MONEY_EPSILON) -> bool:
    """True if two amounts differ by no more than ``epsilon``."""
    return abs(a - b) <= epsilon


def format_money(amount: Decimal | None) -> str | None:
    """Serialize an amount with two decimals and a dot separator."""
    if amount is None:
        return None
    return f"{amount:.2f}"


def parse_iso_date(value: Any) -> date | None:
    """Parse a stored YYYY-MM-DD (or full ISO timestamp) into a date."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, Timestamp):
        return value.value.date()
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError as e:
        raise ValueError(f"Invalid ISO date: {value!r}") from e


def format_iso_date(value: date | None) -> str | None:
    return value.isoformat() if value else None


class OpaqueValue:
    """Base for values that are stored as a unit and never traversed."""

    type_tag: ClassVar[str] = ""

    def to_json(self) -> dict:
        raise NotImplementedError


@dataclass(frozen=True)
class Timestamp(OpaqueValue):
    """A point in time, always timezone-aware UTC."""

    value: datetime
    type_tag: ClassVar[str] = "timestamp"

    @classmethod
    def now(cls) -> "Timestamp":
        return cls(datetime.now(timezone.utc))

    @classmethod
    def from_iso(cls, text: str) -> "Timestamp":
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return cls(parsed)

    def isoformat(self) -> str:
        return self.value.isoformat()

    def to_json(self) -> dict:
        return {TYPE_KEY: self.type_tag, "value": self.isoformat()}


@dataclass(frozen=True)
class Blob(OpaqueValue):
    """Binary payload (e.g. a thumbnail) stored alongside a record."""

    data: bytes
    type_tag: ClassVar[str] = "bytes"

    def to_json(self) -> dict:
        return {TYPE_KEY: self.type_tag, "value": base64.b64encode(self.data).decode("ascii")}


def encode_value(value: Any) -> Any:
    """Recursively convert a record into JSON-safe primitives."""
    if isinstance(value, OpaqueValue):
        return value.to_json()
    if isinstance(value, bytes):
        return Blob(value).to_json()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return format_money(value) if value == value.quantize(CURRENCY_PRECISION) else str(value)
    if isinstance(value, datetime):
        return Timestamp(value).to_json()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: encode_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(item) for item in value]
    return value


def decode_value(value: Any) -> Any:
    """Inverse of :func:`encode_value` for discriminated opaque values."""
    if isinstance(value, dict):
        tag = value.get(TYPE_KEY)
        if tag == Timestamp.type_tag:
            return Timestamp.from_iso(value["value"])
        if tag == Blob.type_tag:
            return Blob(base64.b64decode(value["value"]))
        return {key: decode_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [decode_value(item) for item in value]
    return value


def is_opaque(value: Any) -> bool:
    """True for values a recursive rewriter must pass through untouched."""
    if isinstance(value, (OpaqueValue, bytes)):
        return True
    return isinstance(value, dict) and value.get(TYPE_KEY) in (Timestamp.type_tag, Blob.type_tag)
