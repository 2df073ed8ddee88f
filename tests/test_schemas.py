"""Tests for stored value helpers and the canonical document shape."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from invoice_recon.schemas.documents import CanonicalDocument, LineItem, MatchMethod
from invoice_recon.schemas.values import (
    Blob,
    Timestamp,
    decode_value,
    encode_value,
    format_money,
    is_opaque,
    parse_iso_date,
    to_decimal,
)
from invoice_recon.services import apply_payment


class TestMoney:
    """Tests for amount helpers."""

    def test_float_goes_through_str(self):
        assert to_decimal(0.1 + 0.2) == Decimal("0.30")

    def test_rounds_half_up(self):
        assert to_decimal("2.675") == Decimal("2.68")

    def test_empty_is_none(self):
        assert to_decimal("") is None
        assert format_money(None) is None

    def test_invalid(self):
        with pytest.raises(ValueError):
            to_decimal("abc")

    def test_format(self):
        assert format_money(Decimal("5")) == "5.00"


class TestOpaqueValues:
    """Tests for the typed value codec."""

    def test_timestamp_encoding(self):
        stamp = Timestamp(datetime(2024, 1, 1, tzinfo=timezone.utc))
        encoded = encode_value({"at": stamp, "items": [stamp]})

        assert encoded["at"] == {"__type__": "timestamp", "value": "2024-01-01T00:00:00+00:00"}
        assert decode_value(encoded) == {"at": stamp, "items": [stamp]}

    def test_bytes_become_blobs(self):
        assert decode_value(encode_value(b"\x01\x02")) == Blob(b"\x01\x02")

    def test_plain_dicts_are_not_opaque(self):
        assert is_opaque(Timestamp.now())
        assert is_opaque(b"x")
        assert is_opaque({"__type__": "bytes", "value": "eA=="})
        assert not is_opaque({"__type__": "other"})
        assert not is_opaque("demo_user")

    def test_dates(self):
        assert encode_value(date(2024, 2, 29)) == "2024-02-29"
        assert parse_iso_date("2024-02-29T10:00:00Z") == date(2024, 2, 29)
        with pytest.raises(ValueError):
            parse_iso_date("29/02/2024")


class TestCanonicalDocument:
    """Tests for the persisted document shape."""

    def test_round_trip_with_payment(self, document_factory, transaction_factory):
        doc = document_factory()
        doc.line_items = [LineItem("Design", Decimal("2"), Decimal("500.00"), Decimal("1000.00"))]
        apply_payment(
            doc,
            transaction_factory(amount="400.00"),
            method=MatchMethod.MANUAL,
            now=Timestamp(datetime(2024, 2, 2, tzinfo=timezone.utc)),
        )

        data = doc.to_dict()
        rebuilt = CanonicalDocument.from_dict(data)

        assert data["amountRemaining"] == "600.00"
        assert data["matchedTransactionIds"] == ["tx_1"]
        assert data["lineItemCount"] == 1
        assert rebuilt == doc

    def test_remaining_defaults_to_total(self, document_factory):
        assert document_factory(total="12.50").amount_remaining == Decimal("12.50")
