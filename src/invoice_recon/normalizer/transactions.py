"""
Bank statement row normalizer.

Turns mapped statement rows into Transactions:
- one signed amount column: negative is money out (debit), positive money in
- separate debit/credit columns: a non-zero debit wins, else the credit
- an explicit type column (CR/DR, credit/debit, deposit/withdrawal)
  overrides the sign
- zero or missing amounts are rejected
- the id is derived from the row's content so re-importing the same
  statement lands on the same records
"""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional

from ..errors import ValidationError
from ..importing.importer import MappedRow
from ..schemas.documents import Transaction, TransactionType
from ..schemas.values import to_decimal
from .normalizer import _coerce_date, normalize_currency_code

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)

_CREDIT_WORDS = re.compile(r"^(cr|credit|deposit|in|incoming|received)\b", re.IGNORECASE)
_DEBIT_WORDS = re.compile(r"^(dr|debit|withdrawal|out|outgoing|payment|paid)\b", re.IGNORECASE)


def transaction_id_for(
    owner: str,
    account_id: Optional[str],
    tx_date: date,
    signed_amount: Decimal,
    description: str,
    reference: Optional[str] = None,
    occurrence: int = 0,
) -> str:
    """Deterministic id from the statement line's content.

    ``occurrence`` separates identical lines of one statement (two equal
    card payments on the same day).
    """
    canonical = "|".join(
        [
            owner,
            account_id or "",
            tx_date.isoformat(),
            f"{signed_amount:.2f}",
            " ".join(description.lower().split()),
            (reference or "").strip().lower(),
            str(occurrence),
        ]
    )
    return "tx_" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:24]


def _amount(mapped: MappedRow, name: str) -> Optional[Decimal]:
    value = mapped.get(name)
    try:
        return to_decimal(value)
    except ValueError as e:
        raise ValidationError(str(e), field=name, row=mapped.row_index) from e


def _type_override(value: Any) -> Optional[TransactionType]:
    text = str(value or "").strip()
    if not text:
        return None
    if _CREDIT_WORDS.match(text):
        return TransactionType.CREDIT
    if _DEBIT_WORDS.match(text):
        return TransactionType.DEBIT
    return None


class TransactionNormalizer:
    """Builds Transactions from mapped bank statement rows."""

    def __init__(self, config: Optional["Config"] = None) -> None:
        self.home_currency = config.home_currency if config else "USD"

    def signed_amount(self, mapped: MappedRow) -> Decimal:
        """Amount with money in positive and money out negative.

        Raises:
            ValidationError: If no usable non-zero amount is present.
        """
        amount = _amount(mapped, "amount")
        if amount is not None and amount != 0:
            override = _type_override(mapped.get("type"))
            if override == TransactionType.CREDIT:
                return abs(amount)
            if override == TransactionType.DEBIT:
                return -abs(amount)
            return amount

        debit = _amount(mapped, "debit")
        if debit is not None and debit != 0:
            return -abs(debit)
        credit = _amount(mapped, "credit")
        if credit is not None and credit != 0:
            return abs(credit)

        raise ValidationError(
            "Transaction amount is missing or zero", field="amount", row=mapped.row_index
        )

    def normalize(
        self,
        mapped: MappedRow,
        owner: str,
        account_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        occurrence: int = 0,
    ) -> Transaction:
        """Normalize one mapped statement row.

        Raises:
            ValidationError: On a missing date, description or amount.
        """
        try:
            tx_date = _coerce_date(mapped.get("date"))
        except ValueError as e:
            raise ValidationError(str(e), field="date", row=mapped.row_index) from e
        if tx_date is None:
            raise ValidationError("Transaction date is missing", field="date", row=mapped.row_index)

        description = " ".join(str(mapped.get("description") or "").split())
        if not description:
            raise ValidationError(
                "Transaction description is missing", field="description", row=mapped.row_index
            )

        signed = self.signed_amount(mapped)
        reference = str(mapped.get("reference") or "").strip() or None
        currency = normalize_currency_code(mapped.get("currency")) or self.home_currency

        return Transaction(
            id=transaction_id_for(
                owner, account_id, tx_date, signed, description, reference, occurrence
            ),
            type=TransactionType.CREDIT if signed > 0 else TransactionType.DEBIT,
            amount=abs(signed),
            currency=currency,
            date=tx_date,
            description=description,
            owner=owner,
            account_id=account_id,
            reference=reference,
            batch_id=batch_id,
        )
