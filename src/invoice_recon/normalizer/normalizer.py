"""
Document normalizer.

Turns mapped import rows and AI extraction payloads into CanonicalDocuments:
- required fields are enforced (documentNumber, documentDate, a total)
- missing totals/taxes are derived, inconsistent ones are flagged
- currency is normalized to an ISO 4217 code
- the document id is derived from its business identity so retried
  writes land on the same record
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Optional, Union

from ..errors import ValidationError
from ..importing.detection import DATE_FORMATS, header_score, transform_for
from ..importing.importer import MappedRow
from ..importing.transforms import apply_transform, parse_date
from ..schemas.documents import (
    CanonicalDocument,
    DocumentDirection,
    DocumentType,
    LineItem,
    PaymentStatus,
)
from ..schemas.extraction import AIExtractionPayload
from ..schemas.templates import IMPORTABLE_FIELDS
from ..schemas.values import CURRENCY_PRECISION, MONEY_EPSILON, parse_iso_date, to_decimal
from .aging import refresh_aging

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS = {
    "$": "USD",
    "€": "EUR",
    "£": "GBP",
    "¥": "JPY",
    "₹": "INR",
    "₽": "RUB",
    "ƒ": "AWG",
}

# Minimum header score for an AI metadata label to count as a field
AI_LABEL_THRESHOLD = 0.85

_NET_TERMS = re.compile(r"\bnet\s*(\d{1,3})\b", re.IGNORECASE)

_LINE_ITEM_HEADERS = {
    "description": ("description", "item", "details", "product", "service"),
    "quantity": ("quantity", "qty", "hours", "units"),
    "unit_price": ("unit price", "price", "rate", "unit cost"),
    "amount": ("amount", "total", "line total", "subtotal"),
}


@dataclass
class NormalizationResult:
    document: CanonicalDocument
    warnings: list[str] = field(default_factory=list)


def normalize_currency_code(value: Any) -> Optional[str]:
    """Extract an upper-case ISO code from free text.

    ``"AWG: Aruban florin"`` -> ``"AWG"``, ``"$"`` -> ``"USD"``.
    Returns None when nothing usable is found.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text in CURRENCY_SYMBOLS:
        return CURRENCY_SYMBOLS[text]
    match = re.match(r"^([A-Za-z]{3})\b", text)
    if match:
        return match.group(1).upper()
    return None


def document_id_for(
    owner: str,
    direction: DocumentDirection,
    document_number: str,
    document_date: date,
) -> str:
    """Deterministic id from the document's business identity."""
    canonical = (
        f"{owner}|{direction.value}|{document_number.strip().lower()}|{document_date.isoformat()}"
    )
    return "doc_" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:24]


def _coerce_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, (date, datetime)):
        return parse_iso_date(value)
    text = str(value).strip()
    try:
        return parse_iso_date(text)
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return parse_date(text, fmt)
        except ValueError:
            continue
    raise ValueError(f"Unrecognized date: {value!r}")


def _coerce_rate(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    text = str(value).strip().rstrip("%").strip().replace(",", ".")
    try:
        return Decimal(text)
    except InvalidOperation as e:
        raise ValueError(f"Invalid rate: {value!r}") from e


class DocumentNormalizer:
    """Builds canonical documents from mapped rows and AI payloads."""

    def __init__(self, config: Optional["Config"] = None) -> None:
        self.home_currency = config.home_currency if config else "USD"
        self.review_threshold = config.extraction.review_threshold if config else 0.6

    def normalize(
        self,
        source: Union[MappedRow, AIExtractionPayload, dict],
        owner: str,
        direction: DocumentDirection,
        *,
        origin: str = "import",
        template_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        org_id: Optional[str] = None,
        now: Optional[Union[date, datetime]] = None,
    ) -> NormalizationResult:
        """Normalize a mapped row, a plain field dict, or an AI payload.

        Raises:
            ValidationError: If a required canonical field is missing or unusable.
        """
        warnings: list[str] = []
        row: Optional[int] = None

        if isinstance(source, AIExtractionPayload):
            values = self.values_from_ai_payload(source, warnings)
            origin = "upload" if origin == "import" else origin
            confidence: Optional[float] = source.confidence
        elif isinstance(source, MappedRow):
            values = dict(source.values)
            row = source.row_index
            confidence = None
            for error in source.field_errors:
                warnings.append(f"{error.field}: {error.message}")
        else:
            values = dict(source)
            confidence = None

        document = self._build(values, owner, direction, warnings, row)
        document.source = origin
        document.import_template_id = template_id
        document.batch_id = batch_id
        document.org_id = org_id
        document.confidence = confidence
        refresh_aging(document, now or datetime.now())
        document.warnings = list(warnings)

        logger.debug(
            "Normalized %s %s (%s %s, %d warnings)",
            direction.value,
            document.document_number,
            document.total,
            document.currency,
            len(warnings),
        )
        return NormalizationResult(document=document, warnings=warnings)

    def _amount(
        self, values: dict, name: str, warnings: list[str], row: Optional[int]
    ) -> Optional[Decimal]:
        try:
            return to_decimal(values.get(name))
        except ValueError:
            if IMPORTABLE_FIELDS.get(name) and IMPORTABLE_FIELDS[name].required:
                raise ValidationError(
                    f"Invalid {name}: {values.get(name)!r}", field=name, row=row
                ) from None
            warnings.append(f"Ignored invalid {name}: {values.get(name)!r}")
            return None

    def _build(
        self,
        values: dict[str, Any],
        owner: str,
        direction: DocumentDirection,
        warnings: list[str],
        row: Optional[int],
    ) -> CanonicalDocument:
        number = str(values.get("documentNumber") or "").strip()
        if not number:
            raise ValidationError("documentNumber is required", field="documentNumber", row=row)

        try:
            document_date = _coerce_date(values.get("documentDate"))
        except ValueError as e:
            raise ValidationError(str(e), field="documentDate", row=row) from None
        if document_date is None:
            raise ValidationError("documentDate is required", field="documentDate", row=row)

        try:
            due_date = _coerce_date(values.get("dueDate"))
        except ValueError:
            warnings.append(f"Ignored invalid dueDate: {values.get('dueDate')!r}")
            due_date = None

        payment_terms = values.get("paymentTerms")
        if due_date is None and payment_terms:
            terms = _NET_TERMS.search(str(payment_terms))
            if terms:
                due_date = document_date + timedelta(days=int(terms.group(1)))

        subtotal = self._amount(values, "subtotal", warnings, row)
        tax_amount = self._amount(values, "taxAmount", warnings, row)
        discount = self._amount(values, "discount", warnings, row)
        shipping = self._amount(values, "shippingAmount", warnings, row)
        total = self._amount(values, "total", warnings, row)

        try:
            tax_rate = _coerce_rate(values.get("taxRate"))
        except ValueError:
            warnings.append(f"Ignored invalid taxRate: {values.get('taxRate')!r}")
            tax_rate = None

        if tax_amount is None and subtotal is not None and tax_rate is not None:
            tax_amount = (subtotal * tax_rate / Decimal(100)).quantize(
                CURRENCY_PRECISION, rounding=ROUND_HALF_UP
            )

        if subtotal is not None:
            expected = (
                subtotal
                + (tax_amount or Decimal("0"))
                - (discount or Decimal("0"))
                + (shipping or Decimal("0"))
            )
            if total is None:
                total = expected
            elif abs(total - expected) > MONEY_EPSILON:
                warnings.append(
                    f"Total {total} does not equal subtotal + tax - discount + shipping ({expected})"
                )

        if total is None:
            raise ValidationError(
                "total is required (or subtotal to derive it)", field="total", row=row
            )
        if total < 0:
            warnings.append(f"Negative total {total}; document may be a credit note")

        raw_currency = values.get("currency")
        currency = normalize_currency_code(raw_currency)
        if currency is None:
            if raw_currency:
                warnings.append(
                    f"Unrecognized currency {raw_currency!r}, assuming {self.home_currency}"
                )
            else:
                warnings.append(f"Currency missing, assuming {self.home_currency}")
            currency = self.home_currency

        counterparty = str(values.get("counterpartyName") or "").strip()
        if not counterparty:
            warnings.append("Counterparty name missing")

        default_type = (
            DocumentType.INVOICE if direction == DocumentDirection.OUTGOING else DocumentType.BILL
        )
        try:
            document_type = DocumentType(values.get("documentType") or default_type)
        except ValueError:
            document_type = default_type

        payment_status = PaymentStatus.UNPAID
        status_raw = str(values.get("paymentStatus") or "").strip().lower()
        if status_raw in ("void", "voided", "cancelled", "canceled"):
            payment_status = PaymentStatus.VOID
        elif status_raw and status_raw != "unpaid":
            warnings.append(
                f"Imported payment status {status_raw!r} ignored; payments come from reconciliation"
            )

        line_items = values.get("lineItems") or []

        return CanonicalDocument(
            id=document_id_for(owner, direction, number, document_date),
            owner=owner,
            direction=direction,
            document_type=document_type,
            counterparty_name=counterparty,
            counterparty_email=values.get("counterpartyEmail") or None,
            document_number=number,
            document_date=document_date,
            due_date=due_date,
            subtotal=subtotal,
            tax_rate=tax_rate,
            tax_amount=tax_amount,
            discount=discount,
            shipping_amount=shipping,
            total=total,
            currency=currency,
            purchase_order=values.get("purchaseOrder") or None,
            reference=values.get("reference") or None,
            description=values.get("description") or None,
            payment_terms=payment_terms or None,
            line_items=list(line_items),
            payment_status=payment_status,
        )

    def values_from_ai_payload(
        self, payload: AIExtractionPayload, warnings: list[str]
    ) -> dict[str, Any]:
        """Map AI metadata labels and the first table row onto canonical fields.

        Raises:
            ValidationError: If the service marked the document as not extractable.
        """
        if not payload.is_extractable:
            raise ValidationError("Document is not extractable", field=None)

        if payload.confidence < self.review_threshold:
            warnings.append(
                f"Low extraction confidence {payload.confidence:.2f}; review recommended"
            )
        warnings.extend(payload.warnings)

        values: dict[str, Any] = {}
        for item in payload.metadata:
            name = self._field_for_label(item.label)
            if name and name not in values and item.value.strip():
                values[name] = self._convert(name, item.value, warnings)

        if payload.rows:
            first = payload.rows[0]
            for label, raw in first.items():
                name = self._field_for_label(label)
                if name and name not in values and raw not in (None, ""):
                    values[name] = self._convert(name, str(raw), warnings)

        line_items = self._line_items(payload.rows)
        if line_items:
            values["lineItems"] = line_items
        return values

    @staticmethod
    def _field_for_label(label: str) -> Optional[str]:
        best_name, best = None, 0.0
        for name, spec in IMPORTABLE_FIELDS.items():
            score = header_score(label, spec)
            if score > best:
                best_name, best = name, score
        return best_name if best >= AI_LABEL_THRESHOLD else None

    @staticmethod
    def _convert(name: str, raw: str, warnings: list[str]) -> Any:
        spec = IMPORTABLE_FIELDS[name]
        result = apply_transform(transform_for(spec.kind, [raw]), raw)
        if result.error is not None:
            warnings.append(f"{name}: {result.error.message}")
            return None
        return result.value

    @staticmethod
    def _line_items(rows: list[dict[str, Any]]) -> list[LineItem]:
        if not rows:
            return []
        columns: dict[str, str] = {}
        for label in rows[0]:
            lowered = str(label).strip().lower()
            for attr, names in _LINE_ITEM_HEADERS.items():
                if attr not in columns and lowered in names:
                    columns[attr] = label
        if "description" not in columns or "amount" not in columns:
            return []

        items: list[LineItem] = []
        for data in rows:
            description = str(data.get(columns["description"]) or "").strip()
            if not description:
                continue
            parsed: dict[str, Optional[Decimal]] = {}
            for attr in ("quantity", "unit_price", "amount"):
                raw = data.get(columns[attr]) if attr in columns else None
                kind = "number" if attr == "quantity" else "currency"
                sample = "" if raw is None else str(raw)
                result = apply_transform(transform_for(kind, [sample]), sample)
                parsed[attr] = result.value if result.ok else None
            items.append(
                LineItem(
                    description=description,
                    quantity=parsed["quantity"],
                    unit_price=parsed["unit_price"],
                    amount=parsed["amount"],
                )
            )
        return items
