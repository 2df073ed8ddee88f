"""
Import template schemas.

An ImportTemplate remembers how the columns of one vendor's/bank's export
map onto canonical document fields, so the next file with the same layout
imports without re-detection. ColumnTransform is a tagged variant; the
serialized form ``{"type": "...", ...}`` is the persisted surface.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .documents import DocumentDirection
from .values import Timestamp


@dataclass(frozen=True)
class NoneTransform:
    type = "none"

    def to_dict(self) -> dict:
        return {"type": self.type}


@dataclass(frozen=True)
class DateTransform:
    format: str  # e.g. "DD/MM/YYYY"
    type = "date"

    def to_dict(self) -> dict:
        return {"type": self.type, "format": self.format}


@dataclass(frozen=True)
class NumberTransform:
    thousands_sep: str = ","
    decimal_sep: str = "."
    type = "number"

    def to_dict(self) -> dict:
        return {"type": self.type, "thousandsSep": self.thousands_sep, "decimalSep": self.decimal_sep}


@dataclass(frozen=True)
class CurrencyTransform:
    symbol: str = ""
    thousands_sep: str = ","
    decimal_sep: str = "."
    type = "currency"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "symbol": self.symbol,
            "thousandsSep": self.thousands_sep,
            "decimalSep": self.decimal_sep,
        }


@dataclass(frozen=True)
class SplitTransform:
    delimiter: str
    index: int
    type = "split"

    def to_dict(self) -> dict:
        return {"type": self.type, "delimiter": self.delimiter, "index": self.index}


@dataclass(frozen=True)
class RegexTransform:
    pattern: str
    group: int = 0
    type = "regex"

    def to_dict(self) -> dict:
        return {"type": self.type, "pattern": self.pattern, "group": self.group}


@dataclass(frozen=True)
class MapTransform:
    mappings: tuple[tuple[str, str], ...]
    type = "map"

    @classmethod
    def from_table(cls, table: dict[str, str]) -> "MapTransform":
        return cls(tuple(sorted(table.items())))

    @property
    def table(self) -> dict[str, str]:
        return dict(self.mappings)

    def to_dict(self) -> dict:
        return {"type": self.type, "mappings": self.table}


ColumnTransform = Union[
    NoneTransform,
    DateTransform,
    NumberTransform,
    CurrencyTransform,
    SplitTransform,
    RegexTransform,
    MapTransform,
]


def transform_from_dict(data: dict | None) -> ColumnTransform:
    """Rebuild a transform from its persisted ``{"type": ...}`` form."""
    if not data:
        return NoneTransform()
    kind = data.get("type", "none")
    if kind == "none":
        return NoneTransform()
    if kind == "date":
        return DateTransform(format=data["format"])
    if kind == "number":
        return NumberTransform(
            thousands_sep=data.get("thousandsSep", ","),
            decimal_sep=data.get("decimalSep", "."),
        )
    if kind == "currency":
        return CurrencyTransform(
            symbol=data.get("symbol", ""),
            thousands_sep=data.get("thousandsSep", ","),
            decimal_sep=data.get("decimalSep", "."),
        )
    if kind == "split":
        return SplitTransform(delimiter=data["delimiter"], index=int(data["index"]))
    if kind == "regex":
        return RegexTransform(pattern=data["pattern"], group=int(data.get("group", 0)))
    if kind == "map":
        return MapTransform.from_table(data.get("mappings") or {})
    raise ValueError(f"Unknown column transform type: {kind!r}")


@dataclass(frozen=True)
class FieldSpec:
    """A canonical field that import files can be mapped onto."""

    name: str
    label: str
    required: bool
    kind: str  # string | number | currency | date | percentage
    synonyms: tuple[str, ...]


# Fields that can be mapped from import files
IMPORTABLE_FIELDS: dict[str, FieldSpec] = {
    spec.name: spec
    for spec in (
        FieldSpec("documentNumber", "Invoice Number", True, "string",
                  ("invoice number", "invoice no", "invoice #", "inv no", "bill number",
                   "document number", "order id", "number", "reference number")),
        FieldSpec("total", "Total Amount", True, "currency",
                  ("total", "amount", "total amount", "grand total", "amount due",
                   "total invoiced", "gross")),
        FieldSpec("documentDate", "Invoice Date", True, "date",
                  ("invoice date", "date", "bill date", "issue date", "document date",
                   "inv date")),
        FieldSpec("counterpartyName", "Customer/Vendor Name", False, "string",
                  ("customer", "customer name", "client", "vendor", "vendor name",
                   "supplier", "bill to", "payee", "company", "name")),
        FieldSpec("counterpartyEmail", "Customer/Vendor Email", False, "string",
                  ("email", "customer email", "vendor email", "e-mail")),
        FieldSpec("subtotal", "Subtotal", False, "currency",
                  ("subtotal", "sub total", "net amount", "net", "amount before tax")),
        FieldSpec("taxAmount", "Tax Amount", False, "currency",
                  ("tax", "tax amount", "vat", "gst", "total taxes", "sales tax")),
        FieldSpec("taxRate", "Tax Rate (%)", False, "percentage",
                  ("tax rate", "vat rate", "tax %", "rate")),
        FieldSpec("discount", "Discount", False, "currency", ("discount", "rebate")),
        FieldSpec("shippingAmount", "Shipping", False, "currency",
                  ("shipping", "freight", "delivery")),
        FieldSpec("currency", "Currency", False, "string", ("currency", "ccy", "cur")),
        FieldSpec("dueDate", "Due Date", False, "date",
                  ("due date", "payment due", "due", "due by")),
        FieldSpec("purchaseOrder", "PO Number", False, "string",
                  ("po", "po number", "purchase order")),
        FieldSpec("reference", "Reference", False, "string", ("reference", "ref")),
        FieldSpec("description", "Description/Notes", False, "string",
                  ("description", "memo", "notes", "details")),
        FieldSpec("paymentTerms", "Payment Terms", False, "string", ("terms", "payment terms")),
        FieldSpec("paymentStatus", "Payment Status", False, "string",
                  ("status", "payment status")),
    )
}

REQUIRED_FIELDS = tuple(name for name, spec in IMPORTABLE_FIELDS.items() if spec.required)

TARGET_DOCUMENTS = "documents"
TARGET_TRANSACTIONS = "transactions"

# Bank statement columns. A statement carries either one signed amount
# column or separate debit/credit columns, so no amount column is required.
TRANSACTION_FIELDS: dict[str, FieldSpec] = {
    spec.name: spec
    for spec in (
        FieldSpec("date", "Transaction Date", True, "date",
                  ("date", "transaction date", "posting date", "posted date", "booking date",
                   "value date", "trans date")),
        FieldSpec("description", "Description", True, "string",
                  ("description", "details", "memo", "narrative", "payee", "transaction details",
                   "particulars")),
        FieldSpec("amount", "Amount", False, "currency",
                  ("amount", "transaction amount", "amount (usd)", "net amount")),
        FieldSpec("debit", "Debit (money out)", False, "currency",
                  ("debit", "debits", "withdrawal", "withdrawals", "money out", "paid out")),
        FieldSpec("credit", "Credit (money in)", False, "currency",
                  ("credit", "credits", "deposit", "deposits", "money in", "paid in")),
        FieldSpec("balance", "Balance", False, "currency",
                  ("balance", "running balance", "closing balance")),
        FieldSpec("currency", "Currency", False, "string", ("currency", "ccy", "cur")),
        FieldSpec("reference", "Reference", False, "string",
                  ("reference", "ref", "check number", "cheque number", "transaction id")),
        FieldSpec("type", "Type", False, "string",
                  ("type", "transaction type", "dr/cr", "cr/dr")),
    )
}


@dataclass
class ImportTemplateColumn:
    source_column: str  # Column header from file
    target_field: str  # Canonical field name
    transform: ColumnTransform = field(default_factory=NoneTransform)
    required: bool = False
    source_index: Optional[int] = None  # Column position when the template was learned

    def to_dict(self) -> dict:
        return {
            "sourceColumn": self.source_column,
            "targetField": self.target_field,
            "transform": self.transform.to_dict(),
            "required": self.required,
            "sourceIndex": self.source_index,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ImportTemplateColumn":
        return cls(
            source_column=data["sourceColumn"],
            target_field=data["targetField"],
            transform=transform_from_dict(data.get("transform")),
            required=bool(data.get("required", False)),
            source_index=data.get("sourceIndex"),
        )


@dataclass
class DetectionPatterns:
    header_row: Optional[int] = None
    required_headers: list[str] = field(default_factory=list)
    vendor_pattern: Optional[str] = None  # Regex matched against the file name

    def to_dict(self) -> dict:
        return {
            "headerRow": self.header_row,
            "requiredHeaders": list(self.required_headers),
            "vendorPattern": self.vendor_pattern,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "DetectionPatterns":
        data = data or {}
        return cls(
            header_row=data.get("headerRow"),
            required_headers=list(data.get("requiredHeaders") or []),
            vendor_pattern=data.get("vendorPattern"),
        )


@dataclass
class ImportTemplate:
    id: str
    owner: str
    name: str
    direction: Optional[DocumentDirection]  # None for bank statement templates
    columns: list[ImportTemplateColumn]
    file_type: str = "csv"
    detection_patterns: DetectionPatterns = field(default_factory=DetectionPatterns)
    defaults: dict[str, Any] = field(default_factory=dict)

    # Statistics
    usage_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    success_rate: float = 0.0
    last_used_at: Optional[Timestamp] = None
    # "documents" (invoices/bills) or "transactions" (bank statements)
    target: str = TARGET_DOCUMENTS

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.owner,
            "name": self.name,
            "target": self.target,
            "direction": self.direction.value if self.direction else None,
            "fileType": self.file_type,
            "columns": [c.to_dict() for c in self.columns],
            "detectionPatterns": self.detection_patterns.to_dict(),
            "defaults": dict(self.defaults),
            "usageCount": self.usage_count,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "successRate": self.success_rate,
            "lastUsedAt": self.last_used_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ImportTemplate":
        last_used = data.get("lastUsedAt")
        if isinstance(last_used, str):
            last_used = Timestamp.from_iso(last_used)
        target = data.get("target") or TARGET_DOCUMENTS
        direction = data.get("direction")
        if target == TARGET_DOCUMENTS:
            direction = DocumentDirection(direction or "outgoing")
        return cls(
            id=str(data["id"]),
            owner=data.get("userId") or "",
            name=data.get("name") or "",
            direction=DocumentDirection(direction) if direction else None,
            columns=[ImportTemplateColumn.from_dict(c) for c in data.get("columns") or []],
            file_type=data.get("fileType", "csv"),
            detection_patterns=DetectionPatterns.from_dict(data.get("detectionPatterns")),
            defaults=dict(data.get("defaults") or {}),
            usage_count=int(data.get("usageCount") or 0),
            success_count=int(data.get("successCount") or 0),
            failure_count=int(data.get("failureCount") or 0),
            success_rate=float(data.get("successRate") or 0.0),
            last_used_at=last_used,
            target=target,
        )


@dataclass
class DetectedColumn:
    index: int
    header: str
    suggested_field: Optional[str]
    confidence: float
    sample_values: list[str] = field(default_factory=list)
    detected_type: str = "string"  # string | number | date | currency | percentage
    transform: ColumnTransform = field(default_factory=NoneTransform)

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "header": self.header,
            "suggestedField": self.suggested_field,
            "confidence": round(self.confidence, 4),
            "sampleValues": list(self.sample_values),
            "detectedType": self.detected_type,
            "transform": self.transform.to_dict(),
        }


@dataclass
class DetectedFormat:
    header_row: int
    data_start_row: int
    total_rows: int
    columns: list[DetectedColumn]
    sample_data: list[dict[str, str]] = field(default_factory=list)
    confidence: float = 0.0
    suggestions: list[str] = field(default_factory=list)
    matched_template_id: Optional[str] = None
    matched_template_name: Optional[str] = None
    template_confidence: Optional[float] = None

    @property
    def headers(self) -> list[str]:
        return [c.header for c in self.columns]

    def assigned(self) -> dict[str, DetectedColumn]:
        """Columns with a suggested field, keyed by that field."""
        return {c.suggested_field: c for c in self.columns if c.suggested_field}

    def to_dict(self) -> dict:
        return {
            "headerRow": self.header_row,
            "dataStartRow": self.data_start_row,
            "totalRows": self.total_rows,
            "columns": [c.to_dict() for c in self.columns],
            "sampleData": self.sample_data,
            "confidence": round(self.confidence, 4),
            "suggestions": self.suggestions,
            "matchedTemplateId": self.matched_template_id,
            "matchedTemplateName": self.matched_template_name,
            "templateConfidence": self.template_confidence,
        }
