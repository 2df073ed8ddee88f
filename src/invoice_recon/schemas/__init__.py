"""
SSOT (Single Source of Truth) schemas for the pipeline.

These canonical schemas are the ONLY models used across all modules.
No duplicated "near-same" models allowed.
"""

from .documents import (
    AgingBucket,
    CanonicalDocument,
    DocumentDirection,
    DocumentType,
    LineItem,
    MatchMethod,
    PaymentRecord,
    PaymentStatus,
    ReconciliationStatus,
    Transaction,
    TransactionType,
    collection_for,
    transaction_type_for,
)
from .extraction import AIExtractionPayload, ExtractedHeader, ExtractedMetadata
from .patterns import MatchHistoryEntry, VendorPattern
from .templates import (
    IMPORTABLE_FIELDS,
    REQUIRED_FIELDS,
    TARGET_DOCUMENTS,
    TARGET_TRANSACTIONS,
    TRANSACTION_FIELDS,
    ColumnTransform,
    CurrencyTransform,
    DateTransform,
    DetectedColumn,
    DetectedFormat,
    DetectionPatterns,
    FieldSpec,
    ImportTemplate,
    ImportTemplateColumn,
    MapTransform,
    NoneTransform,
    NumberTransform,
    RegexTransform,
    SplitTransform,
    transform_from_dict,
)
from .values import (
    CURRENCY_PRECISION,
    MONEY_EPSILON,
    Blob,
    Timestamp,
    amounts_equal,
    decode_value,
    encode_value,
    is_opaque,
    money,
    to_decimal,
)

__all__ = [
    # Canonical documents
    "CanonicalDocument",
    "LineItem",
    "Transaction",
    "PaymentRecord",
    "DocumentDirection",
    "DocumentType",
    "TransactionType",
    "PaymentStatus",
    "ReconciliationStatus",
    "AgingBucket",
    "MatchMethod",
    "collection_for",
    "transaction_type_for",
    # Import templates
    "ImportTemplate",
    "ImportTemplateColumn",
    "DetectionPatterns",
    "DetectedColumn",
    "DetectedFormat",
    "FieldSpec",
    "IMPORTABLE_FIELDS",
    "REQUIRED_FIELDS",
    "TARGET_DOCUMENTS",
    "TARGET_TRANSACTIONS",
    "TRANSACTION_FIELDS",
    "ColumnTransform",
    "NoneTransform",
    "DateTransform",
    "NumberTransform",
    "CurrencyTransform",
    "SplitTransform",
    "RegexTransform",
    "MapTransform",
    "transform_from_dict",
    # Pattern memory
    "VendorPattern",
    "MatchHistoryEntry",
    # AI extraction
    "AIExtractionPayload",
    "ExtractedHeader",
    "ExtractedMetadata",
    # Values
    "CURRENCY_PRECISION",
    "MONEY_EPSILON",
    "Timestamp",
    "Blob",
    "to_decimal",
    "money",
    "amounts_equal",
    "encode_value",
    "decode_value",
    "is_opaque",
]
