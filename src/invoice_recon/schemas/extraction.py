"""
AI extraction payload (interface boundary).

The extraction model is an external HTTP service. Its JSON answer is parsed
into these dataclasses and nothing downstream reads the raw JSON.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class ExtractedMetadata:
    """A labelled value the model found outside the table (e.g. "Invoice No")."""

    label: str
    value: str
    category: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ExtractedMetadata":
        value = data.get("value")
        return cls(
            label=str(data.get("label") or ""),
            value="" if value is None else str(value),
            category=data.get("category"),
        )


@dataclass
class ExtractedHeader:
    name: str
    type: str = "string"  # string | number | date | currency | boolean
    description: Optional[str] = None
    example: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ExtractedHeader":
        return cls(
            name=str(data.get("name") or ""),
            type=data.get("type") or "string",
            description=data.get("description"),
            example=data.get("example"),
        )


@dataclass
class AIExtractionPayload:
    document_type: str
    metadata: list[ExtractedMetadata] = field(default_factory=list)
    headers: list[ExtractedHeader] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)
    page_count: int = 1
    confidence: float = 0.0
    is_extractable: bool = True
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "AIExtractionPayload":
        """Parse the service response.

        Raises:
            ValueError: If the payload is not a JSON object or a field has the wrong shape.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Extraction payload must be an object, got {type(data).__name__}")
        rows = data.get("rows") or []
        if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
            raise ValueError("Extraction payload 'rows' must be a list of objects")
        return cls(
            document_type=str(data.get("documentType") or "Other"),
            metadata=[ExtractedMetadata.from_dict(m) for m in data.get("metadata") or []],
            headers=[ExtractedHeader.from_dict(h) for h in data.get("headers") or []],
            rows=rows,
            page_count=int(data.get("pageCount") or 1),
            confidence=float(data.get("confidence") or 0.0),
            is_extractable=bool(data.get("isExtractable", True)),
            warnings=[str(w) for w in data.get("warnings") or []],
        )
