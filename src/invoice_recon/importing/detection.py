"""
Format detection for uploaded tables.

Finds the header row of a raw table, then scores every column against the
importable canonical fields by header name (synonyms plus fuzzy ratio) and
by how well its first sample values parse as the field's expected type.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Sequence

from rapidfuzz import fuzz

from ..errors import AmbiguousHeaderRow
from ..schemas.templates import (
    IMPORTABLE_FIELDS,
    ColumnTransform,
    CurrencyTransform,
    DateTransform,
    DetectedColumn,
    DetectedFormat,
    FieldSpec,
    NoneTransform,
    NumberTransform,
    RegexTransform,
)
from .transforms import apply_transform, parse_date, parse_number, strip_currency

if TYPE_CHECKING:
    from ..config import ImportConfig

logger = logging.getLogger(__name__)

# Tried in order; the first format with the most successes wins, so the
# US month-first reading is preferred when a sample fits both.
DATE_FORMATS = (
    "YYYY-MM-DD",
    "MM/DD/YYYY",
    "DD/MM/YYYY",
    "DD.MM.YYYY",
    "DD-MM-YYYY",
    "MM-DD-YYYY",
    "YYYY/MM/DD",
    "DD MMM YYYY",
    "MMM DD, YYYY",
    "DD-MMM-YYYY",
    "DD-MMM-YY",
    "MM/DD/YY",
    "DD/MM/YY",
)

PERCENT_PATTERN = r"-?\d+(?:[.,]\d+)?"

_DATE_LIKE = re.compile(r"^\d{1,4}[-/.]\d{1,2}[-/.]\d{1,4}$")
_COMMA_DECIMAL = re.compile(r"\d,\d{1,2}$")
_FUZZY_CUTOFF = 70.0


@dataclass(frozen=True)
class DetectionSettings:
    """Tunables for detect_format; mirrors ImportConfig."""

    header_scan_rows: int = 10
    header_density: float = 0.6
    header_weight: float = 0.6
    value_weight: float = 0.4
    column_threshold: float = 0.5
    sample_size: int = 5

    @classmethod
    def from_config(cls, config: Optional["ImportConfig"]) -> "DetectionSettings":
        if config is None:
            return cls()
        return cls(
            header_scan_rows=config.header_scan_rows,
            header_density=config.header_density,
            header_weight=config.header_weight,
            value_weight=config.value_weight,
            column_threshold=config.column_threshold,
            sample_size=config.sample_size,
        )


def normalize_header(text: str) -> str:
    """Lower-case, punctuation to spaces, collapsed whitespace."""
    text = text.lower().replace("#", " number ")
    return " ".join(re.sub(r"[^a-z0-9%]+", " ", text).split())


def _is_blank_row(row: Sequence[str]) -> bool:
    return not any(str(cell).strip() for cell in row)


def _looks_numeric(cell: str) -> bool:
    try:
        parse_number(strip_currency(cell.rstrip("%")))
        return True
    except ValueError:
        pass
    try:
        parse_number(strip_currency(cell.rstrip("%")), ".", ",")
        return True
    except ValueError:
        return False


def _looks_like_value(cell: str) -> bool:
    return bool(_DATE_LIKE.match(cell)) or _looks_numeric(cell)


def find_header_row(raw_table: Sequence[Sequence[str]], settings: DetectionSettings) -> int:
    """Index of the earliest plausible header row.

    A header row has at least ``header_density`` non-empty cells and is not
    mostly numbers or dates.
    """
    scan = [list(row) for row in raw_table[: settings.header_scan_rows]]
    width = max((len(row) for row in scan), default=0)
    if width == 0:
        raise AmbiguousHeaderRow("Table is empty")

    for index, row in enumerate(scan):
        cells = [str(cell).strip() for cell in row]
        filled = [cell for cell in cells if cell]
        if not filled or len(filled) / width < settings.header_density:
            continue
        value_like = sum(1 for cell in filled if _looks_like_value(cell))
        if value_like / len(filled) >= 0.5:
            continue
        return index

    raise AmbiguousHeaderRow(
        f"No row in the first {len(scan)} rows has at least "
        f"{settings.header_density:.0%} non-empty text cells"
    )


def infer_date_format(samples: Sequence[str]) -> tuple[Optional[str], float]:
    """Best date format for the samples and the fraction it parses."""
    if not samples:
        return None, 0.0
    best_format, best_hits = None, 0
    for fmt in DATE_FORMATS:
        hits = 0
        for sample in samples:
            try:
                parse_date(sample, fmt)
                hits += 1
            except ValueError:
                continue
        if hits > best_hits:
            best_format, best_hits = fmt, hits
    return best_format, best_hits / len(samples)


def infer_separators(samples: Sequence[str]) -> tuple[str, str]:
    """(thousands_sep, decimal_sep) for a column of numbers."""
    for sample in samples:
        body = strip_currency(sample.strip().strip("()-"))
        if _COMMA_DECIMAL.search(body):
            return ".", ","
    return ",", "."


def _currency_symbol(samples: Sequence[str]) -> str:
    for sample in samples:
        match = re.match(r"^\(?-?\s*([$€£¥₹₽]|[A-Z]{3}(?=[\s\d]))", sample.strip())
        if match:
            return match.group(1)
    return ""


def transform_for(kind: str, samples: Sequence[str]) -> ColumnTransform:
    """Transform that parses a column of the given kind."""
    if kind == "date":
        fmt, _ = infer_date_format(samples)
        return DateTransform(format=fmt or "YYYY-MM-DD")
    if kind == "currency":
        thousands, decimal = infer_separators(samples)
        return CurrencyTransform(
            symbol=_currency_symbol(samples), thousands_sep=thousands, decimal_sep=decimal
        )
    if kind == "number":
        thousands, decimal = infer_separators(samples)
        return NumberTransform(thousands_sep=thousands, decimal_sep=decimal)
    if kind == "percentage":
        return RegexTransform(pattern=PERCENT_PATTERN, group=0)
    return NoneTransform()


def value_score(kind: str, samples: Sequence[str]) -> float:
    """Fraction of samples that parse as ``kind``."""
    if not samples:
        return 0.0
    if kind == "string":
        return 1.0
    transform = transform_for(kind, samples)
    hits = sum(1 for sample in samples if apply_transform(transform, sample).ok)
    return hits / len(samples)


def header_score(header: str, spec: FieldSpec) -> float:
    """How well a header names a field: exact 1.0, containment 0.85, else fuzzy."""
    norm = normalize_header(header)
    if not norm:
        return 0.0
    best = 0.0
    padded = f" {norm} "
    for synonym in spec.synonyms:
        syn = normalize_header(synonym)
        if norm == syn:
            return 1.0
        if f" {syn} " in padded:
            best = max(best, 0.85)
            continue
        ratio = fuzz.ratio(norm, syn, score_cutoff=_FUZZY_CUTOFF)
        best = max(best, ratio / 100.0)
    return best


def detect_type(samples: Sequence[str]) -> str:
    """Coarse type of a column judged only from its sample values."""
    if not samples:
        return "string"
    if all(s.strip().endswith("%") for s in samples):
        return "percentage"
    _, date_hits = infer_date_format(samples)
    if date_hits == 1.0:
        return "date"
    if all(_looks_numeric(s) for s in samples):
        if _currency_symbol(samples):
            return "currency"
        return "number"
    return "string"


def _column_samples(
    data_rows: Sequence[Sequence[str]], index: int, limit: int
) -> list[str]:
    samples: list[str] = []
    for row in data_rows:
        if index < len(row):
            cell = str(row[index]).strip()
            if cell:
                samples.append(cell)
                if len(samples) >= limit:
                    break
    return samples


def detect_format(
    raw_table: Sequence[Sequence[str]],
    config: Optional["ImportConfig"] = None,
    fields: Optional[dict[str, FieldSpec]] = None,
) -> DetectedFormat:
    """Detect header row and column-to-field mapping of a raw table.

    Args:
        raw_table: Rows of raw cell strings (ragged rows allowed).
        config: Import settings; defaults are used when omitted.
        fields: Target fields to map columns onto; invoice/bill fields by default.

    Returns:
        DetectedFormat with per-column suggestions and overall confidence.

    Raises:
        AmbiguousHeaderRow: If no scanned row qualifies as a header.
    """
    settings = DetectionSettings.from_config(config)
    fields = fields or IMPORTABLE_FIELDS
    required_fields = tuple(name for name, spec in fields.items() if spec.required)
    header_index = find_header_row(raw_table, settings)
    header_cells = [str(cell).strip() for cell in raw_table[header_index]]
    data_rows = [row for row in raw_table[header_index + 1:] if not _is_blank_row(row)]
    width = max([len(header_cells)] + [len(row) for row in data_rows[: settings.sample_size]])

    columns: list[DetectedColumn] = []
    ranked: list[tuple[float, int, str]] = []
    field_order = list(fields)

    for index in range(width):
        header = header_cells[index] if index < len(header_cells) else ""
        header = header or f"Column {index + 1}"
        samples = _column_samples(data_rows, index, settings.sample_size)

        best_field: Optional[str] = None
        best_conf = 0.0
        for name in field_order:
            spec = fields[name]
            h_score = header_score(header, spec)
            if h_score == 0.0:
                continue
            conf = settings.header_weight * h_score + settings.value_weight * value_score(
                spec.kind, samples
            )
            # Strictly greater: earlier fields in the table win ties
            if conf > best_conf:
                best_field, best_conf = name, conf

        detected = detect_type(samples)
        columns.append(
            DetectedColumn(
                index=index,
                header=header,
                suggested_field=None,
                confidence=best_conf,
                sample_values=samples,
                detected_type=detected,
                transform=transform_for(detected, samples),
            )
        )
        if best_field is not None and best_conf >= settings.column_threshold:
            ranked.append((best_conf, index, best_field))

    # Greedy: highest confidence first, earlier column wins equal confidence
    suggestions: list[str] = []
    taken: dict[str, int] = {}
    for conf, index, name in sorted(ranked, key=lambda item: (-item[0], item[1])):
        column = columns[index]
        if name in taken:
            suggestions.append(
                f"Column '{column.header}' also looks like {name} "
                f"(already mapped from '{columns[taken[name]].header}')"
            )
            continue
        taken[name] = index
        spec = fields[name]
        column.suggested_field = name
        column.transform = transform_for(spec.kind, column.sample_values)
        if spec.kind != "string":
            column.detected_type = spec.kind

    for name in required_fields:
        if name not in taken:
            suggestions.append(
                f"Required field {name} ({fields[name].label}) not detected"
            )

    assigned = [columns[i].confidence for i in taken.values()]
    coverage = sum(1 for name in required_fields if name in taken) / len(required_fields)
    confidence = (sum(assigned) / len(assigned)) * coverage if assigned else 0.0

    headers = [c.header for c in columns]
    sample_data = [
        {headers[i]: (str(row[i]).strip() if i < len(row) else "") for i in range(width)}
        for row in data_rows[:5]
    ]

    logger.debug(
        "Detected header row %d, %d columns, %d mapped (confidence %.2f)",
        header_index,
        width,
        len(taken),
        confidence,
    )

    return DetectedFormat(
        header_row=header_index,
        data_start_row=header_index + 1,
        total_rows=len(data_rows),
        columns=columns,
        sample_data=sample_data,
        confidence=confidence,
        suggestions=suggestions,
    )
