"""
Row import: apply a template's column transforms to every data row.

Bad cells never abort the file. Each failed transform is recorded against
its row; a row only gets rejected when a required field ends up empty.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from ..errors import ValidationError
from ..schemas.templates import ImportTemplate, ImportTemplateColumn
from .detection import normalize_header
from .transforms import apply_transform

logger = logging.getLogger(__name__)


@dataclass
class RowError:
    """A problem with one cell or one row of an import."""

    row: int
    field: Optional[str]
    value: Optional[str]
    message: str
    kind: Optional[str] = None  # ParseErrorKind value, or "Validation"

    def to_dict(self) -> dict:
        return {
            "row": self.row,
            "field": self.field,
            "value": self.value,
            "message": self.message,
            "kind": self.kind,
        }


@dataclass
class MappedRow:
    """Canonical field values extracted from one source row."""

    row_index: int
    values: dict[str, Any]
    field_errors: list[RowError] = field(default_factory=list)

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)


@dataclass
class ImportResult:
    rows: list[MappedRow] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0

    @property
    def total_rows(self) -> int:
        return self.success_count + self.error_count + self.skipped_count

    def to_dict(self) -> dict:
        return {
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "skippedCount": self.skipped_count,
            "errors": [e.to_dict() for e in self.errors],
        }


def resolve_columns(
    header: Sequence[str], template: ImportTemplate
) -> list[tuple[ImportTemplateColumn, Optional[int]]]:
    """Pair each template column with its index in ``header`` (None if absent)."""
    positions: dict[str, int] = {}
    for index, name in enumerate(header):
        positions.setdefault(normalize_header(str(name)), index)

    resolved = []
    for column in template.columns:
        index = positions.get(normalize_header(column.source_column))
        if index is None and column.source_index is not None and column.source_index < len(header):
            # Header text changed but the column slot is unlabeled
            if not str(header[column.source_index]).strip():
                index = column.source_index
        resolved.append((column, index))
    return resolved


def map_row(
    row: Sequence[Any],
    row_index: int,
    columns: list[tuple[ImportTemplateColumn, Optional[int]]],
    defaults: Optional[dict] = None,
) -> MappedRow:
    """Transform one row into canonical field values.

    Failed cells are left out of ``values`` and reported in ``field_errors``.
    """
    values: dict[str, Any] = {}
    errors: list[RowError] = []

    for column, index in columns:
        raw = row[index] if index is not None and index < len(row) else None
        result = apply_transform(column.transform, raw)
        if result.error is not None:
            errors.append(
                RowError(
                    row=row_index,
                    field=column.target_field,
                    value=result.error.value,
                    message=result.error.message,
                    kind=result.error.kind.value,
                )
            )
            continue
        if result.value is not None or column.target_field not in values:
            values[column.target_field] = result.value

    for name, default in (defaults or {}).items():
        if values.get(name) is None and default is not None:
            values[name] = default

    return MappedRow(row_index=row_index, values=values, field_errors=errors)


def check_required(
    mapped: MappedRow, columns: list[tuple[ImportTemplateColumn, Optional[int]]]
) -> None:
    """Raise ValidationError if a required template column produced no value."""
    for column, _ in columns:
        if column.required and mapped.get(column.target_field) is None:
            failed = next((e for e in mapped.field_errors if e.field == column.target_field), None)
            detail = f": {failed.message}" if failed else ""
            raise ValidationError(
                f"Required field {column.target_field} is missing{detail}",
                field=column.target_field,
                row=mapped.row_index,
            )


def import_rows(
    raw_table: Sequence[Sequence[Any]],
    template: ImportTemplate,
    header_row: int,
    data_start_row: Optional[int] = None,
) -> ImportResult:
    """Apply ``template`` to every data row of ``raw_table``.

    Args:
        raw_table: Rows of raw cells including the header row.
        template: Template whose columns and transforms drive the mapping.
        header_row: Index of the header row in ``raw_table``.
        data_start_row: First data row (defaults to the row after the header).

    Returns:
        ImportResult with mapped rows, per-row errors and counts.
    """
    start = header_row + 1 if data_start_row is None else data_start_row
    header = [str(cell).strip() for cell in raw_table[header_row]]
    columns = resolve_columns(header, template)

    for column, index in columns:
        if index is None:
            logger.warning(
                "Template %s column '%s' not found in file headers",
                template.id,
                column.source_column,
            )

    result = ImportResult()
    for row_index in range(start, len(raw_table)):
        row = raw_table[row_index]
        if not any(str(cell).strip() for cell in row if cell is not None):
            result.skipped_count += 1
            continue

        mapped = map_row(row, row_index, columns, template.defaults)
        result.errors.extend(mapped.field_errors)
        try:
            check_required(mapped, columns)
        except ValidationError as e:
            result.error_count += 1
            result.errors.append(
                RowError(row=row_index, field=e.field, value=None, message=str(e), kind="Validation")
            )
            continue

        result.rows.append(mapped)
        result.success_count += 1

    logger.info(
        "Imported %d rows with template %s (%d errors, %d skipped)",
        result.success_count,
        template.id,
        result.error_count,
        result.skipped_count,
    )
    return result
