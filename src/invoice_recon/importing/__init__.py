"""Table import: format detection, template matching and cell transforms."""

from invoice_recon.importing.detection import detect_format
from invoice_recon.importing.importer import ImportResult, MappedRow, RowError, import_rows
from invoice_recon.importing.templates import (
    match_template,
    record_template_failure,
    record_template_success,
    template_from_detection,
)
from invoice_recon.importing.transforms import TransformResult, apply_transform

__all__ = [
    "ImportResult",
    "MappedRow",
    "RowError",
    "TransformResult",
    "apply_transform",
    "detect_format",
    "import_rows",
    "match_template",
    "record_template_failure",
    "record_template_success",
    "template_from_detection",
]
