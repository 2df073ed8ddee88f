"""
Import template matching and learning.

A saved template is reused when the headers of a new file line up with the
template's source columns. Templates are learned from a detection result
and keep running success/failure statistics.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Iterable, Optional

from ..schemas.documents import DocumentDirection
from ..schemas.templates import (
    IMPORTABLE_FIELDS,
    TARGET_DOCUMENTS,
    DetectedFormat,
    DetectionPatterns,
    FieldSpec,
    ImportTemplate,
    ImportTemplateColumn,
)
from ..schemas.values import Timestamp
from .detection import normalize_header

logger = logging.getLogger(__name__)

# Share of the score that depends on columns sitting where they were learned
POSITION_WEIGHT = 0.1

# Added (capped at 1.0) when the template's vendor pattern matches the file name
VENDOR_PATTERN_BONUS = 0.1


def _vendor_matches(template: ImportTemplate, file_name: Optional[str]) -> bool:
    pattern = template.detection_patterns.vendor_pattern
    if not pattern or not file_name:
        return False
    try:
        return re.search(pattern, file_name, re.IGNORECASE) is not None
    except re.error:
        logger.warning("Template %s has an invalid vendor pattern %r", template.id, pattern)
        return False


def score_template(
    detected: DetectedFormat,
    template: ImportTemplate,
    file_name: Optional[str] = None,
) -> float:
    """Score how well a template fits a detected layout (0-1).

    The base score is the fraction of template columns found among the
    detected headers, scaled down slightly when matched columns moved. A
    missing required header disqualifies the template.
    """
    if not template.columns:
        return 0.0

    positions: dict[str, list[int]] = {}
    for column in detected.columns:
        positions.setdefault(normalize_header(column.header), []).append(column.index)

    for required in template.detection_patterns.required_headers:
        if normalize_header(required) not in positions:
            return 0.0

    matched = 0
    in_place = 0
    for column in template.columns:
        found = positions.get(normalize_header(column.source_column))
        if not found:
            if column.required:
                return 0.0
            continue
        matched += 1
        if column.source_index is None or column.source_index in found:
            in_place += 1

    if matched == 0:
        return 0.0

    name_fraction = matched / len(template.columns)
    position_fraction = in_place / matched
    score = name_fraction * ((1.0 - POSITION_WEIGHT) + POSITION_WEIGHT * position_fraction)
    if _vendor_matches(template, file_name):
        score = min(1.0, score + VENDOR_PATTERN_BONUS)
    return score


def match_template(
    detected: DetectedFormat,
    templates: Iterable[ImportTemplate],
    min_confidence: float = 0.6,
    file_name: Optional[str] = None,
) -> tuple[Optional[ImportTemplate], float]:
    """Pick the best saved template for a detected layout.

    Returns:
        ``(template, confidence)`` for the best candidate, or
        ``(None, best_confidence)`` if nothing reaches ``min_confidence``.
        Equal scores are broken by template id.
    """
    scored = [(score_template(detected, t, file_name), t) for t in templates]
    if not scored:
        return None, 0.0

    scored.sort(key=lambda item: (-item[0], item[1].id))
    best_score, best = scored[0]

    if best_score < min_confidence:
        logger.debug(
            "No template reached %.2f (best %s at %.2f)", min_confidence, best.id, best_score
        )
        return None, best_score

    logger.info("Matched template %s (%s) with confidence %.2f", best.id, best.name, best_score)
    return best, best_score


def template_from_detection(
    detected: DetectedFormat,
    name: str,
    owner: str,
    direction: Optional[DocumentDirection],
    template_id: Optional[str] = None,
    defaults: Optional[dict] = None,
    vendor_pattern: Optional[str] = None,
    fields: Optional[dict[str, FieldSpec]] = None,
    target: str = TARGET_DOCUMENTS,
) -> ImportTemplate:
    """Learn a new template from the columns a detection pass assigned.

    ``fields`` must be the field set the detection ran with.
    """
    fields = fields or IMPORTABLE_FIELDS
    columns: list[ImportTemplateColumn] = []
    required_headers: list[str] = []
    for column in detected.columns:
        if not column.suggested_field:
            continue
        required = fields[column.suggested_field].required
        columns.append(
            ImportTemplateColumn(
                source_column=column.header,
                target_field=column.suggested_field,
                transform=column.transform,
                required=required,
                source_index=column.index,
            )
        )
        if required:
            required_headers.append(column.header)

    return ImportTemplate(
        id=template_id or f"tpl_{uuid.uuid4().hex[:16]}",
        owner=owner,
        name=name,
        direction=direction,
        columns=columns,
        detection_patterns=DetectionPatterns(
            header_row=detected.header_row,
            required_headers=required_headers,
            vendor_pattern=vendor_pattern,
        ),
        defaults=dict(defaults or {}),
        target=target,
    )


def _refresh_rate(template: ImportTemplate) -> None:
    attempts = template.success_count + template.failure_count
    template.success_rate = template.success_count / attempts if attempts else 0.0


def record_template_success(template: ImportTemplate, now: Optional[Timestamp] = None) -> None:
    """Count a successful import with this template."""
    template.usage_count += 1
    template.success_count += 1
    template.last_used_at = now or Timestamp.now()
    _refresh_rate(template)


def record_template_failure(template: ImportTemplate) -> None:
    """Count an import where the template's mapping did not hold."""
    template.failure_count += 1
    _refresh_rate(template)
    logger.info(
        "Template %s failure recorded (success rate now %.2f)",
        template.id,
        template.success_rate,
    )
