"""
Import orchestration service.

Turns an uploaded table (or an AI extraction payload) into canonical
documents:
1. Detect the table layout
2. Reuse the best saved template or learn a new one
3. Transform every row through the template's columns
4. Normalize each row into a CanonicalDocument
5. Write documents and template statistics through the BatchWriter

Re-importing a file never touches what reconciliation owns: documents that
already exist only get their source fields refreshed, and payments,
statuses and aging stay as they are.

Bank statements go through the same detect -> template -> rows pipeline
with the statement field set and become Transactions with content-derived
ids, so a statement imported twice adds nothing the second time.
"""

from __future__ import annotations

import csv
import io
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Sequence

from invoice_recon.errors import ValidationError
from invoice_recon.importing.detection import detect_format
from invoice_recon.importing.importer import RowError, import_rows
from invoice_recon.importing.templates import (
    match_template,
    record_template_failure,
    record_template_success,
    template_from_detection,
)
from invoice_recon.normalizer.normalizer import DocumentNormalizer
from invoice_recon.normalizer.transactions import TransactionNormalizer
from invoice_recon.schemas.documents import CanonicalDocument, DocumentDirection, Transaction
from invoice_recon.schemas.extraction import AIExtractionPayload
from invoice_recon.schemas.templates import (
    TARGET_DOCUMENTS,
    TARGET_TRANSACTIONS,
    TRANSACTION_FIELDS,
    DetectedFormat,
    FieldSpec,
    ImportTemplate,
)
from invoice_recon.schemas.values import money
from invoice_recon.state_store.base import WriteOp
from invoice_recon.state_store.batch_writer import BatchWriter

if TYPE_CHECKING:
    from invoice_recon.config import Config
    from invoice_recon.state_store.base import DocumentStore

logger = logging.getLogger(__name__)

TEMPLATE_COLLECTION = "import_templates"
TRANSACTION_COLLECTION = "transactions"

# Kept from the stored record when a re-import disagrees on the total of a
# document that already has payments
AMOUNT_FIELDS = ("total", "subtotal", "taxRate", "taxAmount", "discount", "shippingAmount")

# Share of rows that must import cleanly for a template use to count as a success
TEMPLATE_SUCCESS_RATIO = 0.5


def read_csv_table(source: str | Path | io.TextIOBase, delimiter: Optional[str] = None) -> list[list[str]]:
    """Read CSV text (or a path to a CSV file) into a list of rows.

    When ``delimiter`` is omitted the dialect is sniffed from the first
    few kilobytes, falling back to a comma.
    """
    if isinstance(source, Path):
        text = source.read_text(encoding="utf-8-sig")
    elif isinstance(source, str):
        text = source
    else:
        text = source.read()

    if delimiter is None:
        try:
            delimiter = csv.Sniffer().sniff(text[:4096], delimiters=",;\t|").delimiter
        except csv.Error:
            delimiter = ","

    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    return [[cell.strip() for cell in row] for row in reader]


@dataclass
class ImportBatchResult:
    """Outcome of importing one table."""

    batch_id: str
    template_id: Optional[str] = None
    template_name: Optional[str] = None
    template_confidence: float = 0.0
    template_created: bool = False
    success_count: int = 0  # Distinct records produced
    error_count: int = 0
    skipped_count: int = 0  # Blank rows
    duplicate_count: int = 0  # Rows collapsed onto an earlier row of the same file
    existing_count: int = 0  # Records that were already stored
    errors: list[RowError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    document_ids: list[str] = field(default_factory=list)
    transaction_ids: list[str] = field(default_factory=list)
    committed: int = 0
    detected: Optional[DetectedFormat] = None
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return self.success_count > 0 and self.error_count == 0

    def to_dict(self) -> dict:
        return {
            "batchId": self.batch_id,
            "templateId": self.template_id,
            "templateName": self.template_name,
            "templateConfidence": round(self.template_confidence, 4),
            "templateCreated": self.template_created,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "skippedCount": self.skipped_count,
            "duplicateCount": self.duplicate_count,
            "existingCount": self.existing_count,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": self.warnings,
            "documentIds": self.document_ids,
            "transactionIds": self.transaction_ids,
            "committed": self.committed,
            "dryRun": self.dry_run,
        }


class ImportService:
    """Imports tables and AI payloads into the document store.

    Usage:
        service = ImportService(store, config)
        result = service.import_table(read_csv_table(path), "user_123", DocumentDirection.OUTGOING)
    """

    def __init__(
        self,
        store: DocumentStore,
        config: Optional[Config] = None,
        writer: Optional[BatchWriter] = None,
        normalizer: Optional[DocumentNormalizer] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.normalizer = normalizer or DocumentNormalizer(config)
        self.transaction_normalizer = TransactionNormalizer(config)
        if writer is None:
            store_config = config.store if config else None
            writer = BatchWriter(
                store,
                max_batch_size=store_config.max_batch_size if store_config else None,
                timeout=store_config.timeout_seconds if store_config else None,
                max_workers=store_config.max_workers if store_config else 4,
            )
        self.writer = writer
        self.min_template_confidence = (
            config.importing.template_min_confidence if config else 0.6
        )

    def load_templates(
        self,
        owner: str,
        direction: Optional[DocumentDirection] = None,
        target: str = TARGET_DOCUMENTS,
    ) -> list[ImportTemplate]:
        where: dict[str, Any] = {"userId": owner}
        if direction is not None:
            where["direction"] = direction.value
        templates = [ImportTemplate.from_dict(row) for row in self.store.query(TEMPLATE_COLLECTION, where)]
        return [t for t in templates if t.target == target]

    def save_template(self, template: ImportTemplate) -> None:
        self.writer.commit_or_raise([WriteOp.set(TEMPLATE_COLLECTION, template.id, template.to_dict())])

    def detect(
        self,
        raw_table: Sequence[Sequence[str]],
        owner: Optional[str] = None,
        direction: Optional[DocumentDirection] = None,
        file_name: Optional[str] = None,
        templates: Optional[list[ImportTemplate]] = None,
        fields: Optional[dict[str, FieldSpec]] = None,
    ) -> DetectedFormat:
        """Detect the layout and annotate it with the best matching saved template."""
        detected = detect_format(raw_table, self.config.importing if self.config else None, fields)
        if templates is None and owner is not None:
            target = TARGET_TRANSACTIONS if fields is TRANSACTION_FIELDS else TARGET_DOCUMENTS
            templates = self.load_templates(owner, direction, target)
        if templates:
            template, score = match_template(
                detected, templates, self.min_template_confidence, file_name
            )
            detected.template_confidence = score
            if template is not None:
                detected.matched_template_id = template.id
                detected.matched_template_name = template.name
        return detected

    def _resolve_template(
        self,
        result: ImportBatchResult,
        detected: DetectedFormat,
        templates: list[ImportTemplate],
        owner: str,
        direction: Optional[DocumentDirection],
        name: str,
        fields: Optional[dict[str, FieldSpec]] = None,
        target: str = TARGET_DOCUMENTS,
    ) -> ImportTemplate:
        """The matched saved template, or a new one learned from ``detected``."""
        template = next((t for t in templates if t.id == detected.matched_template_id), None)
        if template is None:
            template = template_from_detection(
                detected, name, owner, direction, fields=fields, target=target
            )
            result.template_created = True
            result.template_confidence = detected.confidence
            logger.info(
                "Learned new template %s from %d assigned columns",
                template.id,
                len(template.columns),
            )
        else:
            result.template_confidence = detected.template_confidence or 0.0

        result.template_id = template.id
        result.template_name = template.name
        return template

    @staticmethod
    def _record_template_use(template: ImportTemplate, succeeded: int, failed: int) -> None:
        attempted = succeeded + failed
        if attempted and succeeded / attempted >= TEMPLATE_SUCCESS_RATIO:
            record_template_success(template)
        else:
            record_template_failure(template)

    def _document_write_op(
        self, document: CanonicalDocument, stored: Optional[dict]
    ) -> tuple[WriteOp, list[str]]:
        """Create a new document, or refresh the source fields of a stored one.

        A stored document without payments is rewritten as imported, guarded
        so a payment landing in between makes the write fail instead of
        being lost. One with payments keeps everything reconciliation wrote;
        if the file now disagrees on the total, the stored amounts win and
        the document is flagged.

        Returns:
            The write and any warnings it raised.
        """
        if stored is None:
            return WriteOp.create(document.collection, document.id, document.to_dict()), []

        stored_ids = list(stored.get("matchedTransactionIds") or [])
        if not stored_ids:
            data = document.to_dict()
            data.pop("id")
            op = WriteOp.update(
                document.collection, document.id, data, expected={"matchedTransactionIds": []}
            )
            return op, []

        data = document.source_fields()
        warnings = list(stored.get("warnings") or [])
        raised: list[str] = []
        if money(stored.get("total")) != document.total:
            message = (
                f"Re-import of {document.document_number} has total {document.total:.2f}, "
                f"stored total {money(stored.get('total')):.2f} kept because payments exist"
            )
            logger.warning("Document %s: %s", document.id, message)
            raised.append(message)
            warnings.append(message)
            for name in AMOUNT_FIELDS:
                data[name] = stored.get(name)
        data["warnings"] = list(dict.fromkeys(warnings + data["warnings"]))
        op = WriteOp.update(
            document.collection,
            document.id,
            data,
            expected={"matchedTransactionIds": stored_ids},
        )
        return op, raised

    def import_table(
        self,
        raw_table: Sequence[Sequence[str]],
        owner: str,
        direction: DocumentDirection,
        file_name: Optional[str] = None,
        templates: Optional[list[ImportTemplate]] = None,
        template_name: Optional[str] = None,
        org_id: Optional[str] = None,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> ImportBatchResult:
        """Import a raw table of cells.

        Args:
            raw_table: Rows of raw cells, header row included.
            owner: User the documents belong to.
            direction: outgoing (invoices) or incoming (bills).
            file_name: Source file name, matched against template vendor patterns.
            templates: Candidate templates; loaded from the store when omitted.
            template_name: Name for a newly learned template.
            org_id: Organization stamped on each document.
            dry_run: If True, nothing is written.
            now: Reference time for aging.

        Returns:
            ImportBatchResult with counts, per-row errors and document ids.

        Raises:
            AmbiguousHeaderRow: If no header row can be located.
            BatchWriteError: If writing documents fails part-way.
        """
        batch_id = f"batch_{uuid.uuid4().hex[:16]}"
        result = ImportBatchResult(batch_id=batch_id, dry_run=dry_run)

        if templates is None:
            templates = self.load_templates(owner, direction)
        templates = [t for t in templates if t.direction == direction and t.target == TARGET_DOCUMENTS]

        detected = self.detect(raw_table, file_name=file_name, templates=templates)
        result.detected = detected
        result.warnings.extend(detected.suggestions)

        name = template_name or (Path(file_name).stem if file_name else f"{direction.value} import")
        template = self._resolve_template(result, detected, templates, owner, direction, name)

        rows = import_rows(raw_table, template, detected.header_row, detected.data_start_row)
        result.errors.extend(rows.errors)
        result.error_count = rows.error_count
        result.skipped_count = rows.skipped_count

        documents: list[CanonicalDocument] = []
        for mapped in rows.rows:
            try:
                normalized = self.normalizer.normalize(
                    mapped,
                    owner,
                    direction,
                    origin="import",
                    template_id=template.id,
                    batch_id=batch_id,
                    org_id=org_id,
                    now=now,
                )
            except ValidationError as e:
                result.error_count += 1
                result.errors.append(
                    RowError(
                        row=mapped.row_index,
                        field=e.field,
                        value=None,
                        message=str(e),
                        kind="Validation",
                    )
                )
                continue
            documents.append(normalized.document)

        # Duplicate document ids within one file collapse onto the last row
        unique: dict[str, CanonicalDocument] = {}
        for document in documents:
            if document.id in unique:
                result.duplicate_count += 1
                result.warnings.append(
                    f"Duplicate document {document.document_number} dated {document.document_date}"
                )
            unique[document.id] = document
        result.success_count = len(unique)
        result.document_ids = list(unique)

        self._record_template_use(template, len(documents), result.error_count)

        if dry_run:
            logger.info("Dry run: %d documents not written", len(unique))
            return result

        ops: list[WriteOp] = []
        for document in unique.values():
            stored = self.store.get(document.collection, document.id)
            if stored is not None:
                result.existing_count += 1
            op, warnings = self._document_write_op(document, stored)
            result.warnings.extend(warnings)
            ops.append(op)
        ops.append(WriteOp.set(TEMPLATE_COLLECTION, template.id, template.to_dict()))
        commit_results = self.writer.commit_parallel(ops)
        result.committed = self.writer.raise_for_results(commit_results)

        logger.info(
            "Import %s: %d documents (%d already stored, %d duplicate rows), %d errors, template %s",
            batch_id,
            result.success_count,
            result.existing_count,
            result.duplicate_count,
            result.error_count,
            template.id,
        )
        return result

    def import_transactions(
        self,
        raw_table: Sequence[Sequence[str]],
        owner: str,
        account_id: Optional[str] = None,
        file_name: Optional[str] = None,
        templates: Optional[list[ImportTemplate]] = None,
        template_name: Optional[str] = None,
        dry_run: bool = False,
    ) -> ImportBatchResult:
        """Import a bank statement table as transactions.

        Lines already stored (same content, same position among identical
        lines) are counted as existing and left untouched.

        Returns:
            ImportBatchResult with counts, per-row errors and transaction ids.

        Raises:
            AmbiguousHeaderRow: If no header row can be located.
            BatchWriteError: If writing transactions fails part-way.
        """
        batch_id = f"batch_{uuid.uuid4().hex[:16]}"
        result = ImportBatchResult(batch_id=batch_id, dry_run=dry_run)

        if templates is None:
            templates = self.load_templates(owner, target=TARGET_TRANSACTIONS)
        templates = [t for t in templates if t.target == TARGET_TRANSACTIONS]

        detected = self.detect(
            raw_table, file_name=file_name, templates=templates, fields=TRANSACTION_FIELDS
        )
        result.detected = detected
        result.warnings.extend(detected.suggestions)

        name = template_name or (Path(file_name).stem if file_name else "bank statement import")
        template = self._resolve_template(
            result,
            detected,
            templates,
            owner,
            None,
            name,
            fields=TRANSACTION_FIELDS,
            target=TARGET_TRANSACTIONS,
        )

        rows = import_rows(raw_table, template, detected.header_row, detected.data_start_row)
        result.errors.extend(rows.errors)
        result.error_count = rows.error_count
        result.skipped_count = rows.skipped_count

        transactions: list[Transaction] = []
        occurrences: dict[str, int] = {}
        for mapped in rows.rows:
            try:
                transaction = self.transaction_normalizer.normalize(
                    mapped, owner, account_id=account_id, batch_id=batch_id
                )
                seen = occurrences.get(transaction.id, 0)
                occurrences[transaction.id] = seen + 1
                if seen:
                    transaction = self.transaction_normalizer.normalize(
                        mapped, owner, account_id=account_id, batch_id=batch_id, occurrence=seen
                    )
            except ValidationError as e:
                result.error_count += 1
                result.errors.append(
                    RowError(
                        row=mapped.row_index,
                        field=e.field,
                        value=None,
                        message=str(e),
                        kind="Validation",
                    )
                )
                continue
            transactions.append(transaction)

        result.success_count = len(transactions)
        result.transaction_ids = [tx.id for tx in transactions]
        self._record_template_use(template, len(transactions), result.error_count)

        if dry_run:
            logger.info("Dry run: %d transactions not written", len(transactions))
            return result

        ops: list[WriteOp] = []
        for transaction in transactions:
            if self.store.get(TRANSACTION_COLLECTION, transaction.id) is not None:
                result.existing_count += 1
                continue
            ops.append(WriteOp.create(TRANSACTION_COLLECTION, transaction.id, transaction.to_dict()))
        ops.append(WriteOp.set(TEMPLATE_COLLECTION, template.id, template.to_dict()))
        commit_results = self.writer.commit_parallel(ops)
        result.committed = self.writer.raise_for_results(commit_results)

        logger.info(
            "Statement import %s: %d transactions (%d already stored), %d errors, template %s",
            batch_id,
            result.success_count,
            result.existing_count,
            result.error_count,
            template.id,
        )
        return result

    def import_ai_payload(
        self,
        payload: AIExtractionPayload,
        owner: str,
        direction: DocumentDirection,
        org_id: Optional[str] = None,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> CanonicalDocument:
        """Normalize one AI extraction payload and store the resulting document.

        Raises:
            ValidationError: If the payload is not extractable or lacks required fields.
        """
        normalized = self.normalizer.normalize(
            payload,
            owner,
            direction,
            origin="upload",
            batch_id=f"batch_{uuid.uuid4().hex[:16]}",
            org_id=org_id,
            now=now,
        )
        document = normalized.document
        if not dry_run:
            op, warnings = self._document_write_op(
                document, self.store.get(document.collection, document.id)
            )
            normalized.warnings.extend(warnings)
            self.writer.commit_or_raise([op])
        logger.info(
            "Stored AI-extracted %s %s (confidence %.2f, %d warnings)",
            document.document_type.value,
            document.document_number,
            payload.confidence,
            len(normalized.warnings),
        )
        return document
