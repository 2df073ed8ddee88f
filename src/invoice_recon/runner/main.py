"""
CLI main entry point.
"""

import argparse
import json
import logging
import mimetypes
import sys
from collections import defaultdict
from decimal import Decimal
from pathlib import Path

from ..config import Config, create_default_config, load_config
from ..errors import ReconError
from ..schemas.documents import DocumentDirection
from ..state_store import SQLiteDocumentStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="invoice-recon",
        description="Import invoices/bills from spreadsheets and reconcile them against bank transactions",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # detect command
    detect_parser = subparsers.add_parser("detect", help="Detect the column layout of a CSV file")
    detect_parser.add_argument("file", type=Path, help="CSV file to inspect")
    detect_parser.add_argument("--owner", type=str, help="Match against this user's saved templates")
    detect_parser.add_argument(
        "--direction",
        choices=[d.value for d in DocumentDirection],
        default=DocumentDirection.OUTGOING.value,
        help="outgoing (invoices) or incoming (bills) (default: outgoing)",
    )
    detect_parser.add_argument("--json", action="store_true", help="Print the raw detection result")

    # import command
    import_parser = subparsers.add_parser("import", help="Import invoices/bills from a CSV file")
    import_parser.add_argument("file", type=Path, help="CSV file to import")
    import_parser.add_argument("--owner", type=str, required=True, help="User id owning the documents")
    import_parser.add_argument(
        "--direction",
        choices=[d.value for d in DocumentDirection],
        required=True,
        help="outgoing (invoices) or incoming (bills)",
    )
    import_parser.add_argument("--org", type=str, help="Organization id stamped on each document")
    import_parser.add_argument("--template-name", type=str, help="Name for a newly learned template")
    import_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be imported without writing",
    )

    # import-transactions command
    statement_parser = subparsers.add_parser(
        "import-transactions", help="Import bank transactions from a statement CSV"
    )
    statement_parser.add_argument("file", type=Path, help="Statement CSV to import")
    statement_parser.add_argument("--owner", type=str, required=True, help="User id owning the account")
    statement_parser.add_argument("--account", type=str, help="Bank account id stamped on each transaction")
    statement_parser.add_argument("--template-name", type=str, help="Name for a newly learned template")
    statement_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be imported without writing",
    )
    statement_parser.add_argument("--json", action="store_true", help="Print the raw import result")

    # extract command
    extract_parser = subparsers.add_parser(
        "extract", help="Extract a PDF/image with the AI service and import the result"
    )
    extract_parser.add_argument("file", type=Path, help="Document to extract")
    extract_parser.add_argument("--owner", type=str, required=True, help="User id owning the document")
    extract_parser.add_argument(
        "--direction",
        choices=[d.value for d in DocumentDirection],
        required=True,
        help="outgoing (invoice) or incoming (bill)",
    )
    extract_parser.add_argument("--dry-run", action="store_true", help="Extract without writing")

    # reconcile command
    reconcile_parser = subparsers.add_parser(
        "reconcile", help="Match open invoices/bills against bank transactions"
    )
    reconcile_parser.add_argument("--owner", type=str, required=True, help="User id to reconcile")
    reconcile_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be matched without making changes",
    )
    reconcile_parser.add_argument("--json", action="store_true", help="Print the raw result")

    # aging command
    aging_parser = subparsers.add_parser("aging", help="Refresh and report receivable/payable aging")
    aging_parser.add_argument("--owner", type=str, required=True, help="User id to report on")
    aging_parser.add_argument("--dry-run", action="store_true", help="Report without writing")

    # status command
    status_parser = subparsers.add_parser("status", help="Show reconciliation status and totals")
    status_parser.add_argument("--owner", type=str, required=True, help="User id to report on")

    # demo commands
    demo_parser = subparsers.add_parser("demo", help="Manage demo sessions")
    demo_subparsers = demo_parser.add_subparsers(dest="demo_command", help="Demo action")
    clone_parser = demo_subparsers.add_parser("clone", help="Clone the master demo account")
    clone_parser.add_argument("session", type=str, help="Session id")
    reset_parser = demo_subparsers.add_parser("reset", help="Reset a demo session's payments")
    reset_parser.add_argument("session", type=str, help="Session id")

    # init-config command
    init_parser = subparsers.add_parser("init-config", help="Write a default config file")
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing file")

    return parser


def open_store(config: Config) -> SQLiteDocumentStore:
    return SQLiteDocumentStore(
        config.store.state_db_path,
        timeout=config.store.timeout_seconds,
        max_batch_size=config.store.max_batch_size,
    )


def cmd_detect(config: Config, file: Path, owner: str | None, direction: str, as_json: bool) -> int:
    """Detect the layout of a CSV file."""
    from ..services.importer import ImportService, read_csv_table

    service = ImportService(open_store(config), config)
    detected = service.detect(
        read_csv_table(file),
        owner=owner,
        direction=DocumentDirection(direction),
        file_name=file.name,
    )

    if as_json:
        print(json.dumps(detected.to_dict(), indent=2, default=str))
        return 0

    print(f"🔍 {file.name}: header row {detected.header_row}, {detected.total_rows} data rows")
    print(f"   Confidence: {detected.confidence:.0%}")
    print()
    for column in detected.columns:
        target = column.suggested_field or "-"
        print(
            f"  [{column.index}] {column.header:<24} → {target:<18} "
            f"{column.confidence:.0%} ({column.detected_type})"
        )
    if detected.matched_template_id:
        print(
            f"\n📋 Matches template '{detected.matched_template_name}' "
            f"({detected.template_confidence:.0%})"
        )
    if detected.suggestions:
        print("\n⚠️  Suggestions:")
        for suggestion in detected.suggestions:
            print(f"   - {suggestion}")
    return 0


def cmd_import(
    config: Config,
    file: Path,
    owner: str,
    direction: str,
    org_id: str | None = None,
    template_name: str | None = None,
    dry_run: bool = False,
) -> int:
    """Import a CSV file of invoices or bills."""
    from ..services.importer import ImportService, read_csv_table

    print(f"📥 Importing {file.name} for {owner}...")
    if dry_run:
        print("  ℹ️  DRY RUN mode - no changes will be made")

    service = ImportService(open_store(config), config)
    result = service.import_table(
        read_csv_table(file),
        owner,
        DocumentDirection(direction),
        file_name=file.name,
        template_name=template_name,
        org_id=org_id,
        dry_run=dry_run,
    )

    created = " (new)" if result.template_created else ""
    print(f"  Template:   {result.template_name}{created} [{result.template_confidence:.0%}]")
    print(f"  Imported:   {result.success_count}")
    print(f"  Existing:   {result.existing_count}")
    print(f"  Duplicates: {result.duplicate_count}")
    print(f"  Errors:     {result.error_count}")
    print(f"  Skipped:    {result.skipped_count}")
    print(f"  Batch:      {result.batch_id}")

    if result.errors:
        print("\n⚠️  Row errors:")
        for error in result.errors[:20]:
            print(f"   - row {error.row} {error.field or ''}: {error.message}")
        if len(result.errors) > 20:
            print(f"   ... and {len(result.errors) - 20} more")

    return 0 if result.success_count else 1


def cmd_import_transactions(
    config: Config,
    file: Path,
    owner: str,
    account_id: str | None = None,
    template_name: str | None = None,
    dry_run: bool = False,
    as_json: bool = False,
) -> int:
    """Import a bank statement CSV as transactions."""
    from ..services.importer import ImportService, read_csv_table

    service = ImportService(open_store(config), config)
    result = service.import_transactions(
        read_csv_table(file),
        owner,
        account_id=account_id,
        file_name=file.name,
        template_name=template_name,
        dry_run=dry_run,
    )

    if as_json:
        print(json.dumps(result.to_dict(), indent=2))
        return 0 if result.success_count else 1

    print(f"🏦 Importing {file.name} for {owner}...")
    if dry_run:
        print("  ℹ️  DRY RUN mode - no changes will be made")
    created = " (new)" if result.template_created else ""
    print(f"  Template:   {result.template_name}{created} [{result.template_confidence:.0%}]")
    print(f"  Imported:   {result.success_count}")
    print(f"  Existing:   {result.existing_count}")
    print(f"  Errors:     {result.error_count}")
    print(f"  Batch:      {result.batch_id}")

    if result.errors:
        print("\n⚠️  Row errors:")
        for error in result.errors[:20]:
            print(f"   - row {error.row} {error.field or ''}: {error.message}")
        if len(result.errors) > 20:
            print(f"   ... and {len(result.errors) - 20} more")

    return 0 if result.success_count else 1


def cmd_extract(config: Config, file: Path, owner: str, direction: str, dry_run: bool = False) -> int:
    """Extract a document with the AI service and import it."""
    from ..extractors import AIExtractionClient
    from ..services.importer import ImportService

    mime_type = mimetypes.guess_type(file.name)[0] or "application/octet-stream"
    client = AIExtractionClient.from_config(config)

    print(f"🤖 Extracting {file.name} ({mime_type})...")
    payload = client.extract(file.read_bytes(), mime_type, caller_id=owner, file_name=file.name)
    print(f"  Type: {payload.document_type}, pages: {payload.page_count}, confidence: {payload.confidence:.0%}")

    service = ImportService(open_store(config), config)
    document = service.import_ai_payload(payload, owner, DocumentDirection(direction), dry_run=dry_run)
    print(f"✓ {document.document_number}: {document.total} {document.currency} ({document.id})")
    for warning in document.warnings:
        print(f"   ⚠️  {warning}")
    return 0


def cmd_reconcile(config: Config, owner: str, dry_run: bool = False, as_json: bool = False) -> int:
    """Run automatic reconciliation for one owner.

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    from ..services.reconciliation import ReconciliationService

    service = ReconciliationService(open_store(config), config)
    result = service.run(owner, dry_run=dry_run)

    if as_json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return 0 if result.success else 1

    print(f"🔄 Reconciliation for {owner}")
    if dry_run:
        print("  ℹ️  DRY RUN mode - no changes were made")
    print("=" * 40)
    print(f"  Status:              {result.state.value}")
    print(f"  Documents processed: {result.documents_processed}")
    print(f"  Matches accepted:    {len(result.accepted)}")
    print(f"  Needs review:        {len(result.unresolved)}")
    print(f"  Duration:            {result.duration_ms}ms")

    for match in result.accepted:
        print(f"   ✓ {match.transaction_id} → {match.document_id} {match.amount} ({match.confidence:.0%})")
    for document_id, candidates in result.unresolved.items():
        best = candidates[0]
        print(f"   ? {document_id}: best {best.transaction_id} ({best.confidence:.0%})")

    if result.warnings:
        print("\n⚠️  Warnings:")
        for warning in result.warnings:
            print(f"   - {warning}")
    if result.errors:
        print("\n❌ Errors:")
        for error in result.errors:
            print(f"   - {error}")

    return 0 if result.success else 1


def cmd_aging(config: Config, owner: str, dry_run: bool = False) -> int:
    """Refresh aging buckets and print a summary."""
    from ..services.reconciliation import ReconciliationService

    service = ReconciliationService(open_store(config), config)
    documents = service.refresh_aging(owner, dry_run=dry_run)

    totals: dict[tuple[str, str, str], Decimal] = defaultdict(Decimal)
    counts: dict[tuple[str, str, str], int] = defaultdict(int)
    for document in documents:
        if not document.is_open:
            continue
        key = (document.direction.value, document.aging_bucket.value, document.currency)
        totals[key] += document.amount_remaining or Decimal("0")
        counts[key] += 1

    print(f"\n📅 Aging for {owner}")
    print("=" * 40)
    if not counts:
        print("  Nothing outstanding")
    for key in sorted(counts):
        direction, bucket, currency = key
        print(f"  {direction:<9} {bucket:<8} {counts[key]:>4} docs  {totals[key]:>12.2f} {currency}")
    print()
    return 0


def cmd_status(config: Config, owner: str) -> int:
    """Show reconciliation status."""
    from ..services.reconciliation import ReconciliationService

    stats = ReconciliationService(open_store(config), config).get_status(owner)

    print(f"\n📊 Status for {owner}")
    print("=" * 40)
    print(f"  Documents:              {stats['documents_total']}")
    for status, count in stats["payment_status"].items():
        print(f"    {status:<22}{count}")
    print("  Reconciliation:")
    for status, count in stats["reconciliation_status"].items():
        print(f"    {status:<22}{count}")
    print(f"  Transactions:           {stats['transactions_total']}")
    print(f"  Unmatched transactions: {stats['transactions_unmatched']}")
    for direction, totals in stats["outstanding"].items():
        for currency, amount in totals.items():
            print(f"  Outstanding {direction:<10} {amount} {currency}")
    print()
    return 0


def cmd_demo(config: Config, action: str, session_id: str) -> int:
    """Clone or reset a demo session."""
    from ..demo import SessionReplicator

    replicator = SessionReplicator(open_store(config), config)
    if action == "clone":
        result = replicator.clone(session_id)
        print(f"✓ Cloned demo session {session_id} ({result.total} records, {result.duration_ms}ms)")
        for collection, count in sorted(result.counts.items()):
            print(f"   {collection:<18}{count}")
    else:
        counts = replicator.reset(session_id)
        print(f"✓ Reset demo session {session_id} ({sum(counts.values())} documents)")
    return 0


def cmd_init_config(config_path: Path, force: bool = False) -> int:
    """Write a default config file."""
    if config_path.exists() and not force:
        print(f"❌ {config_path} already exists (use --force to overwrite)")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config, parsed.force)

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    problems = config.validate()
    if problems:
        print("❌ Invalid configuration:")
        for problem in problems:
            print(f"   - {problem}")
        return 1

    # Route to command
    try:
        if parsed.command == "detect":
            return cmd_detect(config, parsed.file, parsed.owner, parsed.direction, parsed.json)
        elif parsed.command == "import":
            return cmd_import(
                config,
                parsed.file,
                parsed.owner,
                parsed.direction,
                org_id=parsed.org,
                template_name=parsed.template_name,
                dry_run=parsed.dry_run,
            )
        elif parsed.command == "import-transactions":
            return cmd_import_transactions(
                config,
                parsed.file,
                parsed.owner,
                account_id=parsed.account,
                template_name=parsed.template_name,
                dry_run=parsed.dry_run,
                as_json=parsed.json,
            )
        elif parsed.command == "extract":
            return cmd_extract(config, parsed.file, parsed.owner, parsed.direction, parsed.dry_run)
        elif parsed.command == "reconcile":
            return cmd_reconcile(config, parsed.owner, parsed.dry_run, parsed.json)
        elif parsed.command == "aging":
            return cmd_aging(config, parsed.owner, parsed.dry_run)
        elif parsed.command == "status":
            return cmd_status(config, parsed.owner)
        elif parsed.command == "demo" and parsed.demo_command:
            return cmd_demo(config, parsed.demo_command, parsed.session)
        else:
            parser.print_help()
            return 1
    except (ReconError, OSError) as e:
        logger.debug("Command %s failed", parsed.command, exc_info=True)
        print(f"❌ {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
