"""
Configuration management (SSOT).

This module defines ALL configuration for the import and reconciliation
pipeline. All config keys are defined here; no other module should invent
config keys.

Key invariants:
- Confidence thresholds and weights are on a 0-1 scale
- Money tolerances are in currency units (0.01 == one cent)
- Master demo ids are never written to, only read and cloned
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

# Collections copied from the master demo account into a session
DEFAULT_CLONE_COLLECTIONS = (
    "accounts",
    "statements",
    "transactions",
    "invoices",
    "bills",
    "vendor_patterns",
    "pdf2sheet_jobs",
    "documents",
)


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class StoreConfig:
    """Document store and batch writer settings."""

    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))
    # Hard limit of operations per atomic batch
    max_batch_size: int = 500
    # Per-call timeout for store operations (seconds)
    timeout_seconds: float = 30.0
    # Worker threads for committing independent collections
    max_workers: int = 4


@dataclass
class ImportConfig:
    """Format detection and template matching settings."""

    # Rows scanned when looking for the header row
    header_scan_rows: int = 10
    # Minimum share of non-empty cells in a header row
    header_density: float = 0.6
    # Column confidence = header_weight * header + value_weight * values
    header_weight: float = 0.6
    value_weight: float = 0.4
    # Minimum column confidence to assign a field
    column_threshold: float = 0.5
    # Non-empty sample values checked per column
    sample_size: int = 5
    # Minimum score to reuse a saved template
    template_min_confidence: float = 0.6


@dataclass
class ReconciliationConfig:
    """Matching settings."""

    # Transactions this many days before the document date and after the
    # due date are considered
    date_window_days: int = 30
    # Minimum composite confidence to accept a match automatically
    accept_threshold: float = 0.6
    # Minimum confidence to report a candidate for manual/AI review
    proposal_threshold: float = 0.3
    # Signal weights (sum to 1.0)
    weight_amount: float = 0.5
    weight_date: float = 0.2
    weight_counterparty: float = 0.3
    # Added to the composite when the document number appears in the description
    reference_bonus: float = 0.1
    # Weight of the learned vendor pattern signal, scaled by the pattern's confidence
    pattern_bonus: float = 0.1
    # Unresolved candidates kept per document
    max_candidates: int = 5


@dataclass
class ReplicatorConfig:
    """Demo session cloning settings."""

    master_user_id: str = "demo_coastal_creative_agency"
    master_org_id: str = "demo_org_coastal_creative"
    collections: tuple[str, ...] = DEFAULT_CLONE_COLLECTIONS


@dataclass
class ExtractionConfig:
    """AI extraction service settings."""

    base_url: str = "http://localhost:8090"
    token: str = ""
    timeout_seconds: float = 120.0
    max_retries: int = 3
    backoff_factor: float = 0.5
    # Payloads below this confidence are imported with a review warning
    review_threshold: float = 0.6


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    store: StoreConfig = field(default_factory=StoreConfig)
    importing: ImportConfig = field(default_factory=ImportConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    replicator: ReplicatorConfig = field(default_factory=ReplicatorConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)

    # Currency assumed when a document does not state one
    home_currency: str = "USD"

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if len(self.home_currency) != 3 or not self.home_currency.isalpha():
            errors.append("home_currency must be a 3-letter ISO 4217 code")

        if not 0 < self.store.max_batch_size <= 500:
            errors.append("store.max_batch_size must be between 1 and 500")
        if self.store.timeout_seconds <= 0:
            errors.append("store.timeout_seconds must be positive")

        imp = self.importing
        if abs(imp.header_weight + imp.value_weight - 1.0) > 1e-6:
            errors.append("importing.header_weight + importing.value_weight must equal 1.0")
        if imp.header_scan_rows < 1:
            errors.append("importing.header_scan_rows must be at least 1")

        recon = self.reconciliation
        weights = recon.weight_amount + recon.weight_date + recon.weight_counterparty
        if abs(weights - 1.0) > 1e-6:
            errors.append("reconciliation weights must sum to 1.0")
        if not 0.0 <= recon.accept_threshold <= 1.0:
            errors.append("reconciliation.accept_threshold must be between 0 and 1")
        if recon.accept_threshold < recon.proposal_threshold:
            errors.append("accept_threshold must be >= proposal_threshold")

        if not self.replicator.master_user_id or not self.replicator.master_org_id:
            errors.append("replicator master ids are required")

        return errors


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - RECON_STATE_DB
    - RECON_HOME_CURRENCY
    - RECON_ACCEPT_THRESHOLD
    - RECON_EXTRACTION_URL
    - RECON_EXTRACTION_TOKEN
    - RECON_EXTRACTION_TIMEOUT (request timeout in seconds)
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Store config
    store_data = data.get("store", {})
    store = StoreConfig(
        state_db_path=Path(
            os.environ.get("RECON_STATE_DB", store_data.get("state_db_path", "data/state.db"))
        ),
        max_batch_size=store_data.get("max_batch_size", 500),
        timeout_seconds=store_data.get("timeout_seconds", 30.0),
        max_workers=store_data.get("max_workers", 4),
    )

    # Import config
    import_data = data.get("importing", {})
    importing = ImportConfig(
        header_scan_rows=import_data.get("header_scan_rows", 10),
        header_density=import_data.get("header_density", 0.6),
        header_weight=import_data.get("header_weight", 0.6),
        value_weight=import_data.get("value_weight", 0.4),
        column_threshold=import_data.get("column_threshold", 0.5),
        sample_size=import_data.get("sample_size", 5),
        template_min_confidence=import_data.get("template_min_confidence", 0.6),
    )

    # Reconciliation config
    recon_data = data.get("reconciliation", {})
    accept_threshold = recon_data.get("accept_threshold", 0.6)
    accept_env = os.environ.get("RECON_ACCEPT_THRESHOLD", "")
    if accept_env:
        try:
            accept_threshold = float(accept_env)
        except ValueError:
            raise ConfigValidationError(
                f"RECON_ACCEPT_THRESHOLD must be a number, got {accept_env!r}"
            ) from None

    reconciliation = ReconciliationConfig(
        date_window_days=recon_data.get("date_window_days", 30),
        accept_threshold=accept_threshold,
        proposal_threshold=recon_data.get("proposal_threshold", 0.3),
        weight_amount=recon_data.get("weight_amount", 0.5),
        weight_date=recon_data.get("weight_date", 0.2),
        weight_counterparty=recon_data.get("weight_counterparty", 0.3),
        reference_bonus=recon_data.get("reference_bonus", 0.1),
        pattern_bonus=recon_data.get("pattern_bonus", 0.1),
        max_candidates=recon_data.get("max_candidates", 5),
    )

    # Replicator config
    replicator_data = data.get("replicator", {})
    replicator = ReplicatorConfig(
        master_user_id=replicator_data.get("master_user_id", "demo_coastal_creative_agency"),
        master_org_id=replicator_data.get("master_org_id", "demo_org_coastal_creative"),
        collections=tuple(replicator_data.get("collections", DEFAULT_CLONE_COLLECTIONS)),
    )

    # Extraction config
    extraction_data = data.get("extraction", {})
    extraction = ExtractionConfig(
        base_url=os.environ.get(
            "RECON_EXTRACTION_URL", extraction_data.get("base_url", "http://localhost:8090")
        ),
        token=os.environ.get("RECON_EXTRACTION_TOKEN", extraction_data.get("token", "")),
        timeout_seconds=float(os.environ.get(
            "RECON_EXTRACTION_TIMEOUT", extraction_data.get("timeout_seconds", 120.0)
        )),
        max_retries=extraction_data.get("max_retries", 3),
        backoff_factor=extraction_data.get("backoff_factor", 0.5),
        review_threshold=extraction_data.get("review_threshold", 0.6),
    )

    home_currency = os.environ.get("RECON_HOME_CURRENCY", data.get("home_currency", "USD"))

    return Config(
        store=store,
        importing=importing,
        reconciliation=reconciliation,
        replicator=replicator,
        extraction=extraction,
        home_currency=home_currency.upper(),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Invoice/Bill Import & Reconciliation Configuration

# Currency assumed when an imported document does not state one
home_currency: "USD"

# Document store
store:
  state_db_path: "data/state.db"
  max_batch_size: 500                      # Operations per atomic batch (store limit)
  timeout_seconds: 30
  max_workers: 4                           # Collections committed in parallel

# Format detection / template matching
importing:
  header_scan_rows: 10                     # Rows scanned for the header
  header_density: 0.6                      # Min share of non-empty header cells
  header_weight: 0.6
  value_weight: 0.4
  column_threshold: 0.5                    # Min confidence to map a column
  sample_size: 5
  template_min_confidence: 0.6             # Min score to reuse a saved template

# Reconciliation
reconciliation:
  date_window_days: 30                     # Window around document/due date
  accept_threshold: 0.6                    # Auto-accept matches above this score
  proposal_threshold: 0.3                  # Report candidates above this score
  weight_amount: 0.5
  weight_date: 0.2
  weight_counterparty: 0.3
  reference_bonus: 0.1                     # Document number found in description
  pattern_bonus: 0.1                       # Learned vendor pattern signal
  max_candidates: 5

# Demo session cloning
replicator:
  master_user_id: "demo_coastal_creative_agency"
  master_org_id: "demo_org_coastal_creative"

# AI extraction service
extraction:
  base_url: "http://localhost:8090"
  token: "YOUR_EXTRACTION_TOKEN"
  timeout_seconds: 120
  max_retries: 3
  backoff_factor: 0.5
  review_threshold: 0.6                    # Below this: imported with a review warning
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
