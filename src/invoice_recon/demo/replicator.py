"""
Demo session replicator.

Copies the master demo account into a per-session namespace so each
visitor gets a private, writable copy:
- master user id -> ``demo_<session>``
- master org id -> ``demo_org_<session>``

Every string in every cloned record is rewritten by literal substring
replacement, so ids embedded in URLs or storage paths follow along. Opaque
values (timestamps, binary blobs) are copied untouched.

Target ids are deterministic, so cloning the same session twice
overwrites the same records instead of duplicating them.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any, Optional, Union

from invoice_recon.config import DEFAULT_CLONE_COLLECTIONS
from invoice_recon.errors import CloneConflict, ValidationError
from invoice_recon.normalizer.aging import compute_aging
from invoice_recon.schemas.documents import PaymentStatus, ReconciliationStatus
from invoice_recon.schemas.values import format_money, is_opaque, money, parse_iso_date
from invoice_recon.state_store.base import WriteOp
from invoice_recon.state_store.batch_writer import BatchWriter

if TYPE_CHECKING:
    from invoice_recon.config import Config
    from invoice_recon.state_store.base import DocumentStore

logger = logging.getLogger(__name__)

USERS_COLLECTION = "users"
ORGANIZATIONS_COLLECTION = "organizations"

# Collections whose payment state is restored by reset()
RESETTABLE_COLLECTIONS = ("invoices", "bills")
# Transaction claims of the session are dropped by reset()
CLAIM_COLLECTION = "payment_claims"

_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "invoice-recon/demo-session")


def session_user_id(session_id: str) -> str:
    return f"demo_{session_id}"


def session_org_id(session_id: str) -> str:
    return f"demo_org_{session_id}"


@dataclass
class CloneResult:
    session_id: str
    user_id: str
    org_id: str
    counts: dict[str, int] = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "orgId": self.org_id,
            "counts": self.counts,
            "total": self.total,
            "durationMs": self.duration_ms,
        }


class SessionReplicator:
    """Clones and resets demo sessions from the master demo account."""

    def __init__(
        self,
        store: DocumentStore,
        config: Optional[Config] = None,
        writer: Optional[BatchWriter] = None,
    ) -> None:
        """Initialize the replicator.

        Args:
            store: Document store holding both master and session data.
            config: Application configuration; defaults apply when omitted.
            writer: Batch writer; built from the store when omitted.
        """
        replicator = config.replicator if config else None
        self.master_user_id = replicator.master_user_id if replicator else "demo_coastal_creative_agency"
        self.master_org_id = replicator.master_org_id if replicator else "demo_org_coastal_creative"
        self.collections = tuple(replicator.collections) if replicator else DEFAULT_CLONE_COLLECTIONS

        self.store = store
        if writer is None:
            store_config = config.store if config else None
            writer = BatchWriter(
                store,
                max_batch_size=store_config.max_batch_size if store_config else None,
                timeout=store_config.timeout_seconds if store_config else None,
                max_workers=store_config.max_workers if store_config else 4,
            )
        self.writer = writer

    # === Rewriting ===

    def replace_ids(self, value: Any, user_id: str, org_id: str) -> Any:
        """Deep-replace master ids with session ids in every string value."""
        if isinstance(value, str):
            return value.replace(self.master_user_id, user_id).replace(self.master_org_id, org_id)
        if is_opaque(value):
            return value
        if isinstance(value, list):
            return [self.replace_ids(item, user_id, org_id) for item in value]
        if isinstance(value, dict):
            return {key: self.replace_ids(item, user_id, org_id) for key, item in value.items()}
        return value

    def target_id(self, session_id: str, collection: str, source_id: str) -> str:
        """Id of the session copy of ``collection/source_id``.

        Ids that embed a master id get the session id substituted; all
        others get a uuid5 derived from the session and the source path.
        """
        if self.master_user_id in source_id or self.master_org_id in source_id:
            return self.replace_ids(source_id, session_user_id(session_id), session_org_id(session_id))
        namespace = uuid.uuid5(_NAMESPACE, session_id)
        return str(uuid.uuid5(namespace, f"{collection}/{source_id}"))

    def _check_target(self, collection: str, target_id: str, user_id: str) -> None:
        existing = self.store.get(collection, target_id)
        if existing is None:
            return
        owner = existing.get("userId")
        if collection == USERS_COLLECTION:
            owner = owner or existing.get("id")
        if owner not in (None, user_id):
            raise CloneConflict(collection, target_id, owner)

    # === Operations ===

    def clone(self, session_id: str) -> CloneResult:
        """Copy the master demo account into session ``session_id``.

        Raises:
            ValidationError: If the session id would map onto the master account.
            CloneConflict: If a target id exists and belongs to another owner.
            BatchWriteError: If a collection fails part-way through writing.
        """
        start_time = time.time()
        user_id = session_user_id(session_id)
        org_id = session_org_id(session_id)
        if not session_id or user_id == self.master_user_id or org_id == self.master_org_id:
            raise ValidationError(f"Invalid demo session id: {session_id!r}", field="session_id")

        result = CloneResult(session_id=session_id, user_id=user_id, org_id=org_id)
        ops: list[WriteOp] = []

        master_user = self.store.get(USERS_COLLECTION, self.master_user_id)
        if master_user is None:
            logger.warning("Master demo user %s not found; cloning collections only", self.master_user_id)
        else:
            self._check_target(USERS_COLLECTION, user_id, user_id)
            ops.append(
                WriteOp.set(USERS_COLLECTION, user_id, self.replace_ids(master_user, user_id, org_id))
            )
            master_org = self.store.get(ORGANIZATIONS_COLLECTION, self.master_org_id)
            if master_org is not None:
                self._check_target(ORGANIZATIONS_COLLECTION, org_id, user_id)
                ops.append(
                    WriteOp.set(
                        ORGANIZATIONS_COLLECTION,
                        org_id,
                        self.replace_ids(master_org, user_id, org_id),
                    )
                )

        for collection in self.collections:
            rows = self.store.query(collection, {"userId": self.master_user_id})
            for row in rows:
                target = self.target_id(session_id, collection, row["id"])
                self._check_target(collection, target, user_id)
                data = self.replace_ids(row, user_id, org_id)
                data["id"] = target
                ops.append(WriteOp.set(collection, target, data))

        commit_results = self.writer.commit_parallel(ops)
        self.writer.raise_for_results(commit_results)
        result.counts = {name: r.committed for name, r in commit_results.items()}
        result.duration_ms = int((time.time() - start_time) * 1000)

        logger.info(
            "Cloned demo session %s: %d records across %d collections",
            session_id,
            result.total,
            len(result.counts),
        )
        return result

    def reset(
        self, session_id: str, now: Optional[Union[date, datetime]] = None
    ) -> dict[str, int]:
        """Restore a session's invoices and bills to unpaid/unmatched.

        Aging is recomputed for the unpaid state as of ``now`` and the
        session's transaction claims are released. Transactions and master
        data are left untouched.

        Returns:
            Number of records reset per collection.
        """
        user_id = session_user_id(session_id)
        if not session_id or user_id == self.master_user_id:
            raise ValidationError(f"Invalid demo session id: {session_id!r}", field="session_id")

        now = now or datetime.now(timezone.utc)
        ops: list[WriteOp] = []
        for collection in RESETTABLE_COLLECTIONS:
            for row in self.store.query(collection, {"userId": user_id}):
                total = money(row.get("total"))
                bucket, days = compute_aging(
                    parse_iso_date(row.get("dueDate")), now, PaymentStatus.UNPAID
                )
                ops.append(
                    WriteOp.update(
                        collection,
                        row["id"],
                        {
                            "paymentStatus": PaymentStatus.UNPAID.value,
                            "reconciliationStatus": ReconciliationStatus.UNMATCHED.value,
                            "amountPaid": "0.00",
                            "amountRemaining": format_money(total),
                            "payments": [],
                            "matchedTransactionIds": [],
                            "matchMethod": None,
                            "matchConfidence": None,
                            "agingBucket": bucket.value,
                            "daysOverdue": days,
                        },
                    )
                )
        for row in self.store.query(CLAIM_COLLECTION, {"userId": user_id}):
            ops.append(WriteOp.delete(CLAIM_COLLECTION, row["id"]))

        commit_results = self.writer.commit_parallel(ops)
        self.writer.raise_for_results(commit_results)
        counts = {name: r.committed for name, r in commit_results.items()}
        logger.info("Reset demo session %s: %s", session_id, counts)
        return counts
