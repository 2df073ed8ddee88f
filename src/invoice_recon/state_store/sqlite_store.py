"""
SQLite-based document store implementation.

Tables:
- documents: One row per record, keyed by (collection, id). The record body
  is stored as JSON; opaque values (timestamps, bytes) keep their ``__type__``
  discriminator so they round-trip unchanged.
"""

import json
import logging
import re
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

from ..errors import StoreConflictError, StoreError, StoreTimeoutError
from ..schemas.values import decode_value, encode_value
from .base import DocumentStore, WriteKind, WriteOp

logger = logging.getLogger(__name__)

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_path(field_name: str) -> str:
    if not _FIELD_NAME.match(field_name):
        raise StoreError(f"Invalid field name: {field_name!r}")
    return "$." + field_name


def _map_sqlite_error(e: sqlite3.Error) -> StoreError:
    message = str(e).lower()
    if isinstance(e, sqlite3.OperationalError) and ("locked" in message or "busy" in message):
        return StoreTimeoutError(f"Store timed out: {e}")
    return StoreError(f"Store operation failed: {e}")


class SQLiteDocumentStore(DocumentStore):
    """
    SQLite-backed document store.

    Every call opens its own connection, so independent collections can be
    committed from worker threads; SQLite serializes the writers and the
    busy timeout bounds how long one waits.
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: Path | str,
        timeout: float = 30.0,
        max_batch_size: int = 500,
    ):
        """
        Initialize document store.

        Args:
            db_path: Path to SQLite database file
            timeout: Default seconds to wait for a locked database
            max_batch_size: Maximum operations per atomic commit
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout
        self.max_batch_size = max_batch_size
        self._init_db()

    def _get_connection(self, timeout: Optional[float] = None) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(
            str(self.db_path), timeout=self.timeout if timeout is None else timeout
        )
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self, timeout: Optional[float] = None) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        try:
            conn = self._get_connection(timeout)
        except sqlite3.Error as e:
            raise _map_sqlite_error(e) from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise _map_sqlite_error(e) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    id TEXT NOT NULL,
                    owner TEXT,  -- copy of body.userId for indexed lookups
                    body TEXT NOT NULL,  -- JSON
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (collection, id)
                )
            """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_documents_owner ON documents(collection, owner)"
            )
            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
                (self.SCHEMA_VERSION,),
            )

    @staticmethod
    def _decode(row: sqlite3.Row) -> dict[str, Any]:
        body = decode_value(json.loads(row["body"]))
        body["id"] = row["id"]
        return body

    def get(
        self, collection: str, document_id: str, timeout: Optional[float] = None
    ) -> Optional[dict[str, Any]]:
        with self._transaction(timeout) as conn:
            row = conn.execute(
                "SELECT id, body FROM documents WHERE collection = ? AND id = ?",
                (collection, document_id),
            ).fetchone()
            return self._decode(row) if row else None

    def query(
        self,
        collection: str,
        where: Optional[dict[str, Any]] = None,
        order_by: Sequence[str] = (),
        timeout: Optional[float] = None,
    ) -> list[dict[str, Any]]:
        sql = ["SELECT id, body FROM documents WHERE collection = ?"]
        params: list[Any] = [collection]

        for name, value in (where or {}).items():
            if name == "userId":
                column = "owner"
            elif name == "id":
                column = "id"
            else:
                column = f"json_extract(body, '{_json_path(name)}')"
            if value is None:
                sql.append(f"AND {column} IS NULL")
            else:
                encoded = encode_value(value)
                if isinstance(encoded, bool):
                    encoded = int(encoded)
                sql.append(f"AND {column} = ?")
                params.append(encoded)

        ordering = [
            "id" if name == "id" else f"json_extract(body, '{_json_path(name)}')"
            for name in order_by
        ]
        # Stable order for equal keys
        ordering.append("id")
        sql.append("ORDER BY " + ", ".join(ordering))

        with self._transaction(timeout) as conn:
            rows = conn.execute(" ".join(sql), params).fetchall()
            return [self._decode(row) for row in rows]

    def commit(self, operations: Sequence[WriteOp], timeout: Optional[float] = None) -> None:
        if len(operations) > self.max_batch_size:
            raise StoreError(
                f"Batch of {len(operations)} operations exceeds limit of {self.max_batch_size}"
            )
        if not operations:
            return

        now = _now_iso()
        with self._transaction(timeout) as conn:
            # Take the write lock before reading preconditions
            conn.execute("BEGIN IMMEDIATE")
            for op in operations:
                self._apply(conn, op, now)

        logger.debug("Committed %d operations", len(operations))

    def _apply(self, conn: sqlite3.Connection, op: WriteOp, now: str) -> None:
        if op.kind == WriteKind.DELETE:
            conn.execute(
                "DELETE FROM documents WHERE collection = ? AND id = ?",
                (op.collection, op.document_id),
            )
            return

        data = dict(op.data or {})
        data.pop("id", None)

        if op.kind == WriteKind.UPDATE:
            row = conn.execute(
                "SELECT body FROM documents WHERE collection = ? AND id = ?",
                (op.collection, op.document_id),
            ).fetchone()
            if row is None:
                raise StoreError(f"Cannot update missing record {op.collection}/{op.document_id}")
            merged = json.loads(row["body"])
            for name, value in (op.expected or {}).items():
                if merged.get(name) != encode_value(value):
                    raise StoreConflictError(
                        f"Record {op.collection}/{op.document_id} changed: {name} no longer matches",
                        op.collection,
                        op.document_id,
                    )
            merged.update(encode_value(data))
            conn.execute(
                "UPDATE documents SET body = ?, owner = ?, updated_at = ? "
                "WHERE collection = ? AND id = ?",
                (json.dumps(merged), merged.get("userId"), now, op.collection, op.document_id),
            )
            return

        body = json.dumps(encode_value(data))
        if op.kind == WriteKind.CREATE:
            try:
                conn.execute(
                    "INSERT INTO documents (collection, id, owner, body, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (op.collection, op.document_id, data.get("userId"), body, now, now),
                )
            except sqlite3.IntegrityError as e:
                raise StoreConflictError(
                    f"Record {op.collection}/{op.document_id} already exists",
                    op.collection,
                    op.document_id,
                ) from e
            return

        conn.execute(
            """
            INSERT INTO documents (collection, id, owner, body, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(collection, id) DO UPDATE SET
                owner = excluded.owner,
                body = excluded.body,
                updated_at = excluded.updated_at
            """,
            (op.collection, op.document_id, data.get("userId"), body, now, now),
        )

    # Statistics

    def count(self, collection: str, owner: Optional[str] = None) -> int:
        """Number of records in a collection (optionally for one owner)."""
        with self._transaction() as conn:
            if owner is None:
                row = conn.execute(
                    "SELECT COUNT(*) as count FROM documents WHERE collection = ?",
                    (collection,),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) as count FROM documents WHERE collection = ? AND owner = ?",
                    (collection, owner),
                ).fetchone()
            return row["count"] if row else 0
