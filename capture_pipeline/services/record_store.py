"""Server-side authoritative store for capture records.

Only the pipeline orchestrator writes records. Updates are compare-and-set on
``version`` so a writer that lost a race gets ``False`` back instead of
silently overwriting newer state.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from capture_pipeline.config import settings
from capture_pipeline.database import connect
from capture_pipeline.errors import StorageError
from capture_pipeline.models import CaptureRecord, RecordState, utcnow

logger = logging.getLogger(__name__)


def _ts(value: datetime) -> str:
    """UTC isoformat so stored timestamps compare lexicographically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class RecordStore:
    """SQLite-backed table of capture records plus duplicate links."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = str(db_path or settings.db_path)
        self._lock = threading.Lock()
        self._ensure_tables()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _connect(self) -> sqlite3.Connection:
        try:
            return connect(self.db_path)
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Record store unavailable: {e}") from e

    def _ensure_tables(self) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS capture_records (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    origin_client_id TEXT NOT NULL,
                    content_fingerprint TEXT NOT NULL,
                    state TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    edited INTEGER NOT NULL DEFAULT 0,
                    deleted INTEGER NOT NULL DEFAULT 0,
                    duplicate_of TEXT,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_capture_records_dedup
                ON capture_records (owner_id, content_fingerprint, created_at)
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_capture_records_owner ON capture_records (owner_id, created_at DESC)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS duplicate_links (
                    record_id TEXT PRIMARY KEY,
                    canonical_id TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    linked_at TEXT NOT NULL
                )
                """
            )
            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Could not initialise record store: {e}") from e
        finally:
            conn.close()

    def _row_to_record(self, row: sqlite3.Row) -> CaptureRecord:
        return CaptureRecord.from_api(json.loads(row["payload"]))

    def _values(self, record: CaptureRecord) -> tuple:
        return (
            record.owner_id,
            record.origin_client_id,
            record.content_fingerprint,
            record.state.value,
            record.version,
            int(record.edited),
            int(record.deleted),
            record.duplicate_of,
            json.dumps(record.to_api()),
            _ts(record.created_at),
            _ts(record.updated_at),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def insert(self, record: CaptureRecord) -> CaptureRecord:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    INSERT INTO capture_records (
                        owner_id, origin_client_id, content_fingerprint, state, version,
                        edited, deleted, duplicate_of, payload, created_at, updated_at, id
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    self._values(record) + (record.id,),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                raise StorageError(f"Record {record.id} already exists") from e
            except sqlite3.Error as e:
                raise StorageError(f"Failed to insert record {record.id}: {e}") from e
            finally:
                conn.close()
        return record

    def update(self, record: CaptureRecord, expected_version: int) -> bool:
        """Write record if the stored version is still expected_version."""
        with self._lock:
            conn = self._connect()
            try:
                cur = conn.execute(
                    """
                    UPDATE capture_records
                    SET owner_id = ?, origin_client_id = ?, content_fingerprint = ?, state = ?,
                        version = ?, edited = ?, deleted = ?, duplicate_of = ?, payload = ?,
                        created_at = ?, updated_at = ?
                    WHERE id = ? AND version = ?
                    """,
                    self._values(record) + (record.id, expected_version),
                )
                conn.commit()
            except sqlite3.Error as e:
                raise StorageError(f"Failed to update record {record.id}: {e}") from e
            finally:
                conn.close()
        if cur.rowcount == 0:
            logger.debug(f"Version check failed for {record.id} (expected v{expected_version})")
            return False
        return True

    def get(self, record_id: str) -> Optional[CaptureRecord]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT payload FROM capture_records WHERE id = ?", (record_id,)).fetchone()
        finally:
            conn.close()
        return self._row_to_record(row) if row else None

    def find_duplicate(
        self,
        owner_id: str,
        fingerprint: str,
        created_at: datetime,
        window_seconds: int,
        exclude_id: Optional[str] = None,
    ) -> Optional[CaptureRecord]:
        """Earliest unedited live record with the same owner and fingerprint inside the window."""
        window = timedelta(seconds=window_seconds)
        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT payload FROM capture_records
                WHERE owner_id = ? AND content_fingerprint = ?
                  AND edited = 0 AND deleted = 0 AND duplicate_of IS NULL
                  AND created_at >= ? AND created_at <= ?
                  AND id != ?
                ORDER BY created_at ASC
                LIMIT 1
                """,
                (
                    owner_id,
                    fingerprint,
                    _ts(created_at - window),
                    _ts(created_at + window),
                    exclude_id or "",
                ),
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_record(row) if row else None

    def link_duplicate(self, record_id: str, canonical_id: str, owner_id: str) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO duplicate_links (record_id, canonical_id, owner_id, linked_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (record_id, canonical_id, owner_id, _ts(utcnow())),
                )
                conn.commit()
            except sqlite3.Error as e:
                raise StorageError(f"Failed to link duplicate {record_id}: {e}") from e
            finally:
                conn.close()
        logger.info(f"Merged capture {record_id} into canonical record {canonical_id}")

    def unlink_duplicate(self, record_id: str) -> bool:
        with self._lock:
            conn = self._connect()
            try:
                cur = conn.execute("DELETE FROM duplicate_links WHERE record_id = ?", (record_id,))
                conn.commit()
                return cur.rowcount > 0
            except sqlite3.Error as e:
                raise StorageError(f"Failed to unlink duplicate {record_id}: {e}") from e
            finally:
                conn.close()

    def get_duplicate_link(self, record_id: str) -> Optional[str]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT canonical_id FROM duplicate_links WHERE record_id = ?", (record_id,)
            ).fetchone()
        finally:
            conn.close()
        return row["canonical_id"] if row else None

    def recent_for_owner(
        self, owner_id: str, limit: int = 20, exclude_id: Optional[str] = None
    ) -> List[CaptureRecord]:
        """Most recent live records of an owner, newest first."""
        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT payload FROM capture_records
                WHERE owner_id = ? AND deleted = 0 AND id != ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (owner_id, exclude_id or "", limit),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_record(row) for row in rows]

    def list_records(
        self,
        owner_id: Optional[str] = None,
        state: Optional[RecordState] = None,
        limit: int = 50,
    ) -> List[CaptureRecord]:
        clauses = []
        params: list = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if state is not None:
            clauses.append("state = ?")
            params.append(state.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT payload FROM capture_records {where} ORDER BY updated_at DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_record(row) for row in rows]

    def counts_by_state(self) -> Dict[str, int]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT state, COUNT(*) AS total FROM capture_records GROUP BY state"
            ).fetchall()
        finally:
            conn.close()
        return {row["state"]: row["total"] for row in rows}
