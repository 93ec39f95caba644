"""Device-side durable capture queue.

Every capture is written here before any network call is attempted, so a
closed tab or a power loss never loses a thought. Entries stay until the
server acknowledges them at a given version. Voice recordings are kept
alongside in local_audio until uploaded and acknowledged.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta
from typing import List, Optional

from capture_pipeline.config import settings
from capture_pipeline.database import connect
from capture_pipeline.errors import StorageError
from capture_pipeline.models import CaptureRecord, RecordState, utcnow

logger = logging.getLogger(__name__)


class LocalCaptureQueue:
    """SQLite-backed append-only queue of unsynced captures."""

    def __init__(self, db_path: Optional[str] = None, *, archive_synced: Optional[bool] = None) -> None:
        self.db_path = str(db_path or settings.local_queue_path)
        self.archive_synced = (
            settings.local_queue_archive_synced if archive_synced is None else archive_synced
        )
        self._lock = threading.Lock()
        self._ensure_table()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _connect(self) -> sqlite3.Connection:
        try:
            return connect(self.db_path)
        except (sqlite3.Error, OSError) as e:
            raise StorageError(
                f"Local capture storage unavailable: {e}",
                user_message="Could not save the capture on this device",
            ) from e

    def _ensure_table(self) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS local_captures (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    record_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    payload TEXT NOT NULL,
                    queued_at TEXT NOT NULL,
                    synced_at TEXT
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_local_captures_pending ON local_captures (synced_at, seq)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_local_captures_record ON local_captures (record_id, version)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS local_audio (
                    audio_ref TEXT PRIMARY KEY,
                    record_id TEXT NOT NULL,
                    data BLOB NOT NULL,
                    stored_at TEXT NOT NULL,
                    uploaded_at TEXT
                )
                """
            )
            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Could not initialise local capture queue: {e}") from e
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def enqueue(self, record: CaptureRecord, audio_bytes: Optional[bytes] = None) -> CaptureRecord:
        """Persist a capture locally. Raises StorageError instead of dropping it.

        A voice capture's recording is written in the same transaction, so a
        queued audio record always has its blob on the device.
        """

        if audio_bytes is not None and not record.audio_ref:
            raise ValueError(f"Capture {record.id} has audio but no audio_ref")
        stored = record.copy(state=RecordState.CAPTURED)
        payload = json.dumps(stored.to_api())
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    INSERT INTO local_captures (record_id, version, payload, queued_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (stored.id, stored.version, payload, utcnow().isoformat()),
                )
                if audio_bytes is not None:
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO local_audio (audio_ref, record_id, data, stored_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (stored.audio_ref, stored.id, sqlite3.Binary(audio_bytes), utcnow().isoformat()),
                    )
                conn.commit()
            except sqlite3.Error as e:
                logger.error(f"Failed to persist capture {stored.id}: {e}")
                raise StorageError(
                    f"Failed to persist capture {stored.id}: {e}",
                    user_message="Could not save the capture on this device",
                ) from e
            finally:
                conn.close()
        logger.debug(f"Queued capture {stored.id} v{stored.version} locally")
        return stored

    def drain_batch(self, max_size: int) -> List[CaptureRecord]:
        """Return up to max_size unsynced captures in insertion order without removing them."""

        if max_size <= 0:
            return []
        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT payload FROM local_captures
                WHERE synced_at IS NULL
                ORDER BY seq ASC
                LIMIT ?
                """,
                (max_size,),
            ).fetchall()
        finally:
            conn.close()
        return [CaptureRecord.from_api(json.loads(row["payload"])) for row in rows]

    def mark_synced(self, record_id: str, version: int) -> int:
        """Drop (or archive) every entry for record_id at or below version."""

        with self._lock:
            conn = self._connect()
            try:
                if self.archive_synced:
                    cur = conn.execute(
                        """
                        UPDATE local_captures SET synced_at = ?
                        WHERE record_id = ? AND version <= ? AND synced_at IS NULL
                        """,
                        (utcnow().isoformat(), record_id, version),
                    )
                else:
                    cur = conn.execute(
                        "DELETE FROM local_captures WHERE record_id = ? AND version <= ? AND synced_at IS NULL",
                        (record_id, version),
                    )
                conn.execute(
                    """
                    DELETE FROM local_audio
                    WHERE record_id = ? AND uploaded_at IS NOT NULL AND NOT EXISTS (
                        SELECT 1 FROM local_captures WHERE record_id = ? AND synced_at IS NULL
                    )
                    """,
                    (record_id, record_id),
                )
                conn.commit()
                return cur.rowcount
            finally:
                conn.close()

    def rebase(self, record_id: str, server_version: int) -> Optional[CaptureRecord]:
        """Keep only the newest pending edit for record_id, restamped on top of server_version."""

        with self._lock:
            conn = self._connect()
            try:
                rows = conn.execute(
                    """
                    SELECT seq, payload FROM local_captures
                    WHERE record_id = ? AND synced_at IS NULL
                    ORDER BY seq DESC
                    """,
                    (record_id,),
                ).fetchall()
                if not rows:
                    return None
                newest = CaptureRecord.from_api(json.loads(rows[0]["payload"]))
                rebased = newest.copy(version=server_version + 1, content_version=server_version + 1, edited=True)
                conn.execute(
                    "DELETE FROM local_captures WHERE record_id = ? AND synced_at IS NULL AND seq != ?",
                    (record_id, rows[0]["seq"]),
                )
                conn.execute(
                    "UPDATE local_captures SET version = ?, payload = ? WHERE seq = ?",
                    (
                        rebased.version,
                        json.dumps(rebased.to_api()),
                        rows[0]["seq"],
                    ),
                )
                conn.commit()
            finally:
                conn.close()
        logger.info(f"Rebased local capture {record_id} onto server v{server_version}")
        return rebased

    def get(self, record_id: str) -> Optional[CaptureRecord]:
        """Latest pending entry for a record, if any."""
        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT payload FROM local_captures
                WHERE record_id = ? AND synced_at IS NULL
                ORDER BY seq DESC LIMIT 1
                """,
                (record_id,),
            ).fetchone()
        finally:
            conn.close()
        return CaptureRecord.from_api(json.loads(row["payload"])) if row else None

    def pending_audio(self, audio_ref: str) -> Optional[bytes]:
        """Recording bytes not yet uploaded to the server, if any."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT data FROM local_audio WHERE audio_ref = ? AND uploaded_at IS NULL",
                (audio_ref,),
            ).fetchone()
        finally:
            conn.close()
        return bytes(row["data"]) if row else None

    def mark_audio_uploaded(self, audio_ref: str) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    "UPDATE local_audio SET uploaded_at = ? WHERE audio_ref = ?",
                    (utcnow().isoformat(), audio_ref),
                )
                conn.commit()
            finally:
                conn.close()

    def stored_audio_count(self) -> int:
        conn = self._connect()
        try:
            row = conn.execute("SELECT COUNT(*) FROM local_audio").fetchone()
        finally:
            conn.close()
        return int(row[0])

    def pending_count(self) -> int:
        conn = self._connect()
        try:
            row = conn.execute("SELECT COUNT(*) FROM local_captures WHERE synced_at IS NULL").fetchone()
        finally:
            conn.close()
        return int(row[0])

    def prune_archived(self, older_than: timedelta = timedelta(days=7)) -> int:
        cutoff: datetime = utcnow() - older_than
        with self._lock:
            conn = self._connect()
            try:
                cur = conn.execute(
                    "DELETE FROM local_captures WHERE synced_at IS NOT NULL AND synced_at < ?",
                    (cutoff.isoformat(),),
                )
                conn.commit()
                return cur.rowcount
            finally:
                conn.close()
