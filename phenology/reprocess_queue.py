"""
Reprocess Queue - SQLite-backed queue for re-running parcel analyses.

Retry and backoff state lives in the database, so it survives restarts.
At most one item per analysis key is PROCESSING at any time.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from phenology.config import QueueSettings

log = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# ITEM STATUS
# ═══════════════════════════════════════════════════════════════════════════
class ItemStatus:
    """Reprocess item lifecycle states."""
    PENDING = "PENDING"        # Waiting (or waiting for its retry time)
    PROCESSING = "PROCESSING"  # Claimed by a worker
    DONE = "DONE"              # Finished successfully
    ERROR = "ERROR"            # Gave up after max attempts


# ═══════════════════════════════════════════════════════════════════════════
# ITEM
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class ReprocessItem:
    """
    One reprocessing request.

    Attributes:
        id: Unique item ID (auto-generated)
        analysis_key: Identity of the analysis (e.g. "parcel-1:default")
        parcel_id: Parcel to re-run
        status: Current item status
        attempts: Failed attempts so far
        next_attempt_at: Earliest time the item may be claimed again
        last_error: Error from the latest failed attempt
        worker_id: Which worker is processing this item
    """
    id: int
    analysis_key: str
    parcel_id: str
    status: str = ItemStatus.PENDING
    attempts: int = 0
    created_at: str = None
    updated_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    next_attempt_at: Optional[str] = None
    last_error: Optional[str] = None
    worker_id: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "analysis_key": self.analysis_key,
            "parcel_id": self.parcel_id,
            "status": self.status,
            "attempts": self.attempts,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "next_attempt_at": self.next_attempt_at,
            "last_error": self.last_error,
            "worker_id": self.worker_id,
        }


# ═══════════════════════════════════════════════════════════════════════════
# REPROCESS QUEUE
# ═══════════════════════════════════════════════════════════════════════════
class ReprocessQueue:
    """
    Persistent reprocessing queue with exponential backoff.

    Usage:
        queue = ReprocessQueue()
        item_id = queue.enqueue("parcel-1:default", "parcel-1")
        item = queue.claim_next("worker-1")
        queue.complete(item.id)      # or queue.fail(item.id, "timeout")
    """

    DEFAULT_DB_PATH = "reprocess_queue.db"

    def __init__(self, db_path: str = None, settings: QueueSettings = None):
        self.db_path = db_path or self.DEFAULT_DB_PATH
        self.settings = settings or QueueSettings()
        self._lock = threading.RLock()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS reprocess_items (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        analysis_key TEXT NOT NULL,
                        parcel_id TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'PENDING',
                        attempts INTEGER DEFAULT 0,
                        created_at TEXT NOT NULL,
                        updated_at TEXT,
                        started_at TEXT,
                        completed_at TEXT,
                        next_attempt_at TEXT,
                        last_error TEXT,
                        worker_id TEXT
                    )
                """)
                conn.execute("CREATE INDEX IF NOT EXISTS idx_item_status ON reprocess_items(status)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_item_key ON reprocess_items(analysis_key)")
                conn.commit()
                log.info(f"Reprocess queue initialized at {self.db_path}")
            finally:
                conn.close()

    def retry_delay(self, attempts: int) -> float:
        """Backoff after the given number of failed attempts."""
        delay = self.settings.initial_retry_delay_seconds * (2 ** max(0, attempts - 1))
        return min(delay, self.settings.max_retry_delay_seconds)

    def enqueue(self, analysis_key: str, parcel_id: str) -> int:
        """
        Add an item for this analysis key.

        Returns:
            The new item's ID, or the ID of the PENDING item already queued
            for the key.
        """
        with self._lock:
            conn = self._get_connection()
            try:
                existing = conn.execute(
                    "SELECT id FROM reprocess_items WHERE analysis_key = ? AND status = ? LIMIT 1",
                    (analysis_key, ItemStatus.PENDING)
                ).fetchone()
                if existing:
                    log.debug(f"Item for {analysis_key} already pending ({existing['id']})")
                    return existing["id"]

                now = datetime.now().isoformat()
                cursor = conn.execute(
                    """
                    INSERT INTO reprocess_items
                        (analysis_key, parcel_id, status, created_at, updated_at, next_attempt_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (analysis_key, parcel_id, ItemStatus.PENDING, now, now, now)
                )
                conn.commit()
                item_id = cursor.lastrowid
                log.info(f"Enqueued reprocess item {item_id} for {analysis_key}")
                return item_id
            finally:
                conn.close()

    def claim_next(self, worker_id: str) -> Optional[ReprocessItem]:
        """
        Claim the oldest due item whose key is not already being processed.

        Returns:
            The claimed item, or None if nothing is due
        """
        with self._lock:
            conn = self._get_connection()
            try:
                now = datetime.now().isoformat()
                row = conn.execute(
                    """
                    SELECT * FROM reprocess_items
                    WHERE status = ?
                      AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
                      AND analysis_key NOT IN (
                          SELECT analysis_key FROM reprocess_items WHERE status = ?
                      )
                    ORDER BY created_at ASC, id ASC
                    LIMIT 1
                    """,
                    (ItemStatus.PENDING, now, ItemStatus.PROCESSING)
                ).fetchone()

                if not row:
                    return None

                conn.execute(
                    """
                    UPDATE reprocess_items
                    SET status = ?, started_at = ?, updated_at = ?, worker_id = ?
                    WHERE id = ?
                    """,
                    (ItemStatus.PROCESSING, now, now, worker_id, row["id"])
                )
                conn.commit()

                item = ReprocessItem(**dict(row))
                item.status = ItemStatus.PROCESSING
                item.started_at = now
                item.updated_at = now
                item.worker_id = worker_id
                log.info(f"Worker {worker_id} claimed item {item.id} ({item.analysis_key})")
                return item
            finally:
                conn.close()

    def complete(self, item_id: int):
        """Mark an item as successfully processed."""
        with self._lock:
            conn = self._get_connection()
            try:
                now = datetime.now().isoformat()
                conn.execute(
                    """
                    UPDATE reprocess_items
                    SET status = ?, completed_at = ?, updated_at = ?, last_error = NULL
                    WHERE id = ?
                    """,
                    (ItemStatus.DONE, now, now, item_id)
                )
                conn.commit()
                log.info(f"Item {item_id} completed")
            finally:
                conn.close()

    def fail(self, item_id: int, error_message: str) -> Optional[str]:
        """
        Record a failed attempt.

        The item goes back to PENDING with a backoff delay, or to ERROR once
        max_attempts is reached.

        Returns:
            The item's new status, or None if it does not exist
        """
        with self._lock:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT attempts FROM reprocess_items WHERE id = ?", (item_id,)
                ).fetchone()
                if not row:
                    return None

                attempts = row["attempts"] + 1
                now = datetime.now()
                if attempts >= self.settings.max_attempts:
                    status = ItemStatus.ERROR
                    next_attempt = None
                    completed = now.isoformat()
                    log.error(f"Item {item_id} failed permanently after {attempts} attempts: {error_message}")
                else:
                    status = ItemStatus.PENDING
                    delay = self.retry_delay(attempts)
                    next_attempt = (now + timedelta(seconds=delay)).isoformat()
                    completed = None
                    log.warning(f"Item {item_id} failed (attempt {attempts}), retrying in {delay:.0f}s: {error_message}")

                conn.execute(
                    """
                    UPDATE reprocess_items
                    SET status = ?, attempts = ?, last_error = ?, next_attempt_at = ?,
                        completed_at = ?, updated_at = ?, worker_id = NULL
                    WHERE id = ?
                    """,
                    (status, attempts, error_message, next_attempt, completed, now.isoformat(), item_id)
                )
                conn.commit()
                return status
            finally:
                conn.close()

    def get_item(self, item_id: int) -> Optional[ReprocessItem]:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM reprocess_items WHERE id = ?", (item_id,)).fetchone()
            if row:
                return ReprocessItem(**dict(row))
            return None
        finally:
            conn.close()

    def get_status(self, analysis_key: str) -> Optional[str]:
        """Status of the latest item for an analysis key."""
        conn = self._get_connection()
        try:
            row = conn.execute(
                """
                SELECT status FROM reprocess_items
                WHERE analysis_key = ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (analysis_key,)
            ).fetchone()
            return row["status"] if row else None
        finally:
            conn.close()

    def get_queue_stats(self) -> Dict[str, int]:
        """Get counts of items by status."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT status, COUNT(*) as count FROM reprocess_items GROUP BY status"
            ).fetchall()
            return {row["status"]: row["count"] for row in rows}
        finally:
            conn.close()

    def cleanup_stale_items(self, max_age_hours: int = 24):
        """
        Reset items that have been processing too long (crashed workers).

        Args:
            max_age_hours: Items processing longer than this go back to PENDING
        """
        with self._lock:
            conn = self._get_connection()
            try:
                cutoff = datetime.now() - timedelta(hours=max_age_hours)
                cursor = conn.execute(
                    """
                    UPDATE reprocess_items
                    SET status = ?, worker_id = NULL, updated_at = ?
                    WHERE status = ? AND started_at < ?
                    """,
                    (ItemStatus.PENDING, datetime.now().isoformat(),
                     ItemStatus.PROCESSING, cutoff.isoformat())
                )
                conn.commit()
                if cursor.rowcount:
                    log.warning(f"Reset {cursor.rowcount} stale reprocess items")
                return cursor.rowcount
            finally:
                conn.close()

    def force_reprocess(self, analysis_key: str, parcel_id: str) -> int:
        """
        Queue a fresh run now, clearing any backoff on a pending item.

        Returns:
            ID of the pending item for the key
        """
        with self._lock:
            conn = self._get_connection()
            try:
                now = datetime.now().isoformat()
                conn.execute(
                    """
                    UPDATE reprocess_items
                    SET next_attempt_at = ?, attempts = 0, updated_at = ?
                    WHERE analysis_key = ? AND status = ?
                    """,
                    (now, now, analysis_key, ItemStatus.PENDING)
                )
                conn.commit()
            finally:
                conn.close()
            return self.enqueue(analysis_key, parcel_id)
