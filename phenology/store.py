"""
Analysis Store - SQLite persistence for pipeline and AI validation results.

Results are stored as JSON documents keyed by parcel, with the run status
in its own column so it can be polled without decoding the payload.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from typing import Any, Dict, Optional

from phenology.models import PipelineResult, RunStatus

log = logging.getLogger(__name__)


class AnalysisStore:
    """
    Usage:
        store = AnalysisStore("analysis_store.db")
        store.mark_processing("parcel-1")
        store.save_result(result)
        store.get_status("parcel-1")   # -> "SUCCESS"
    """

    DEFAULT_DB_PATH = "analysis_store.db"

    def __init__(self, db_path: str = None):
        self.db_path = db_path or self.DEFAULT_DB_PATH
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
                    CREATE TABLE IF NOT EXISTS analyses (
                        parcel_id TEXT PRIMARY KEY,
                        status TEXT NOT NULL,
                        request_json TEXT,
                        result_json TEXT,
                        error_message TEXT,
                        updated_at TEXT NOT NULL
                    )
                """)
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS validations (
                        parcel_id TEXT PRIMARY KEY,
                        validation_json TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                """)
                conn.commit()
                log.info(f"Analysis store initialized at {self.db_path}")
            finally:
                conn.close()

    def mark_processing(self, parcel_id: str, request: Optional[Dict[str, Any]] = None):
        """
        Record that a run for this parcel has started.

        Args:
            parcel_id: The parcel being processed
            request: Parcel request fields, kept so the run can be replayed
        """
        request_json = json.dumps(request) if request is not None else None
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    """
                    INSERT INTO analyses (parcel_id, status, request_json, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(parcel_id) DO UPDATE SET
                        status = excluded.status,
                        request_json = COALESCE(excluded.request_json, analyses.request_json),
                        error_message = NULL,
                        updated_at = excluded.updated_at
                    """,
                    (parcel_id, RunStatus.PROCESSING, request_json, datetime.now().isoformat())
                )
                conn.commit()
            finally:
                conn.close()

    def save_result(self, result: PipelineResult):
        """Persist the final result of a run (replaces any previous one)."""
        payload = json.dumps(result.to_dict())
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    """
                    INSERT INTO analyses (parcel_id, status, result_json, error_message, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(parcel_id) DO UPDATE SET
                        status = excluded.status,
                        result_json = excluded.result_json,
                        error_message = excluded.error_message,
                        updated_at = excluded.updated_at
                    """,
                    (result.parcel_id, result.status, payload, result.error_message,
                     datetime.now().isoformat())
                )
                conn.commit()
                log.info(f"Stored {result.status} result for parcel {result.parcel_id}")
            finally:
                conn.close()

    def get_result(self, parcel_id: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT result_json FROM analyses WHERE parcel_id = ?", (parcel_id,)
            ).fetchone()
            if row and row["result_json"]:
                return json.loads(row["result_json"])
            return None
        finally:
            conn.close()

    def get_request(self, parcel_id: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT request_json FROM analyses WHERE parcel_id = ?", (parcel_id,)
            ).fetchone()
            if row and row["request_json"]:
                return json.loads(row["request_json"])
            return None
        finally:
            conn.close()

    def get_status(self, parcel_id: str) -> Optional[str]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT status FROM analyses WHERE parcel_id = ?", (parcel_id,)
            ).fetchone()
            return row["status"] if row else None
        finally:
            conn.close()

    def save_validation(self, parcel_id: str, validation: Dict[str, Any]):
        """Persist an AI validation next to (never inside) the pipeline result."""
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    """
                    INSERT INTO validations (parcel_id, validation_json, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(parcel_id) DO UPDATE SET
                        validation_json = excluded.validation_json,
                        updated_at = excluded.updated_at
                    """,
                    (parcel_id, json.dumps(validation), datetime.now().isoformat())
                )
                conn.commit()
            finally:
                conn.close()

    def get_validation(self, parcel_id: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT validation_json FROM validations WHERE parcel_id = ?", (parcel_id,)
            ).fetchone()
            return json.loads(row["validation_json"]) if row else None
        finally:
            conn.close()
