"""
SQLite-backed annotation recorder.

Single ``annotations`` table; timestamps stored as UTC epoch seconds.
Calls run in a worker thread and are serialized by a lock.

DB location (default): data/annotations.db (ANNOTATION_DB_PATH)
"""
from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from faultlab.core.config import get_settings
from faultlab.core.exceptions import AnnotationError
from faultlab.core.models import Annotation, AnnotationFilter

logger = logging.getLogger(__name__)

_COLUMNS = (
    "annotation_id", "signal_type", "trace_id", "span_id", "metric_name", "metric_labels",
    "log_timestamp", "log_body_hash", "time_range_start", "time_range_end", "service_name",
    "resource_attributes", "annotation_type", "annotation_key", "annotation_value", "confidence",
    "created_at", "created_by", "session_id", "expires_at", "parent_annotation_id",
)
_TIME_COLUMNS = ("log_timestamp", "time_range_start", "time_range_end", "created_at", "expires_at")
_JSON_COLUMNS = ("metric_labels", "resource_attributes")


def _ts(dt: Optional[datetime]) -> Optional[float]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _dt(ts: Optional[float]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), timezone.utc)


class SQLiteAnnotationRecorder:
    """AnnotationRecorder persisted in a local SQLite file."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = Path(db_path) if db_path else get_settings().annotations.db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._ensure_db()

    def _conn(self) -> sqlite3.Connection:
        # Callers must hold self._lock
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_db(self) -> None:
        with self._lock:
            conn = self._conn()
            try:
                with conn:
                    conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS annotations (
                            annotation_id TEXT PRIMARY KEY,
                            seq INTEGER,
                            signal_type TEXT NOT NULL,
                            trace_id TEXT,
                            span_id TEXT,
                            metric_name TEXT,
                            metric_labels TEXT,
                            log_timestamp REAL,
                            log_body_hash TEXT,
                            time_range_start REAL NOT NULL,
                            time_range_end REAL,
                            service_name TEXT,
                            resource_attributes TEXT,
                            annotation_type TEXT NOT NULL,
                            annotation_key TEXT NOT NULL,
                            annotation_value TEXT NOT NULL,
                            confidence REAL,
                            created_at REAL,
                            created_by TEXT NOT NULL,
                            session_id TEXT,
                            expires_at REAL,
                            parent_annotation_id TEXT
                        )
                        """
                    )
                    conn.execute("CREATE INDEX IF NOT EXISTS idx_ann_start ON annotations (time_range_start)")
                    conn.execute("CREATE INDEX IF NOT EXISTS idx_ann_service ON annotations (service_name)")
                    conn.execute("CREATE INDEX IF NOT EXISTS idx_ann_session ON annotations (session_id)")
                    conn.execute("CREATE INDEX IF NOT EXISTS idx_ann_expires ON annotations (expires_at)")
            finally:
                conn.close()

    def _row_values(self, annotation: Annotation) -> Dict[str, Any]:
        d = annotation.model_dump(mode="python")
        values: Dict[str, Any] = {}
        for col in _COLUMNS:
            v = d.get(col)
            if col in _TIME_COLUMNS:
                v = _ts(v)
            elif col in _JSON_COLUMNS:
                v = json.dumps(v or {})
            elif col in ("signal_type", "annotation_type"):
                v = getattr(v, "value", v)
            values[col] = v
        return values

    def _from_row(self, row: sqlite3.Row) -> Annotation:
        d = dict(row)
        d.pop("seq", None)
        for col in _TIME_COLUMNS:
            d[col] = _dt(d.get(col))
        for col in _JSON_COLUMNS:
            try:
                d[col] = json.loads(d.get(col) or "{}")
            except ValueError:
                d[col] = {}
        return Annotation.model_validate(d)

    def _insert_sync(self, annotation: Annotation) -> str:
        values = self._row_values(annotation)
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._lock:
            conn = self._conn()
            try:
                with conn:
                    seq = conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM annotations").fetchone()[0]
                    conn.execute(
                        f"INSERT INTO annotations (seq, {', '.join(_COLUMNS)}) VALUES (?, {placeholders})",
                        (seq, *[values[c] for c in _COLUMNS]),
                    )
            finally:
                conn.close()
        return annotation.annotation_id

    def _query_sync(self, flt: AnnotationFilter) -> List[Annotation]:
        clauses: List[str] = []
        params: List[Any] = []
        for col, value in (
            ("signal_type", flt.signal_type.value if flt.signal_type else None),
            ("trace_id", flt.trace_id),
            ("metric_name", flt.metric_name),
            ("service_name", flt.service_name),
            ("annotation_type", flt.annotation_type.value if flt.annotation_type else None),
            ("annotation_key", flt.annotation_key),
            ("session_id", flt.session_id),
        ):
            if value is not None:
                clauses.append(f"{col} = ?")
                params.append(value)
        if flt.time_range is not None:
            clauses.append("time_range_start >= ?")
            params.append(_ts(flt.time_range.start))
            if flt.time_range.end is not None:
                clauses.append("time_range_start <= ?")
                params.append(_ts(flt.time_range.end))

        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        sql = f"SELECT * FROM annotations {where} ORDER BY time_range_start DESC, seq DESC LIMIT ?"
        params.append(int(flt.limit))

        with self._lock:
            conn = self._conn()
            try:
                rows = conn.execute(sql, params).fetchall()
            finally:
                conn.close()
        return [self._from_row(r) for r in rows]

    def _delete_expired_sync(self) -> int:
        now = datetime.now(timezone.utc).timestamp()
        with self._lock:
            conn = self._conn()
            try:
                with conn:
                    cur = conn.execute(
                        "DELETE FROM annotations WHERE expires_at IS NOT NULL AND expires_at <= ?", (now,)
                    )
                    return cur.rowcount
            finally:
                conn.close()

    async def annotate(self, annotation: Annotation) -> str:
        stored = annotation.model_copy(
            update={
                "annotation_id": annotation.annotation_id or str(uuid.uuid4()),
                "created_at": annotation.created_at or datetime.now(timezone.utc),
            }
        )
        try:
            return await asyncio.to_thread(self._insert_sync, stored)
        except sqlite3.Error as e:
            raise AnnotationError(f"Failed to insert annotation: {e}", retryable=True) from e

    async def query(self, filter: AnnotationFilter) -> List[Annotation]:
        try:
            return await asyncio.to_thread(self._query_sync, filter)
        except sqlite3.Error as e:
            raise AnnotationError(f"Failed to query annotations: {e}", retryable=True) from e

    async def delete_expired(self) -> int:
        try:
            removed = await asyncio.to_thread(self._delete_expired_sync)
        except sqlite3.Error as e:
            raise AnnotationError(f"Failed to delete expired annotations: {e}", retryable=True) from e
        if removed:
            logger.info(f"[Annotations] Deleted {removed} expired annotations")
        return removed
