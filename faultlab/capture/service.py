"""
Raw OTLP capture into the object store.

Writes the layout the retention engine cleans up:

    sessions/{session_id}/metadata.json
    sessions/{session_id}/raw/{signal}/{epoch_ms}-{uuid8}.otlp.gz
    continuous/{YYYY-MM-DD}/{signal}/{epoch_ms}-{uuid8}.otlp.gz
"""
from __future__ import annotations

import asyncio
import gzip
import logging
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from faultlab.core.exceptions import (
    CaptureSessionAlreadyActive,
    InvalidState,
    ObjectNotFound,
    SessionNotFound,
    StorageFailure,
)
from faultlab.core.models import CaptureSessionMetadata, CaptureStatus, CapturedDataReference, utcnow
from faultlab.storage.object_store import ObjectStore, collect_objects

logger = logging.getLogger(__name__)

SIGNAL_TYPES = ("traces", "metrics", "logs")
METADATA_FILE = "metadata.json"
LIST_SESSIONS_CAP = 5000
LOAD_CONCURRENCY = 10


def session_prefix(session_id: str) -> str:
    return f"sessions/{session_id}"


def metadata_key(session_id: str) -> str:
    return f"{session_prefix(session_id)}/{METADATA_FILE}"


def _blob_name(at: datetime) -> str:
    return f"{int(at.timestamp() * 1000)}-{uuid.uuid4().hex[:8]}.otlp.gz"


class CaptureService:
    """Stores compressed OTLP payloads and tracks capture sessions."""

    def __init__(self, store: ObjectStore):
        self.store = store
        self._active: Dict[str, CaptureSessionMetadata] = {}
        self._lock = asyncio.Lock()

    async def _write_metadata(self, metadata: CaptureSessionMetadata) -> None:
        try:
            await self.store.put(metadata_key(metadata.session_id), metadata.to_json_bytes(), "application/json")
        except StorageFailure as e:
            raise StorageFailure(
                f"Failed to store metadata for capture session {metadata.session_id}: {e}",
                session_id=metadata.session_id,
                retryable=e.retryable,
            ) from e

    async def _load_metadata(self, session_id: str) -> CaptureSessionMetadata:
        try:
            raw = await self.store.get(metadata_key(session_id))
        except ObjectNotFound:
            raise SessionNotFound(session_id) from None
        try:
            return CaptureSessionMetadata.model_validate_json(raw)
        except ValidationError as e:
            raise StorageFailure(
                f"Failed to parse metadata for capture session {session_id}",
                session_id=session_id,
                retryable=False,
            ) from e

    async def start_capture(
        self,
        session_id: str,
        diagnostic_session_id: Optional[str] = None,
        enabled_flags: Iterable[str] = (),
        description: Optional[str] = None,
    ) -> CaptureSessionMetadata:
        """
        Open a capture session and write its metadata.

        Raises:
            CaptureSessionAlreadyActive: Session is already capturing
            StorageFailure: Metadata could not be written
        """
        async with self._lock:
            if session_id in self._active:
                raise CaptureSessionAlreadyActive(session_id)

            metadata = CaptureSessionMetadata(
                session_id=session_id,
                diagnostic_session_id=diagnostic_session_id,
                start_time=utcnow(),
                status=CaptureStatus.ACTIVE,
                enabled_flags=list(enabled_flags),
                s3_prefix=session_prefix(session_id),
                description=description,
            )
            await self._write_metadata(metadata)
            self._active[session_id] = metadata

        logger.info(f"[Capture] Started capture session {session_id}")
        return metadata.model_copy()

    async def capture_data(self, session_id: str, data: bytes, signal_type: str) -> CapturedDataReference:
        """
        Compress and store one OTLP payload for an active session.

        Raises:
            SessionNotFound: Session is not actively capturing
            ValueError: Unknown signal type
            StorageFailure: Write failed
        """
        if signal_type not in SIGNAL_TYPES:
            raise ValueError(f"Unknown signal type {signal_type!r}, expected one of {SIGNAL_TYPES}")

        metadata = self._active.get(session_id)
        if metadata is None or metadata.status != CaptureStatus.ACTIVE:
            raise SessionNotFound(session_id)

        now = utcnow()
        compressed = await asyncio.to_thread(gzip.compress, bytes(data))
        key = f"{metadata.s3_prefix}/raw/{signal_type}/{_blob_name(now)}"
        try:
            await self.store.put(key, compressed, "application/gzip")
        except StorageFailure as e:
            raise StorageFailure(
                f"Failed to store {signal_type} data for capture session {session_id}: {e}",
                session_id=session_id,
                retryable=e.retryable,
            ) from e

        async with self._lock:
            current = self._active.get(session_id)
            if current is not None:
                counter = f"captured_{signal_type}"
                self._active[session_id] = current.model_copy(
                    update={
                        counter: getattr(current, counter) + 1,
                        "total_size_bytes": current.total_size_bytes + len(compressed),
                    }
                )

        logger.debug(f"[Capture] {session_id}: stored {signal_type} {len(data)}B -> {len(compressed)}B at {key}")
        return CapturedDataReference(
            session_id=session_id,
            signal_type=signal_type,
            key=key,
            size_bytes=len(data),
            compressed_size_bytes=len(compressed),
            captured_at=now,
        )

    async def capture_continuous(self, data: bytes, signal_type: str, at: Optional[datetime] = None) -> str:
        """Store a payload under the date-partitioned continuous prefix and return its key."""
        if signal_type not in SIGNAL_TYPES:
            raise ValueError(f"Unknown signal type {signal_type!r}, expected one of {SIGNAL_TYPES}")
        at = at or utcnow()
        compressed = await asyncio.to_thread(gzip.compress, bytes(data))
        key = f"continuous/{at.strftime('%Y-%m-%d')}/{signal_type}/{_blob_name(at)}"
        await self.store.put(key, compressed, "application/gzip")
        return key

    async def stop_capture(
        self,
        session_id: str,
        status: CaptureStatus = CaptureStatus.COMPLETED,
    ) -> CaptureSessionMetadata:
        """
        Close a capture session and rewrite its metadata.

        Sessions started by another process are loaded from the store.

        Raises:
            SessionNotFound: No metadata for the session
            InvalidState: Stored session is no longer active
        """
        async with self._lock:
            metadata = self._active.get(session_id)
            if metadata is None:
                metadata = await self._load_metadata(session_id)
                if metadata.status != CaptureStatus.ACTIVE:
                    raise InvalidState(
                        f"Capture session {session_id} is already {metadata.status.value}",
                        session_id,
                    )

            updated = metadata.model_copy(update={"end_time": utcnow(), "status": status})
            await self._write_metadata(updated)
            self._active.pop(session_id, None)

        logger.info(
            f"[Capture] Stopped capture session {session_id} ({status.value}): "
            f"traces={updated.captured_traces} metrics={updated.captured_metrics} "
            f"logs={updated.captured_logs} bytes={updated.total_size_bytes}"
        )
        return updated

    async def get_capture_status(self, session_id: str) -> CaptureSessionMetadata:
        metadata = self._active.get(session_id)
        if metadata is not None:
            return metadata.model_copy()
        return await self._load_metadata(session_id)

    async def list_capture_sessions(self, limit: int = LIST_SESSIONS_CAP) -> List[CaptureSessionMetadata]:
        """Load every readable ``metadata.json`` under ``sessions/``; unreadable ones are skipped."""
        listing = await collect_objects(self.store, "sessions/", limit)
        keys = [o.key for o in listing.objects if o.key.endswith(f"/{METADATA_FILE}")]
        semaphore = asyncio.Semaphore(LOAD_CONCURRENCY)

        async def load(key: str) -> Optional[CaptureSessionMetadata]:
            async with semaphore:
                try:
                    return CaptureSessionMetadata.model_validate_json(await self.store.get(key))
                except (StorageFailure, ValidationError) as e:
                    logger.debug(f"[Capture] Skipping unreadable metadata {key}: {e}")
                    return None

        loaded = await asyncio.gather(*(load(k) for k in keys))
        return [m for m in loaded if m is not None]
