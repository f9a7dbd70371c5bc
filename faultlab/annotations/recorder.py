"""
Annotation recorder contract and in-memory implementation.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Protocol, runtime_checkable

from faultlab.core.exceptions import AnnotationError
from faultlab.core.models import Annotation, AnnotationFilter

logger = logging.getLogger(__name__)


@runtime_checkable
class AnnotationRecorder(Protocol):
    """Append-only store of telemetry annotations."""

    async def annotate(self, annotation: Annotation) -> str: ...

    async def query(self, filter: AnnotationFilter) -> List[Annotation]: ...

    async def delete_expired(self) -> int: ...


def matches(annotation: Annotation, flt: AnnotationFilter) -> bool:
    """Return True if ``annotation`` satisfies every field set on ``flt``."""
    if flt.signal_type is not None and annotation.signal_type != flt.signal_type:
        return False
    if flt.trace_id is not None and annotation.trace_id != flt.trace_id:
        return False
    if flt.metric_name is not None and annotation.metric_name != flt.metric_name:
        return False
    if flt.service_name is not None and annotation.service_name != flt.service_name:
        return False
    if flt.annotation_type is not None and annotation.annotation_type != flt.annotation_type:
        return False
    if flt.annotation_key is not None and annotation.annotation_key != flt.annotation_key:
        return False
    if flt.session_id is not None and annotation.session_id != flt.session_id:
        return False
    if flt.time_range is not None:
        if annotation.time_range_start < flt.time_range.start:
            return False
        if flt.time_range.end is not None and annotation.time_range_start > flt.time_range.end:
            return False
    return True


class InMemoryAnnotationRecorder:
    """
    List-backed AnnotationRecorder.

    Set ``fail_after`` to make every annotate call past that count raise
    (used to exercise orchestration failure paths).
    """

    def __init__(self):
        self._items: List[Annotation] = []
        self._lock = asyncio.Lock()
        self.fail_after: Optional[int] = None
        self.fail_query = False

    async def annotate(self, annotation: Annotation) -> str:
        async with self._lock:
            if self.fail_after is not None and len(self._items) >= self.fail_after:
                raise AnnotationError(f"Injected annotate failure for {annotation.annotation_key}")

            stored = annotation.model_copy(
                update={
                    "annotation_id": annotation.annotation_id or str(uuid.uuid4()),
                    "created_at": annotation.created_at or datetime.now(timezone.utc),
                }
            )
            self._items.append(stored)

        logger.debug(f"[Annotations] Recorded {stored.annotation_key} ({stored.annotation_id})")
        return stored.annotation_id

    async def query(self, filter: AnnotationFilter) -> List[Annotation]:
        if self.fail_query:
            raise AnnotationError("Injected query failure")
        async with self._lock:
            indexed = [(i, a) for i, a in enumerate(self._items) if matches(a, filter)]
        # Newest first; insertion order breaks ties
        indexed.sort(key=lambda ia: (ia[1].time_range_start, ia[0]), reverse=True)
        return [a.model_copy() for _, a in indexed[: filter.limit]]

    async def delete_expired(self) -> int:
        now = datetime.now(timezone.utc)
        async with self._lock:
            before = len(self._items)
            self._items = [a for a in self._items if a.expires_at is None or a.expires_at > now]
            removed = before - len(self._items)
        if removed:
            logger.info(f"[Annotations] Deleted {removed} expired annotations")
        return removed

    def all(self) -> List[Annotation]:
        """Snapshot in insertion order (test helper)."""
        return list(self._items)
