"""
Retention engine for captured telemetry.

Continuous data lives under ``continuous/YYYY-MM-DD/...`` and is expired by
the date in its key. Session data lives under ``sessions/{id}/...`` and is
expired by the ``startTime`` in ``sessions/{id}/metadata.json``.

Every listing is bounded (``cleanup_page_cap``, ``usage_sample_cap``,
``session_scan_cap``), so a single call never walks an unbounded namespace.
Usage figures are therefore approximations over a sample.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, List, Optional, Tuple, Union

from pydantic import TypeAdapter, ValidationError

from faultlab.core.config import get_settings
from faultlab.core.exceptions import ObjectNotFound, SessionNotFound, StorageFailure
from faultlab.core.logging_config import log_cleanup
from faultlab.core.models import (
    CaptureStatus,
    CleanupResult,
    ContinuousPathMetrics,
    RetentionPolicy,
    SessionRetention,
    SessionRetentionOutcome,
    SessionsPathMetrics,
    StorageMetrics,
    utcnow,
)
from faultlab.storage.object_store import MAX_KEYS_PER_PAGE, ObjectInfo, ObjectStore, collect_objects

if TYPE_CHECKING:
    from faultlab.retention.scheduler import RetentionScheduler

logger = logging.getLogger(__name__)

CONTINUOUS_PREFIX = "continuous/"
SESSIONS_PREFIX = "sessions/"
METADATA_SUFFIX = "/metadata.json"

_CONTINUOUS_DATE = re.compile(r"^continuous/(\d{4}-\d{2}-\d{2})/")
_DATETIME = TypeAdapter(datetime)


def continuous_key_date(key: str) -> Optional[datetime]:
    """Midnight UTC of the date in a ``continuous/YYYY-MM-DD/`` key, or None if undatable."""
    match = _CONTINUOUS_DATE.match(key)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def session_id_from_key(key: str) -> Optional[str]:
    if not key.startswith(SESSIONS_PREFIX):
        return None
    parts = key[len(SESSIONS_PREFIX):].split("/", 1)
    if len(parts) < 2 or not parts[0]:
        return None
    return parts[0]


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class RetentionEngine:
    """Applies retention policy to the object store."""

    def __init__(
        self,
        store: ObjectStore,
        cleanup_page_cap: Optional[int] = None,
        delete_concurrency: Optional[int] = None,
        usage_sample_cap: Optional[int] = None,
        session_scan_cap: Optional[int] = None,
    ):
        settings = get_settings().retention
        self.store = store
        self.cleanup_page_cap = cleanup_page_cap or settings.cleanup_page_cap
        self.delete_concurrency = max(1, delete_concurrency or settings.delete_concurrency)
        self.usage_sample_cap = usage_sample_cap or settings.usage_sample_cap
        self.session_scan_cap = session_scan_cap or settings.session_scan_cap

    # =========================================================================
    # Deletion helpers
    # =========================================================================

    async def _delete_objects(self, objects: List[ObjectInfo]) -> Tuple[int, int, List[str]]:
        """Delete with bounded concurrency; returns (deleted, freed_bytes, errors)."""
        semaphore = asyncio.Semaphore(self.delete_concurrency)

        async def delete_one(obj: ObjectInfo) -> Optional[str]:
            async with semaphore:
                try:
                    await self.store.delete(obj.key)
                    return None
                except Exception as e:
                    return f"Failed to delete {obj.key}: {e}"

        outcomes = await asyncio.gather(*(delete_one(o) for o in objects))

        deleted = 0
        freed = 0
        errors: List[str] = []
        for obj, error in zip(objects, outcomes):
            if error is None:
                deleted += 1
                freed += obj.size
            else:
                errors.append(error)
        return deleted, freed, errors

    async def _list_all(self, prefix: str) -> List[ObjectInfo]:
        objects: List[ObjectInfo] = []
        token: Optional[str] = None
        while True:
            page = await self.store.list_objects(prefix, max_keys=MAX_KEYS_PER_PAGE, continuation_token=token)
            objects.extend(page.objects)
            token = page.next_token
            if token is None:
                return objects

    # =========================================================================
    # Continuous data
    # =========================================================================

    async def cleanup_continuous_data(self, older_than_days: int) -> CleanupResult:
        """
        Delete continuous objects whose key date is older than ``older_than_days``.

        Only one bounded batch (``cleanup_page_cap`` objects) is examined per
        call. Failures are reported in ``errors``; this never raises.
        """
        started = time.monotonic()
        cutoff = utcnow() - timedelta(days=older_than_days)

        try:
            listing = await collect_objects(self.store, CONTINUOUS_PREFIX, self.cleanup_page_cap)
        except Exception as e:
            logger.error(f"[Retention] Failed to list continuous data objects: {e}")
            return CleanupResult(
                processed_paths=[CONTINUOUS_PREFIX],
                errors=[f"Failed to list continuous data objects: {e}"],
                duration_ms=_elapsed_ms(started),
            )

        expired: List[ObjectInfo] = []
        skipped = 0
        for obj in listing.objects:
            key_date = continuous_key_date(obj.key)
            if key_date is None:
                skipped += 1
            elif key_date < cutoff:
                expired.append(obj)

        if skipped:
            logger.debug(f"[Retention] Skipped {skipped} undatable continuous keys")
        if listing.truncated:
            logger.info(f"[Retention] Continuous listing capped at {self.cleanup_page_cap} objects")

        deleted, freed, errors = await self._delete_objects(expired)
        result = CleanupResult(
            deleted_objects=deleted,
            freed_space_bytes=freed,
            processed_paths=[CONTINUOUS_PREFIX],
            errors=errors,
            duration_ms=_elapsed_ms(started),
        )
        log_cleanup(logger, "continuous", result)
        return result

    # =========================================================================
    # Session data
    # =========================================================================

    async def _session_start_time(self, session_id: str) -> datetime:
        key = f"{SESSIONS_PREFIX}{session_id}{METADATA_SUFFIX}"
        try:
            raw = await self.store.get(key)
        except ObjectNotFound:
            raise SessionNotFound(session_id) from None
        except StorageFailure as e:
            raise StorageFailure(
                f"Failed to load session metadata for {session_id}: {e}",
                session_id=session_id,
                retryable=e.retryable,
            ) from e

        try:
            metadata = json.loads(raw)
            start = metadata.get("startTime") if isinstance(metadata, dict) else None
            if start is None:
                raise ValueError("metadata has no startTime")
            start_time = _DATETIME.validate_python(start)
        except (ValueError, ValidationError) as e:
            raise StorageFailure(
                f"Failed to parse session metadata for {session_id}: {e}",
                session_id=session_id,
                retryable=False,
            ) from e

        if start_time.tzinfo is None:
            start_time = start_time.replace(tzinfo=timezone.utc)
        return start_time

    async def delete_session_data(self, session_id: str) -> CleanupResult:
        """
        Delete every object under ``sessions/{id}/``.

        ``metadata.json`` goes last, and only once every other object is gone,
        so a partial failure leaves the session visible to the next run.

        Raises:
            StorageFailure: Listing failed
        """
        started = time.monotonic()
        prefix = f"{SESSIONS_PREFIX}{session_id}/"
        metadata_key = f"{SESSIONS_PREFIX}{session_id}{METADATA_SUFFIX}"
        try:
            objects = await self._list_all(prefix)
        except StorageFailure as e:
            raise StorageFailure(
                f"Failed to list session objects for {session_id}: {e}",
                session_id=session_id,
                retryable=e.retryable,
            ) from e

        data = [o for o in objects if o.key != metadata_key]
        metadata = [o for o in objects if o.key == metadata_key]

        deleted, freed, errors = await self._delete_objects(data)
        if metadata and errors:
            logger.warning(
                f"[Retention] Keeping {metadata_key}: {len(errors)} object(s) of session {session_id} not deleted"
            )
        elif metadata:
            meta_deleted, meta_freed, meta_errors = await self._delete_objects(metadata)
            deleted += meta_deleted
            freed += meta_freed
            errors.extend(meta_errors)
        result = CleanupResult(
            deleted_objects=deleted,
            freed_space_bytes=freed,
            processed_paths=[prefix],
            errors=errors,
            duration_ms=_elapsed_ms(started),
        )
        log_cleanup(logger, f"session {session_id}", result)
        return result

    async def manage_session_data(
        self,
        session_id: str,
        policy: Union[SessionRetention, RetentionPolicy],
    ) -> SessionRetentionOutcome:
        """
        Apply the session retention policy to one session.

        Archival is only reported (``archive_eligible``); nothing is moved.

        Raises:
            SessionNotFound: No metadata.json for the session
            StorageFailure: Metadata unreadable or listing failed
        """
        if isinstance(policy, RetentionPolicy):
            policy = policy.sessions

        start_time = await self._session_start_time(session_id)
        age_days = (utcnow() - start_time).total_seconds() / 86400.0

        archive_eligible = policy.archive_after_days is not None and age_days > policy.archive_after_days
        if archive_eligible:
            logger.info(f"[Retention] Session {session_id} eligible for archival (age={age_days:.1f}d)")

        outcome = SessionRetentionOutcome(
            session_id=session_id,
            age_days=age_days,
            archive_eligible=archive_eligible,
        )
        if age_days > policy.max_retention_days and policy.cleanup_enabled:
            logger.info(
                f"[Retention] Session {session_id} past max retention "
                f"({age_days:.1f}d > {policy.max_retention_days}d), deleting"
            )
            cleanup = await self.delete_session_data(session_id)
            outcome = outcome.model_copy(update={"cleanup": cleanup, "deleted": not cleanup.errors})
        return outcome

    async def list_session_ids(self, limit: Optional[int] = None) -> List[str]:
        """Distinct session ids found in a bounded listing of ``sessions/``."""
        listing = await collect_objects(self.store, SESSIONS_PREFIX, limit or self.session_scan_cap)
        ids = (session_id_from_key(o.key) for o in listing.objects)
        return list(dict.fromkeys(i for i in ids if i))

    async def apply_session_policy(self, policy: Union[SessionRetention, RetentionPolicy]) -> CleanupResult:
        """Run ``manage_session_data`` over every listed session; failures go to ``errors``."""
        if isinstance(policy, RetentionPolicy):
            policy = policy.sessions

        started = time.monotonic()
        result = CleanupResult(processed_paths=[SESSIONS_PREFIX])
        try:
            session_ids = await self.list_session_ids()
        except StorageFailure as e:
            logger.error(f"[Retention] Failed to list sessions: {e}")
            return result.model_copy(
                update={"errors": [f"Failed to list sessions: {e}"], "duration_ms": _elapsed_ms(started)}
            )

        errors: List[str] = []
        for session_id in session_ids:
            try:
                outcome = await self.manage_session_data(session_id, policy)
            except (SessionNotFound, StorageFailure) as e:
                errors.append(f"Session {session_id}: {e}")
                continue
            if outcome.cleanup is not None:
                result = result.merge(outcome.cleanup)

        result = result.model_copy(
            update={"errors": result.errors + errors, "duration_ms": _elapsed_ms(started)}
        )
        log_cleanup(logger, "sessions", result)
        return result

    async def archive_old_sessions(self, older_than_days: int) -> CleanupResult:
        """Archival tier is not wired up; always an empty, successful result."""
        logger.debug(f"[Retention] archive_old_sessions({older_than_days}) is a no-op")
        return CleanupResult(processed_paths=[SESSIONS_PREFIX])

    # =========================================================================
    # Usage
    # =========================================================================

    async def _sample(self, prefix: str, cap: int):
        try:
            return await collect_objects(self.store, prefix, cap)
        except Exception as e:
            logger.warning(f"[Retention] Usage listing of {prefix} failed: {e}")
            return None

    async def _count_session_statuses(self, metadata_keys: List[str]) -> Tuple[int, int]:
        semaphore = asyncio.Semaphore(self.delete_concurrency)

        async def status_of(key: str) -> Optional[str]:
            async with semaphore:
                try:
                    data = json.loads(await self.store.get(key))
                except (StorageFailure, ValueError) as e:
                    logger.debug(f"[Retention] Unreadable metadata {key}: {e}")
                    return None
            return data.get("status") if isinstance(data, dict) else None

        statuses = await asyncio.gather(*(status_of(k) for k in metadata_keys))
        active = sum(1 for s in statuses if s == CaptureStatus.ACTIVE.value)
        completed = sum(1 for s in statuses if s is not None and s != CaptureStatus.ACTIVE.value)
        return active, completed

    async def get_storage_usage(self, sample_cap: Optional[int] = None) -> StorageMetrics:
        """
        Approximate storage usage.

        Lists at most ``sample_cap`` objects under each root prefix; a failed
        listing contributes empty metrics instead of raising.
        """
        cap = sample_cap or self.usage_sample_cap

        continuous = ContinuousPathMetrics()
        sample = await self._sample(CONTINUOUS_PREFIX, cap)
        if sample is not None and sample.objects:
            dates = [continuous_key_date(o.key) or o.last_modified for o in sample.objects]
            dates = [d for d in dates if d is not None]
            continuous = ContinuousPathMetrics(
                total_objects=len(sample.objects),
                total_size_bytes=sum(o.size for o in sample.objects),
                oldest_object_date=min(dates) if dates else None,
                newest_object_date=max(dates) if dates else None,
                truncated=sample.truncated,
            )

        sessions = SessionsPathMetrics()
        sample = await self._sample(SESSIONS_PREFIX, cap)
        if sample is not None and sample.objects:
            metadata_keys = [o.key for o in sample.objects if o.key.endswith(METADATA_SUFFIX)]
            active, completed = await self._count_session_statuses(metadata_keys)
            sessions = SessionsPathMetrics(
                total_objects=len(sample.objects),
                total_size_bytes=sum(o.size for o in sample.objects),
                active_sessions=active,
                completed_sessions=completed,
                truncated=sample.truncated,
            )

        return StorageMetrics(
            continuous=continuous,
            sessions=sessions,
            total_size_bytes=continuous.total_size_bytes + sessions.total_size_bytes,
            sample_cap=cap,
            exact=False,
        )

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def schedule_retention_jobs(
        self,
        policy: RetentionPolicy,
        interval_seconds: Optional[float] = None,
    ) -> "RetentionScheduler":
        """Start the periodic cleanup loops and return their scheduler."""
        from faultlab.retention.scheduler import RetentionScheduler

        scheduler = RetentionScheduler(self, policy, interval_seconds=interval_seconds)
        await scheduler.start()
        return scheduler
