"""
Periodic retention jobs.

Runs continuous-data cleanup and session-policy enforcement as two
independent loops on a fixed interval. A failed iteration is logged and the
loop carries on with the next one.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from faultlab.core.config import get_settings
from faultlab.core.models import CleanupResult, RetentionPolicy

if TYPE_CHECKING:
    from faultlab.retention.engine import RetentionEngine

logger = logging.getLogger(__name__)

CONTINUOUS_JOB = "continuous"
SESSIONS_JOB = "sessions"


class _JobStats:
    def __init__(self):
        self.run_count = 0
        self.failure_count = 0
        self.last_run_time: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.last_result: Optional[CleanupResult] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_count": self.run_count,
            "failure_count": self.failure_count,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "last_error": self.last_error,
            "last_deleted_objects": self.last_result.deleted_objects if self.last_result else None,
        }


class RetentionScheduler:
    """
    Background loops for retention jobs.

    Features:
    - Continuous cleanup when ``policy.continuous.enabled``
    - Session cleanup when ``policy.sessions.cleanup_enabled``
    - Fixed interval (default 24h, RETENTION_JOB_INTERVAL_HOURS)
    - Per-job statistics
    """

    def __init__(
        self,
        engine: "RetentionEngine",
        policy: RetentionPolicy,
        interval_seconds: Optional[float] = None,
    ):
        """
        Initialize retention scheduler.

        Args:
            engine: Engine whose cleanup operations are run
            policy: Retention policy to enforce
            interval_seconds: Delay between runs (None = use config)
        """
        self.engine = engine
        self.policy = policy
        self.interval_seconds = interval_seconds or get_settings().retention.job_interval_seconds

        self._running = False
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stats: Dict[str, _JobStats] = {}

        logger.info(
            f"[RetentionScheduler] Initialized with interval={self.interval_seconds}s, "
            f"continuous={policy.continuous.enabled}, sessions={policy.sessions.cleanup_enabled}"
        )

    @property
    def running(self) -> bool:
        return self._running

    @property
    def jobs(self) -> List[str]:
        return list(self._tasks)

    def run_count(self, job: str) -> int:
        stats = self._stats.get(job)
        return stats.run_count if stats else 0

    async def _run_continuous(self) -> CleanupResult:
        return await self.engine.cleanup_continuous_data(self.policy.continuous.retention_days)

    async def _run_sessions(self) -> CleanupResult:
        return await self.engine.apply_session_policy(self.policy.sessions)

    async def start(self):
        """Start the enabled job loops."""
        if self._running:
            logger.warning("[RetentionScheduler] Already running")
            return

        self._running = True
        if self.policy.continuous.enabled:
            self._spawn(CONTINUOUS_JOB, self._run_continuous)
        if self.policy.sessions.cleanup_enabled:
            self._spawn(SESSIONS_JOB, self._run_sessions)
        logger.info(f"[RetentionScheduler] Started jobs: {', '.join(self._tasks) or 'none'}")

    def _spawn(self, job: str, run: Callable[[], Awaitable[CleanupResult]]):
        self._stats[job] = _JobStats()
        self._tasks[job] = asyncio.create_task(self._job_loop(job, run), name=f"retention-{job}")

    async def stop(self):
        """Stop all job loops."""
        if not self._running:
            return

        self._running = False
        for task in self._tasks.values():
            task.cancel()
        for task in self._tasks.values():
            try:
                await task
            except asyncio.CancelledError:
                pass

        logger.info("[RetentionScheduler] Stopped")

    async def _job_loop(self, job: str, run: Callable[[], Awaitable[CleanupResult]]):
        """Main job loop."""
        stats = self._stats[job]
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)
                logger.info(f"[RetentionScheduler] Running scheduled {job} cleanup")
                stats.last_run_time = datetime.now(timezone.utc)
                stats.run_count += 1
                stats.last_result = await run()
            except asyncio.CancelledError:
                break
            except Exception as e:
                stats.failure_count += 1
                stats.last_error = str(e)
                logger.error(f"[RetentionScheduler] {job} cleanup failed: {e}")

    def get_stats(self) -> Dict[str, Any]:
        """
        Get scheduler statistics.

        Returns:
            Statistics dictionary
        """
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "jobs": {job: stats.as_dict() for job, stats in self._stats.items()},
        }
