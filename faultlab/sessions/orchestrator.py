"""
Diagnostics Session Orchestrator

Runs controlled fault-injection experiments: enable a feature flag, let the
system warm up, capture for a fixed window with periodic checkpoints, disable
the flag, wait for analysis, and record an annotation at every milestone.

Each started session is driven by one supervised asyncio task that walks the
state machine in ``faultlab.sessions.state_machine``. Sessions are kept in an
in-process registry and do not survive a restart.

Usage:
    orchestrator = SessionOrchestrator(flag_controller, annotation_recorder)
    session = await orchestrator.create_session(SessionConfig(flag_name="cartServiceFailure"))
    await orchestrator.start_session(session.id)
    ...
    await orchestrator.stop_session(session.id)
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, List, Optional, Union

from faultlab.annotations.recorder import AnnotationRecorder
from faultlab.core.config import get_settings
from faultlab.core.exceptions import AnnotationError, InvalidState, OrchestrationFailure, SessionTimeoutError
from faultlab.core.logging_config import log_flag_call, log_phase
from faultlab.core.models import (
    Annotation,
    AnnotationFilter,
    AnnotationType,
    DiagnosticsSession,
    SessionConfig,
    SessionPhase,
    SignalType,
    utcnow,
)
from faultlab.flags.controller import FlagController
from faultlab.sessions.registry import SessionRecord, SessionRegistry
from faultlab.sessions.state_machine import (
    CHECKPOINT_KEY,
    FLAG_ACTIVE_PHASES,
    DisableFlag,
    Effect,
    EnableFlag,
    RecordAnnotation,
    StartCheckpoints,
    StopCheckpoints,
    Transition,
    Wait,
    plan_step,
)

logger = logging.getLogger(__name__)

ANNOTATION_QUERY_LIMIT = 1000


class SessionOrchestrator:
    """
    Creates, runs and stops diagnostics sessions.

    Failures inside a running session never reach the ``start_session``
    caller; they are visible through ``get_session`` (phase ``failed`` with
    ``error`` set).
    """

    def __init__(
        self,
        flag_controller: FlagController,
        annotation_recorder: AnnotationRecorder,
        analysis_delay_ms: Optional[int] = None,
        compensate_flag_on_failure: Optional[bool] = None,
        service_name: Optional[str] = None,
    ):
        settings = get_settings()
        self.flags = flag_controller
        self.annotations = annotation_recorder
        self.analysis_delay_ms = (
            settings.session.analysis_delay_ms if analysis_delay_ms is None else analysis_delay_ms
        )
        self.compensate_flag_on_failure = (
            settings.session.compensate_flag_on_failure
            if compensate_flag_on_failure is None
            else compensate_flag_on_failure
        )
        self.service_name = service_name or settings.annotations.service_name
        self._registry = SessionRegistry()

    # =========================================================================
    # Public API
    # =========================================================================

    async def create_session(self, config: Union[SessionConfig, Dict[str, Any]]) -> DiagnosticsSession:
        """Register a new session in phase ``created``."""
        if not isinstance(config, SessionConfig):
            config = SessionConfig.model_validate(config)

        session = DiagnosticsSession(
            id=str(uuid.uuid4()),
            name=config.name or f"Diagnostics Session - {config.flag_name}",
            flag_name=config.flag_name,
            phase=SessionPhase.CREATED,
            start_time=utcnow(),
            capture_interval_ms=config.capture_interval_ms,
            warmup_delay_ms=config.warmup_delay_ms,
            test_duration_ms=config.test_duration_ms,
            metadata=config.metadata,
        )
        self._registry.add(session)
        logger.info(f"[SessionOrchestrator] Created session {session.id} for flag {session.flag_name}")
        return self._registry.snapshot(session.id)

    async def start_session(self, session_id: str) -> None:
        """
        Launch the orchestration sequence in the background.

        Raises:
            SessionNotFound: Unknown id
            InvalidState: Session is not in phase ``created`` or already launched
        """
        record = self._registry.record(session_id)
        async with record.lock:
            phase = record.session.phase
            if phase != SessionPhase.CREATED or record.task is not None:
                raise InvalidState(
                    f"Session {session_id} cannot be started from phase {phase.value}",
                    session_id,
                    context={"phase": phase.value},
                )
            record.task = asyncio.create_task(self._run(record), name=f"diag-session-{session_id}")
            record.task.add_done_callback(self._on_task_done)

        logger.info(f"[SessionOrchestrator] Started session {session_id}")

    async def stop_session(self, session_id: str) -> DiagnosticsSession:
        """
        Stop a session early.

        Interrupts the running sequence, disables the flag (best effort) if it
        may still be on, and forces a non-terminal session to ``completed``.
        Terminal sessions are returned unchanged.
        """
        record = self._registry.record(session_id)
        if record.session.is_terminal:
            return self._registry.snapshot(session_id)

        logger.info(f"[SessionOrchestrator] Stopping session {session_id} in phase {record.session.phase.value}")
        record.cancel.set()

        task = record.task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._stop_checkpoints(record)

        snapshot = self._registry.snapshot(session_id)
        # An interrupted enable call may already have switched the flag on
        if record.flag_engaged or snapshot.phase in FLAG_ACTIVE_PHASES:
            await self._disable_quietly(record)

        if not snapshot.is_terminal:
            snapshot = await self._registry.transition(
                session_id, SessionPhase.COMPLETED, forced=True, end_time=utcnow()
            )
            log_phase(logger, session_id, SessionPhase.COMPLETED.value, "stopped")
        return snapshot

    async def get_session(self, session_id: str) -> DiagnosticsSession:
        return self._registry.snapshot(session_id)

    async def list_sessions(self) -> List[DiagnosticsSession]:
        return self._registry.list()

    async def get_session_annotations(self, session_id: str, strict: bool = False) -> List[Annotation]:
        """
        Annotations recorded by diagnostics sessions.

        By default this returns every annotation carrying the session service
        label, across all sessions. Pass ``strict=True`` to narrow the query to
        this session's id.

        Raises:
            SessionNotFound: Unknown id
            OrchestrationFailure: Annotation store query failed
        """
        self._registry.record(session_id)
        flt = AnnotationFilter(
            service_name=self.service_name,
            session_id=session_id if strict else None,
            limit=ANNOTATION_QUERY_LIMIT,
        )
        try:
            return await self.annotations.query(flt)
        except AnnotationError as e:
            raise OrchestrationFailure(
                f"Failed to query annotations for session {session_id}: {e}",
                session_id,
                context={"cause": e.reason},
            ) from e

    async def wait_for_session(self, session_id: str, timeout_s: Optional[float] = None) -> DiagnosticsSession:
        """
        Wait for a session's background sequence to finish.

        Returns the final snapshot whatever the outcome; a failed run shows up
        as phase ``failed``.

        Raises:
            SessionNotFound: Unknown id
            SessionTimeoutError: Sequence still running after ``timeout_s``
        """
        record = self._registry.record(session_id)
        task = record.task
        if task is not None and not task.done():
            done, _ = await asyncio.wait({task}, timeout=timeout_s)
            if not done:
                raise SessionTimeoutError(
                    f"Timed out after {timeout_s}s waiting for session {session_id}",
                    session_id,
                    context={"timeout_s": timeout_s},
                )
        return self._registry.snapshot(session_id)

    async def shutdown(self) -> None:
        """Stop every session that still has a running sequence."""
        live = [r.session.id for r in self._registry.records() if r.task is not None and not r.task.done()]
        for session_id in live:
            await self.stop_session(session_id)
        if live:
            logger.info(f"[SessionOrchestrator] Shutdown stopped {len(live)} session(s)")

    # =========================================================================
    # Orchestration
    # =========================================================================

    async def _run(self, record: SessionRecord) -> DiagnosticsSession:
        session_id = record.session.id
        try:
            session = self._registry.snapshot(session_id)
            while not session.is_terminal:
                step = plan_step(session, self.analysis_delay_ms)
                for effect in step.effects:
                    if record.cancel.is_set():
                        logger.info(f"[SessionOrchestrator] Session {session_id} stopped before {type(effect).__name__}")
                        return self._registry.snapshot(session_id)
                    await self._apply(record, effect)
                session = self._registry.snapshot(session_id)

            logger.info(
                f"[SessionOrchestrator] Session {session_id} finished: phase={session.phase.value} "
                f"annotations={len(session.annotation_ids)} duration={session.duration_ms}ms"
            )
            return session

        except asyncio.CancelledError:
            if record.cancel.is_set():
                logger.info(f"[SessionOrchestrator] Session {session_id} interrupted by stop")
                return self._registry.snapshot(session_id)
            raise

        except Exception as e:
            if record.cancel.is_set():
                logger.info(f"[SessionOrchestrator] Session {session_id} stopped while failing: {e}")
                return self._registry.snapshot(session_id)
            failure = await self._fail(record, e)
            raise failure from e

        finally:
            await self._stop_checkpoints(record)

    async def _apply(self, record: SessionRecord, effect: Effect) -> None:
        session_id = record.session.id

        if isinstance(effect, Transition):
            session = await self._registry.transition(
                session_id,
                effect.phase,
                end_time=utcnow() if effect.mark_ended else None,
            )
            elapsed = (utcnow() - session.start_time).total_seconds() * 1000
            log_phase(logger, session_id, effect.phase.value, "entered", elapsed)

        elif isinstance(effect, EnableFlag):
            log_flag_call(logger, session_id, effect.flag_name, "enable")
            record.flag_engaged = True
            await self.flags.enable(effect.flag_name)
            log_flag_call(logger, session_id, effect.flag_name, "enable", "ok")

        elif isinstance(effect, DisableFlag):
            log_flag_call(logger, session_id, effect.flag_name, "disable")
            await self.flags.disable(effect.flag_name)
            record.flag_engaged = False
            log_flag_call(logger, session_id, effect.flag_name, "disable", "ok")

        elif isinstance(effect, RecordAnnotation):
            value = dict(effect.value)
            value["timestamp"] = utcnow().isoformat()
            if effect.with_summary:
                session = self._registry.snapshot(session_id)
                value["duration"] = session.duration_ms
                value["annotationCount"] = len(session.annotation_ids)
            await self._record(session_id, effect.key, value)

        elif isinstance(effect, Wait):
            logger.debug(f"[SessionOrchestrator] Session {session_id} waiting {effect.duration_ms}ms ({effect.label})")
            await self._sleep(record, effect.duration_ms)

        elif isinstance(effect, StartCheckpoints):
            record.checkpoint_task = asyncio.create_task(
                self._checkpoint_loop(record, effect.interval_ms, effect.duration_ms),
                name=f"diag-checkpoints-{session_id}",
            )

        elif isinstance(effect, StopCheckpoints):
            await self._stop_checkpoints(record)

        else:
            raise TypeError(f"Unknown effect {effect!r}")

    async def _sleep(self, record: SessionRecord, duration_ms: float) -> bool:
        """Wait ``duration_ms``; returns False if the session was stopped first."""
        if record.cancel.is_set():
            return False
        if duration_ms <= 0:
            return True
        try:
            await asyncio.wait_for(record.cancel.wait(), timeout=duration_ms / 1000.0)
        except asyncio.TimeoutError:
            return True
        return False

    async def _checkpoint_loop(self, record: SessionRecord, interval_ms: int, duration_ms: int) -> None:
        """Record a checkpoint at each interval tick that falls inside the capture window."""
        session_id = record.session.id
        loop = asyncio.get_running_loop()
        started = loop.time()
        tick = 1

        while tick * interval_ms < duration_ms:
            remaining_ms = (started + tick * interval_ms / 1000.0 - loop.time()) * 1000
            if not await self._sleep(record, remaining_ms):
                return
            try:
                await self._record(
                    session_id,
                    CHECKPOINT_KEY,
                    {"sequence": tick, "elapsedMs": tick * interval_ms, "timestamp": utcnow().isoformat()},
                )
            except Exception as e:
                logger.error(f"[SessionOrchestrator] Checkpoint {tick} for session {session_id} failed: {e}")
            tick += 1

        logger.debug(f"[SessionOrchestrator] Session {session_id} checkpoints done ({tick - 1})")

    async def _stop_checkpoints(self, record: SessionRecord) -> None:
        task = record.checkpoint_task
        if task is None:
            return
        record.checkpoint_task = None
        if not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _record(self, session_id: str, key: str, value: Dict[str, Any]) -> str:
        session = self._registry.snapshot(session_id)
        annotation = Annotation(
            signal_type=SignalType.ANY,
            time_range_start=session.start_time,
            service_name=self.service_name,
            annotation_type=AnnotationType(key.split(".", 1)[0]),
            annotation_key=key,
            annotation_value=json.dumps(value, default=str),
            created_by=f"session-{session_id}",
            session_id=session_id,
        )
        annotation_id = await self.annotations.annotate(annotation)

        # Once stored, the id must reach the session even if this task is cancelled
        append = asyncio.ensure_future(self._registry.append_annotation(session_id, annotation_id))
        try:
            await asyncio.shield(append)
        except asyncio.CancelledError:
            await append
            raise
        return annotation_id

    async def _fail(self, record: SessionRecord, error: Exception) -> OrchestrationFailure:
        session_id = record.session.id
        message = str(error) or type(error).__name__
        session = self._registry.snapshot(session_id)
        phase = session.phase

        if session.is_terminal:
            await self._registry.set_error(session_id, message)
        else:
            await self._registry.transition(session_id, SessionPhase.FAILED, end_time=utcnow(), error=message)
        log_phase(logger, session_id, SessionPhase.FAILED.value, f"error in {phase.value}")
        logger.error(f"[SessionOrchestrator] Session {session_id} failed during {phase.value}: {message}")

        if self.compensate_flag_on_failure and (record.flag_engaged or phase in FLAG_ACTIVE_PHASES):
            await self._disable_quietly(record)

        failure = OrchestrationFailure(
            f"Session {session_id} failed during {phase.value}: {message}",
            session_id,
            context={"phase": phase.value, "cause": type(error).__name__},
        )
        record.failure = failure
        return failure

    async def _disable_quietly(self, record: SessionRecord) -> None:
        session_id = record.session.id
        flag_name = record.session.flag_name
        log_flag_call(logger, session_id, flag_name, "disable")
        try:
            await self.flags.disable(flag_name)
            record.flag_engaged = False
            log_flag_call(logger, session_id, flag_name, "disable", "ok")
        except Exception as e:
            logger.warning(f"[SessionOrchestrator] Failed to disable flag {flag_name} for session {session_id}: {e}")

    def _on_task_done(self, task: asyncio.Task) -> None:
        # Retrieve the exception so asyncio does not report it as unhandled
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug(f"[SessionOrchestrator] Task {task.get_name()} ended with {exc!r}")
