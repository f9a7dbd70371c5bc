"""
In-process session registry.

Each session lives in a ``SessionRecord`` with its own lock, cancellation
token and supervised task handle. Updates go through ``transition`` so a
phase change that violates the state machine is rejected instead of silently
overwriting a terminal session.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from faultlab.core.exceptions import InvalidState, OrchestrationFailure, SessionNotFound
from faultlab.core.models import DiagnosticsSession, SessionPhase, utcnow
from faultlab.sessions.state_machine import can_transition

logger = logging.getLogger(__name__)


@dataclass
class SessionRecord:
    session: DiagnosticsSession
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    checkpoint_task: Optional[asyncio.Task] = None
    # Set once an enable call has been issued, cleared after a successful disable
    flag_engaged: bool = False
    failure: Optional[OrchestrationFailure] = None


class SessionRegistry:
    """Map of session id to record; snapshots are copies."""

    def __init__(self):
        self._records: Dict[str, SessionRecord] = {}

    def add(self, session: DiagnosticsSession) -> SessionRecord:
        record = SessionRecord(session=session.model_copy(deep=True))
        self._records[session.id] = record
        return record

    def record(self, session_id: str) -> SessionRecord:
        try:
            return self._records[session_id]
        except KeyError:
            raise SessionNotFound(session_id) from None

    def snapshot(self, session_id: str) -> DiagnosticsSession:
        return self.record(session_id).session.model_copy(deep=True)

    def list(self) -> List[DiagnosticsSession]:
        return [r.session.model_copy(deep=True) for r in self._records.values()]

    def records(self) -> List[SessionRecord]:
        return list(self._records.values())

    def ids(self) -> List[str]:
        return list(self._records)

    async def transition(
        self,
        session_id: str,
        phase: SessionPhase,
        *,
        forced: bool = False,
        end_time: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> DiagnosticsSession:
        """
        Move a session to ``phase``.

        Args:
            session_id: Session to update
            phase: Target phase
            forced: Apply the stop shortcut to ``completed``
            end_time: Set ``end_time`` along with the phase
            error: Set ``error`` along with the phase

        Returns:
            Snapshot after the update

        Raises:
            SessionNotFound: Unknown id
            InvalidState: Transition not allowed from the current phase
        """
        record = self.record(session_id)
        async with record.lock:
            current = record.session.phase
            if not can_transition(current, phase, forced=forced):
                raise InvalidState(
                    f"Cannot move session {session_id} from {current.value} to {phase.value}",
                    session_id,
                    context={"from": current.value, "to": phase.value},
                )
            update: dict = {"phase": phase}
            if end_time is not None:
                update["end_time"] = end_time
            if error is not None:
                update["error"] = error
            record.session = record.session.model_copy(update=update)
            logger.debug(f"[SessionRegistry] {session_id}: {current.value} -> {phase.value}")
            return record.session.model_copy(deep=True)

    async def append_annotation(self, session_id: str, annotation_id: str) -> None:
        record = self.record(session_id)
        async with record.lock:
            ids = record.session.annotation_ids + [annotation_id]
            record.session = record.session.model_copy(update={"annotation_ids": ids})

    async def set_error(self, session_id: str, error: str) -> None:
        """Attach an error without changing phase (session already terminal)."""
        record = self.record(session_id)
        async with record.lock:
            record.session = record.session.model_copy(
                update={"error": error, "end_time": record.session.end_time or utcnow()}
            )
