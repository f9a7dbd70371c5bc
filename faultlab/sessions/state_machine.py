"""
Diagnostics session state machine.

Phases advance strictly forward:

    created -> started -> flag_enabled -> capturing -> flag_disabled
            -> analyzing -> completed

and any non-terminal phase may jump to ``failed``. ``stop_session`` adds one
shortcut: any non-terminal session may be forced to ``completed``.

Each phase is planned by a pure function, ``plan_step(session)``, which
returns the next phase plus the effects to run on the way there. The
orchestrator interprets the effects; nothing here performs I/O.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from faultlab.core.models import DiagnosticsSession, SessionPhase

FORWARD_ORDER: List[SessionPhase] = [
    SessionPhase.CREATED,
    SessionPhase.STARTED,
    SessionPhase.FLAG_ENABLED,
    SessionPhase.CAPTURING,
    SessionPhase.FLAG_DISABLED,
    SessionPhase.ANALYZING,
    SessionPhase.COMPLETED,
]

TERMINAL_PHASES = frozenset({SessionPhase.COMPLETED, SessionPhase.FAILED})

# Phases in which the injected fault may be live
FLAG_ACTIVE_PHASES = frozenset({SessionPhase.FLAG_ENABLED, SessionPhase.CAPTURING})

SESSION_STARTED_KEY = "diag.session.started"
SESSION_COMPLETED_KEY = "diag.session.completed"
CHECKPOINT_KEY = "diag.capture.checkpoint"


def flag_enabled_key(flag_name: str) -> str:
    return f"test.flag.{flag_name}.enabled"


def flag_disabled_key(flag_name: str) -> str:
    return f"test.flag.{flag_name}.disabled"


def is_terminal(phase: SessionPhase) -> bool:
    return phase in TERMINAL_PHASES


def next_phase(phase: SessionPhase) -> Optional[SessionPhase]:
    """Natural successor of ``phase``, or None for terminal phases."""
    if phase in TERMINAL_PHASES:
        return None
    return FORWARD_ORDER[FORWARD_ORDER.index(phase) + 1]


def can_transition(current: SessionPhase, target: SessionPhase, forced: bool = False) -> bool:
    """
    Check a phase transition.

    Args:
        current: Phase the session is in
        target: Requested phase
        forced: True for the stop shortcut to ``completed``

    Returns:
        Whether the transition is allowed
    """
    if current in TERMINAL_PHASES:
        return False
    if target == SessionPhase.FAILED:
        return True
    if forced:
        return target == SessionPhase.COMPLETED
    return next_phase(current) == target


# =============================================================================
# Effects
# =============================================================================

@dataclass(frozen=True)
class EnableFlag:
    flag_name: str


@dataclass(frozen=True)
class DisableFlag:
    flag_name: str


@dataclass(frozen=True)
class Transition:
    phase: SessionPhase
    mark_ended: bool = False


@dataclass(frozen=True)
class RecordAnnotation:
    key: str
    value: Dict[str, Any] = field(default_factory=dict)
    # Add duration and annotation count at record time
    with_summary: bool = False


@dataclass(frozen=True)
class Wait:
    duration_ms: int
    label: str


@dataclass(frozen=True)
class StartCheckpoints:
    interval_ms: int
    duration_ms: int


@dataclass(frozen=True)
class StopCheckpoints:
    pass


Effect = Union[EnableFlag, DisableFlag, Transition, RecordAnnotation, Wait, StartCheckpoints, StopCheckpoints]


@dataclass(frozen=True)
class Step:
    """Effects that move a session from its current phase to ``next_phase``."""
    next_phase: SessionPhase
    effects: List[Effect]


def session_config_payload(session: DiagnosticsSession) -> Dict[str, Any]:
    return {
        "flagName": session.flag_name,
        "config": {
            "flagName": session.flag_name,
            "name": session.name,
            "captureInterval": session.capture_interval_ms,
            "warmupDelay": session.warmup_delay_ms,
            "testDuration": session.test_duration_ms,
            "metadata": session.metadata,
        },
    }


def plan_step(session: DiagnosticsSession, analysis_delay_ms: int) -> Step:
    """
    Plan the step out of ``session.phase``.

    Args:
        session: Current session snapshot
        analysis_delay_ms: Fixed wait spent in the analyzing phase

    Returns:
        Step with the next phase and its ordered effects

    Raises:
        ValueError: If the session is already terminal
    """
    phase = session.phase
    flag = session.flag_name

    if phase == SessionPhase.CREATED:
        return Step(SessionPhase.STARTED, [
            Transition(SessionPhase.STARTED),
            RecordAnnotation(SESSION_STARTED_KEY, session_config_payload(session)),
        ])

    if phase == SessionPhase.STARTED:
        return Step(SessionPhase.FLAG_ENABLED, [
            EnableFlag(flag),
            Transition(SessionPhase.FLAG_ENABLED),
            RecordAnnotation(flag_enabled_key(flag), {"sessionId": session.id}),
        ])

    if phase == SessionPhase.FLAG_ENABLED:
        return Step(SessionPhase.CAPTURING, [
            Wait(session.warmup_delay_ms, "warmup"),
            Transition(SessionPhase.CAPTURING),
            StartCheckpoints(session.capture_interval_ms, session.test_duration_ms),
            Wait(session.test_duration_ms, "capture"),
            StopCheckpoints(),
        ])

    if phase == SessionPhase.CAPTURING:
        return Step(SessionPhase.FLAG_DISABLED, [
            DisableFlag(flag),
            Transition(SessionPhase.FLAG_DISABLED),
            RecordAnnotation(flag_disabled_key(flag), {"sessionId": session.id}),
        ])

    if phase == SessionPhase.FLAG_DISABLED:
        return Step(SessionPhase.ANALYZING, [
            Transition(SessionPhase.ANALYZING),
            Wait(analysis_delay_ms, "analysis"),
        ])

    if phase == SessionPhase.ANALYZING:
        return Step(SessionPhase.COMPLETED, [
            Transition(SessionPhase.COMPLETED, mark_ended=True),
            RecordAnnotation(SESSION_COMPLETED_KEY, with_summary=True),
        ])

    raise ValueError(f"No step out of terminal phase {phase.value}")
