"""Diagnostics session orchestration."""

from faultlab.sessions.orchestrator import SessionOrchestrator
from faultlab.sessions.registry import SessionRecord, SessionRegistry
from faultlab.sessions.state_machine import can_transition, plan_step

__all__ = [
    "SessionOrchestrator",
    "SessionRecord",
    "SessionRegistry",
    "can_transition",
    "plan_step",
]
