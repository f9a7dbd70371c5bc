"""
Unit tests for the session state machine.
"""

import pytest

from faultlab.core.exceptions import InvalidState, SessionNotFound
from faultlab.core.models import DiagnosticsSession, SessionPhase, utcnow
from faultlab.sessions.registry import SessionRegistry
from faultlab.sessions.state_machine import (
    FORWARD_ORDER,
    DisableFlag,
    EnableFlag,
    RecordAnnotation,
    StartCheckpoints,
    StopCheckpoints,
    Transition,
    Wait,
    can_transition,
    next_phase,
    plan_step,
)


def session_in(phase: SessionPhase) -> DiagnosticsSession:
    return DiagnosticsSession(
        id="s1",
        name="test",
        flag_name="cartServiceFailure",
        phase=phase,
        capture_interval_ms=100,
        warmup_delay_ms=10,
        test_duration_ms=300,
    )


class TestTransitions:
    def test_forward_chain(self):
        for current, target in zip(FORWARD_ORDER, FORWARD_ORDER[1:]):
            assert can_transition(current, target)

    def test_no_skips_or_backwards(self):
        assert not can_transition(SessionPhase.CREATED, SessionPhase.FLAG_ENABLED)
        assert not can_transition(SessionPhase.CAPTURING, SessionPhase.FLAG_ENABLED)
        assert not can_transition(SessionPhase.STARTED, SessionPhase.CREATED)

    def test_created_only_reaches_started_naturally(self):
        reachable = [p for p in SessionPhase if can_transition(SessionPhase.CREATED, p)]
        assert reachable == [SessionPhase.STARTED, SessionPhase.FAILED]

    def test_failed_from_any_live_phase(self):
        for phase in FORWARD_ORDER[:-1]:
            assert can_transition(phase, SessionPhase.FAILED)

    def test_terminal_phases_are_final(self):
        for terminal in (SessionPhase.COMPLETED, SessionPhase.FAILED):
            assert next_phase(terminal) is None
            for target in SessionPhase:
                assert not can_transition(terminal, target)
                assert not can_transition(terminal, target, forced=True)

    def test_forced_completion(self):
        assert can_transition(SessionPhase.CAPTURING, SessionPhase.COMPLETED, forced=True)
        assert can_transition(SessionPhase.CREATED, SessionPhase.COMPLETED, forced=True)
        assert not can_transition(SessionPhase.CAPTURING, SessionPhase.ANALYZING, forced=True)


class TestPlanStep:
    def test_full_plan_sequence(self):
        phase = SessionPhase.CREATED
        visited = []
        effects = []
        while phase not in (SessionPhase.COMPLETED, SessionPhase.FAILED):
            step = plan_step(session_in(phase), analysis_delay_ms=50)
            visited.append(step.next_phase)
            effects.extend(step.effects)
            phase = step.next_phase

        assert visited == FORWARD_ORDER[1:]

        keys = [e.key for e in effects if isinstance(e, RecordAnnotation)]
        assert keys == [
            "diag.session.started",
            "test.flag.cartServiceFailure.enabled",
            "test.flag.cartServiceFailure.disabled",
            "diag.session.completed",
        ]

        waits = [(e.label, e.duration_ms) for e in effects if isinstance(e, Wait)]
        assert waits == [("warmup", 10), ("capture", 300), ("analysis", 50)]

    def test_flag_effects_precede_their_transitions(self):
        step = plan_step(session_in(SessionPhase.STARTED), 0)
        assert isinstance(step.effects[0], EnableFlag)
        assert step.effects[1] == Transition(SessionPhase.FLAG_ENABLED)

        step = plan_step(session_in(SessionPhase.CAPTURING), 0)
        assert step.effects[0] == DisableFlag("cartServiceFailure")
        assert step.effects[1] == Transition(SessionPhase.FLAG_DISABLED)

    def test_checkpoints_stopped_before_disable(self):
        step = plan_step(session_in(SessionPhase.FLAG_ENABLED), 0)
        kinds = [type(e) for e in step.effects]
        assert kinds == [Wait, Transition, StartCheckpoints, Wait, StopCheckpoints]
        assert step.effects[2] == StartCheckpoints(interval_ms=100, duration_ms=300)

    def test_completion_marks_end(self):
        step = plan_step(session_in(SessionPhase.ANALYZING), 0)
        assert step.effects[0] == Transition(SessionPhase.COMPLETED, mark_ended=True)
        assert step.effects[1].with_summary is True

    def test_started_payload_carries_config(self):
        step = plan_step(session_in(SessionPhase.CREATED), 0)
        payload = step.effects[1].value
        assert payload["flagName"] == "cartServiceFailure"
        assert payload["config"]["captureInterval"] == 100

    def test_terminal_has_no_step(self):
        with pytest.raises(ValueError):
            plan_step(session_in(SessionPhase.COMPLETED), 0)


class TestSessionRegistry:
    @pytest.mark.asyncio
    async def test_mutations_and_snapshots(self):
        registry = SessionRegistry()
        registry.add(session_in(SessionPhase.CREATED))

        updated = await registry.transition("s1", SessionPhase.STARTED)
        assert updated.phase == SessionPhase.STARTED
        await registry.append_annotation("s1", "a-1")
        await registry.append_annotation("s1", "a-2")

        snapshot = registry.snapshot("s1")
        assert snapshot.annotation_ids == ["a-1", "a-2"]
        snapshot.annotation_ids.append("leak")
        assert registry.snapshot("s1").annotation_ids == ["a-1", "a-2"]

    @pytest.mark.asyncio
    async def test_invalid_and_terminal_transitions(self):
        registry = SessionRegistry()
        registry.add(session_in(SessionPhase.CREATED))

        with pytest.raises(InvalidState) as exc:
            await registry.transition("s1", SessionPhase.CAPTURING)
        assert exc.value.context == {"from": "created", "to": "capturing"}

        stopped = await registry.transition("s1", SessionPhase.COMPLETED, forced=True, end_time=utcnow())
        assert stopped.end_time is not None
        with pytest.raises(InvalidState):
            await registry.transition("s1", SessionPhase.FAILED, error="late")

        await registry.set_error("s1", "late")
        final = registry.snapshot("s1")
        assert final.phase == SessionPhase.COMPLETED
        assert final.error == "late"
        assert final.end_time == stopped.end_time

    def test_unknown_session(self):
        with pytest.raises(SessionNotFound):
            SessionRegistry().snapshot("missing")
