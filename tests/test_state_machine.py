import asyncio

import pytest

from roundtable.agenda import DEFAULT_AGENDA
from roundtable.capture import ChannelSpeechCapture, NullSpeechCapture
from roundtable.errors import InvalidTransitionError
from roundtable.models import AIInsight, SessionContext, now_datetime
from roundtable.session import SessionStateMachine


class BrokenCapture(ChannelSpeechCapture):
    async def start(self) -> None:
        raise RuntimeError("microphone permission denied")


def make_machine(clock, capture=None, state="intro"):
    ctx = SessionContext(state=state, facilitator="Dana", topic="AI Strategy")
    return SessionStateMachine(ctx, DEFAULT_AGENDA, capture or NullSpeechCapture(), clock=clock)


def test_start_without_capture_degrades_to_manual(clock):
    machine = make_machine(clock)
    asyncio.run(machine.start())
    assert machine.state == "discussion"
    assert machine.manual_only is True
    assert machine.context.start_time == now_datetime(clock)
    assert machine.context.question_start_time == machine.context.start_time


def test_start_with_capture_listens(clock):
    capture = ChannelSpeechCapture()
    machine = make_machine(clock, capture=capture, state="idle")
    asyncio.run(machine.start())
    assert machine.state == "discussion"
    assert machine.manual_only is False
    assert capture.is_listening is True


def test_capture_failure_does_not_block_start(clock):
    machine = make_machine(clock, capture=BrokenCapture())
    asyncio.run(machine.start())
    assert machine.state == "discussion"
    assert machine.manual_only is True


def test_invalid_transitions_raise(clock):
    machine = make_machine(clock)
    with pytest.raises(InvalidTransitionError):
        asyncio.run(machine.end())
    with pytest.raises(InvalidTransitionError):
        machine.complete()
    with pytest.raises(InvalidTransitionError):
        machine.reset()
    assert machine.state == "intro"


def test_full_lifecycle_and_duration(clock):
    capture = ChannelSpeechCapture()
    machine = make_machine(clock, capture=capture)
    asyncio.run(machine.start())
    clock.advance(600)
    asyncio.run(machine.end())
    assert machine.state == "summary"
    assert machine.context.duration_ms == 600_000
    assert capture.is_listening is False
    machine.complete()
    assert machine.state == "completed"


def test_phase_navigation_is_bounded(clock):
    machine = make_machine(clock)
    assert machine.advance_phase("previous") is False
    assert machine.context.current_question_index == 0
    for _ in range(machine.total_questions - 1):
        assert machine.advance_phase("next") is True
    assert machine.advance_phase("next") is False
    assert machine.context.current_question_index == machine.total_questions - 1
    assert machine.advance_phase("previous") is True
    assert machine.context.current_question_index == machine.total_questions - 2


def test_forward_advance_records_progress(clock):
    machine = make_machine(clock)
    asyncio.run(machine.start())
    phase_start = machine.context.question_start_time
    clock.advance(30)
    machine.context.ai_insights.append(
        AIInsight(id="i1", type="insights", content="x" * 40, timestamp=now_datetime(clock))
    )
    machine.context.ai_insights.append(
        AIInsight(id="e1", type="error", content="failed", timestamp=now_datetime(clock), is_error=True)
    )
    clock.advance(60)

    moved = []
    machine.on_phase_advanced(lambda prev, new: moved.append((prev, new)))
    assert machine.advance_phase("next") is True

    progress = machine.context.agenda_progress[DEFAULT_AGENDA[0].id]
    assert progress.completed is True
    assert progress.time_spent_ms == 90_000
    assert progress.insight_count == 1
    assert moved == [(0, 1)]
    assert machine.context.question_start_time > phase_start


def test_backward_move_does_not_record_progress(clock):
    machine = make_machine(clock)
    machine.advance_phase("next")
    machine.context.agenda_progress.clear()
    machine.advance_phase("previous")
    assert machine.context.agenda_progress == {}


def test_reset_returns_fresh_context(clock):
    machine = make_machine(clock)
    asyncio.run(machine.start())
    machine.context.ai_insights.append(
        AIInsight(id="i1", type="insights", content="x" * 40, timestamp=now_datetime(clock))
    )
    machine.advance_phase("next")
    asyncio.run(machine.end())
    machine.complete()
    old = machine.context

    replaced = []
    machine.on_reset(replaced.append)
    new = machine.reset()

    assert new is not old
    assert new.state == "intro"
    assert new.topic == "AI Strategy"
    assert new.facilitator == "Dana"
    assert new.live_transcript == [] and new.ai_insights == []
    assert new.current_question_index == 0
    assert replaced == [new]
    assert machine.context is new


def test_load_clamps_phase_index(clock):
    machine = make_machine(clock)
    restored = SessionContext(state="discussion", current_question_index=99)
    machine.load(restored)
    assert machine.context is restored
    assert restored.current_question_index == machine.total_questions - 1
