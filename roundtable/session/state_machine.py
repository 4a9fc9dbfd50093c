"""
SessionStateMachine: lifecycle state and agenda-phase position.

    idle ─┐
          ├─ start ─> discussion ─ end ─> summary ─ complete ─> completed ─ reset ─> intro
    intro ┘

Phase navigation is bounded: moving past the last phase or before the first is a
no-op. A forward move closes the previous phase in agenda_progress.
"""
from __future__ import annotations

import logging
import time
from typing import Callable

from roundtable.agenda import AgendaQuestion
from roundtable.capture import CaptureUnavailableError, SpeechCapture
from roundtable.errors import InvalidTransitionError
from roundtable.models import AgendaProgress, Clock, SessionContext, datetime_to_ms, now_datetime

logger = logging.getLogger(__name__)

# command -> (allowed source states, target state)
TRANSITIONS: dict[str, tuple[frozenset[str], str]] = {
    "start": (frozenset({"idle", "intro"}), "discussion"),
    "end": (frozenset({"discussion"}), "summary"),
    "complete": (frozenset({"summary"}), "completed"),
    "reset": (frozenset({"completed"}), "intro"),
}

FORWARD = "next"
BACKWARD = "previous"


def _direction_step(direction: str | int) -> int:
    if direction in (FORWARD, 1, "forward", "+1"):
        return 1
    if direction in (BACKWARD, -1, "back", "backward", "-1"):
        return -1
    raise ValueError(f"Unknown phase direction: {direction!r}")


class SessionStateMachine:
    def __init__(
        self,
        context: SessionContext,
        agenda: list[AgendaQuestion],
        capture: SpeechCapture,
        clock: Clock = time.time,
    ) -> None:
        if not agenda:
            raise ValueError("Agenda must have at least one phase")
        self._context = context
        self._agenda = agenda
        self._capture = capture
        self._clock = clock
        self.manual_only = False
        self._phase_listeners: list[Callable[[int, int], None]] = []
        self._reset_listeners: list[Callable[[SessionContext], None]] = []

    @property
    def context(self) -> SessionContext:
        return self._context

    @property
    def state(self) -> str:
        return self._context.state

    @property
    def total_questions(self) -> int:
        return len(self._agenda)

    @property
    def current_question(self) -> AgendaQuestion:
        return self._agenda[self._context.current_question_index]

    def on_phase_advanced(self, listener: Callable[[int, int], None]) -> None:
        """listener(previous_index, new_index) after every forward advance."""
        self._phase_listeners.append(listener)

    def on_reset(self, listener: Callable[[SessionContext], None]) -> None:
        """listener(new_context) after reset replaced the aggregate."""
        self._reset_listeners.append(listener)

    def load(self, context: SessionContext) -> None:
        """Adopt a restored context as-is (session recovery). The phase index is clamped to the agenda."""
        last = self.total_questions - 1
        context.current_question_index = min(max(0, context.current_question_index), last)
        self._context = context
        self.manual_only = False

    def _transition(self, command: str) -> str:
        sources, target = TRANSITIONS[command]
        if self._context.state not in sources:
            raise InvalidTransitionError(command, self._context.state)
        previous = self._context.state
        self._context.state = target
        logger.info("Session %s -> %s (%s)", previous, target, command)
        return target

    async def start(self) -> None:
        """Enter discussion and try to start capture. Capture failure degrades to manual entry."""
        self._transition("start")
        now = now_datetime(self._clock)
        self._context.start_time = now
        self._context.question_start_time = now
        self.manual_only = False
        if not self._capture.is_supported:
            self.manual_only = True
            logger.info("Speech capture not supported; manual entry only")
            return
        try:
            await self._capture.start()
        except CaptureUnavailableError as e:
            self.manual_only = True
            logger.warning("Speech capture unavailable, manual entry only: %s", e)
        except Exception as e:
            self.manual_only = True
            logger.warning("Speech capture failed to start, manual entry only: %s", e)

    def advance_phase(self, direction: str | int = FORWARD) -> bool:
        """Move one phase. Returns False (no-op) at either end of the agenda."""
        step = _direction_step(direction)
        index = self._context.current_question_index
        target = index + step
        if target < 0 or target >= self.total_questions:
            logger.debug("Phase move %+d ignored at %d/%d", step, index + 1, self.total_questions)
            return False
        now = now_datetime(self._clock)
        if step > 0:
            self._record_progress(index, now)
        self._context.current_question_index = target
        self._context.question_start_time = now
        logger.info("Phase %d -> %d of %d", index + 1, target + 1, self.total_questions)
        if step > 0:
            for listener in list(self._phase_listeners):
                listener(index, target)
        return True

    def _record_progress(self, index: int, now) -> None:
        ctx = self._context
        phase_start = ctx.question_start_time or ctx.start_time or now
        spent = max(0, datetime_to_ms(now) - datetime_to_ms(phase_start))
        insight_count = sum(
            1
            for i in ctx.ai_insights
            if not i.is_loading and not i.is_error and i.timestamp >= phase_start
        )
        ctx.agenda_progress[self._agenda[index].id] = AgendaProgress(
            completed=True, time_spent_ms=spent, insight_count=insight_count
        )

    async def end(self) -> None:
        """discussion -> summary; stop capture; duration = now - start."""
        self._transition("end")
        if self._capture.is_listening:
            try:
                await self._capture.stop()
            except Exception as e:
                logger.warning("Speech capture failed to stop: %s", e)
        now = now_datetime(self._clock)
        start = self._context.start_time or now
        self._context.duration_ms = max(0, datetime_to_ms(now) - datetime_to_ms(start))

    def complete(self) -> None:
        self._transition("complete")

    def reset(self) -> SessionContext:
        """completed -> fresh intro context (empty transcript/insights, same facilitator/topic)."""
        self._transition("reset")
        old = self._context
        self._context = SessionContext(state="intro", facilitator=old.facilitator, topic=old.topic)
        self.manual_only = False
        for listener in list(self._reset_listeners):
            listener(self._context)
        return self._context
