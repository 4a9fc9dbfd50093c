"""
Speaker-role attribution from text (Facilitator vs Participant).

- No audio, no voice identity: roles are inferred from what is said.
- Short-term continuity: within the continuity window the previous speaker is assumed
  to still be talking unless the text carries a break phrase for that speaker.
- Rules are an ordered table; the first matching rule wins and every decision
  updates the continuity state.

Limitations (MUST be kept in sync with product behavior):
- Labels are roles, not people; several participants all map to "Participant".
- Pattern lists are English-only.
- Low-confidence decisions are expected; they are appended anyway and can be
  corrected later through the transcript correction pass.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from roundtable.agenda import AgendaQuestion, SessionProfile
from roundtable.attribution.models import Attribution, TextSignals
from roundtable.attribution.patterns import PatternSet
from roundtable.config import get_settings
from roundtable.models import FACILITATOR, PARTICIPANT, Clock, SpeakerContinuityState, now_ms

logger = logging.getLogger(__name__)

Predicate = Callable[[TextSignals, SpeakerContinuityState | None], bool]


@dataclass(frozen=True)
class AttributionRule:
    name: str
    predicate: Predicate
    speaker: str | None  # None = keep the previous speaker
    tier: str


def _breaks_continuity(signals: TextSignals, speaker: str) -> bool:
    """Break phrases depend on who was speaking."""
    if speaker == FACILITATOR:
        return signals.asks_audience or signals.participant_first_hand
    if speaker == PARTICIPANT:
        return signals.asks_facilitator_clarification
    return False


# Rules 1-2 ignore continuity; continuity rules receive state=None when the window has elapsed.
RULES: list[AttributionRule] = [
    AttributionRule(
        "participant_self_introduction",
        lambda s, state: s.participant_self_intro,
        PARTICIPANT,
        "high",
    ),
    AttributionRule(
        "facilitator_strong_signal",
        lambda s, state: s.strong_facilitator,
        FACILITATOR,
        "high",
    ),
    AttributionRule(
        "facilitator_asks_audience",
        lambda s, state: state is not None and state.speaker == FACILITATOR and s.asks_audience,
        FACILITATOR,
        "medium",
    ),
    AttributionRule(
        "participant_asks_clarification",
        lambda s, state: state is not None
        and state.speaker == PARTICIPANT
        and s.asks_facilitator_clarification,
        PARTICIPANT,
        "medium",
    ),
    AttributionRule(
        "continuity",
        lambda s, state: state is not None and not _breaks_continuity(s, state.speaker),
        None,
        "medium",
    ),
    AttributionRule(
        "facilitator_weak_signal",
        lambda s, state: s.weak_facilitator,
        FACILITATOR,
        "medium",
    ),
    AttributionRule(
        "participant_first_hand",
        lambda s, state: s.participant_first_hand,
        PARTICIPANT,
        "medium",
    ),
    AttributionRule("default", lambda s, state: True, PARTICIPANT, "low"),
]


class SpeakerAttributionEngine:
    """
    Deterministic for a fixed (text, continuity state, clock reading).
    One engine per session; continuity state is process-local and never persisted.
    """

    def __init__(
        self,
        profile: SessionProfile,
        agenda: list[AgendaQuestion] | None = None,
        continuity_window_sec: float | None = None,
        clock: Clock = time.time,
    ) -> None:
        if continuity_window_sec is None:
            continuity_window_sec = get_settings().SPEAKER_CONTINUITY_WINDOW_SEC
        self._patterns = PatternSet(profile, agenda)
        self._window_ms = int(continuity_window_sec * 1000)
        self._clock = clock
        self._state: SpeakerContinuityState | None = None

    @property
    def continuity(self) -> SpeakerContinuityState | None:
        return self._state

    def reset(self) -> None:
        self._state = None

    def _active_state(self, at_ms: int) -> SpeakerContinuityState | None:
        """Continuity state if the window has not elapsed, else None (expired implicitly)."""
        if self._state is None:
            return None
        if at_ms - self._state.timestamp_ms >= self._window_ms:
            return None
        return self._state

    def classify(self, text: str) -> Attribution:
        at_ms = now_ms(self._clock)
        signals = self._patterns.signals(text or "")
        state = self._active_state(at_ms)
        for rule in RULES:
            if not rule.predicate(signals, state):
                continue
            speaker = rule.speaker if rule.speaker is not None else state.speaker
            self._state = SpeakerContinuityState(speaker=speaker, timestamp_ms=at_ms, confidence_tier=rule.tier)
            logger.debug("Attributed %r -> %s (%s, rule=%s)", (text or "")[:30], speaker, rule.tier, rule.name)
            return Attribution(speaker=speaker, tier=rule.tier, rule=rule.name)
        raise AssertionError("default rule must always match")
