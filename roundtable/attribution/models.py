"""
Attribution decision and text signals.

A decision is always exactly one (speaker, confidence tier) pair plus the name of the
rule that produced it, so a reviewer can audit why an entry got its label.
"""
from __future__ import annotations

from dataclasses import dataclass

# Numeric confidence stored on auto-detected transcript entries for each tier
TIER_CONFIDENCE: dict[str, float] = {"high": 0.9, "medium": 0.7, "low": 0.4}


@dataclass(frozen=True)
class Attribution:
    speaker: str
    tier: str  # "high" | "medium" | "low"
    rule: str

    @property
    def confidence(self) -> float:
        return TIER_CONFIDENCE[self.tier]


@dataclass(frozen=True)
class TextSignals:
    """Pattern hits for one utterance. Computed once, then read by every rule."""

    participant_self_intro: bool = False
    facilitator_self_id: bool = False
    facilitator_org_reference: bool = False
    topic_introduction: bool = False
    guide_question: bool = False
    asks_audience: bool = False
    asks_facilitator_clarification: bool = False
    participant_first_hand: bool = False
    facilitator_phrase: bool = False
    transition_question: bool = False

    @property
    def strong_facilitator(self) -> bool:
        return (
            self.facilitator_self_id
            or self.facilitator_org_reference
            or self.topic_introduction
            or self.guide_question
        )

    @property
    def weak_facilitator(self) -> bool:
        return self.facilitator_phrase or self.transition_question
