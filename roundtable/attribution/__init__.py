"""
Speaker-role attribution (text heuristics only).

- Labels each utterance Facilitator or Participant with a confidence tier.
- Keeps a short continuity memory so back-and-forth dialogue stays attributed.
"""
from __future__ import annotations

from roundtable.attribution.models import TIER_CONFIDENCE, Attribution, TextSignals
from roundtable.attribution.patterns import PatternSet
from roundtable.attribution.speaker_engine import RULES, AttributionRule, SpeakerAttributionEngine

__all__ = [
    "Attribution",
    "AttributionRule",
    "PatternSet",
    "RULES",
    "SpeakerAttributionEngine",
    "TIER_CONFIDENCE",
    "TextSignals",
]
