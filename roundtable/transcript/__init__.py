"""Transcript handling: append-only attributed log."""
from .store import PLACEHOLDER_SPEAKERS, TranscriptStore, count_participants, format_lines

__all__ = ["PLACEHOLDER_SPEAKERS", "TranscriptStore", "count_participants", "format_lines"]
