"""
SpeechCapture: abstract interface for the external speech-to-text collaborator.

The session never talks to a recognizer directly. It starts/stops capture and
consumes a typed event stream: partial (live, may change), final (committed text)
and error (recognizer error code).

Implementations: NullSpeechCapture (no recognizer; manual entry only),
ChannelSpeechCapture (events pushed by an external producer, e.g. a WebSocket).
"""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Literal

EventKind = Literal["partial", "final", "error"]


@dataclass
class TranscriptEvent:
    """One event from the recognizer."""

    kind: EventKind
    text: str = ""
    confidence: float | None = None  # 0.0-1.0 recognizer estimate
    timestamp: int = 0  # unix_ms
    code: str | None = None  # error code for kind="error", e.g. "not-allowed", "audio-capture"

    @classmethod
    def final(cls, text: str, confidence: float | None = None) -> "TranscriptEvent":
        return cls(kind="final", text=text, confidence=confidence, timestamp=int(time.time() * 1000))

    @classmethod
    def partial(cls, text: str) -> "TranscriptEvent":
        return cls(kind="partial", text=text, timestamp=int(time.time() * 1000))

    @classmethod
    def error(cls, code: str) -> "TranscriptEvent":
        return cls(kind="error", code=code, timestamp=int(time.time() * 1000))


class CaptureUnavailableError(RuntimeError):
    """Capture could not start (no recognizer, permission denied, device missing)."""


class SpeechCapture(ABC):
    """Start/stop a recognizer and expose its events as an async stream."""

    @abstractmethod
    async def start(self) -> None:
        """Begin capture. Raises CaptureUnavailableError when capture cannot start."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @property
    @abstractmethod
    def is_listening(self) -> bool:
        ...

    @property
    @abstractmethod
    def is_supported(self) -> bool:
        ...

    @abstractmethod
    def events(self) -> AsyncIterator[TranscriptEvent]:
        """Async iterator over events until capture is closed."""
        ...


class NullSpeechCapture(SpeechCapture):
    """No recognizer available. start() fails so the session degrades to manual entry."""

    async def start(self) -> None:
        raise CaptureUnavailableError("Speech capture is not supported")

    async def stop(self) -> None:
        pass

    @property
    def is_listening(self) -> bool:
        return False

    @property
    def is_supported(self) -> bool:
        return False

    async def events(self) -> AsyncIterator[TranscriptEvent]:
        return
        yield  # pragma: no cover
