"""Speech capture: swappable recognizer front-ends exposing a typed event stream."""
from .base import CaptureUnavailableError, NullSpeechCapture, SpeechCapture, TranscriptEvent
from .channel import ChannelSpeechCapture

__all__ = [
    "CaptureUnavailableError",
    "ChannelSpeechCapture",
    "NullSpeechCapture",
    "SpeechCapture",
    "TranscriptEvent",
]
