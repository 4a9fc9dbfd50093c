"""
ChannelSpeechCapture: event channel fed by an external producer.

The recognizer runs elsewhere (browser, another service) and pushes events in,
e.g. through the transcript WebSocket. Events pushed while not listening are
dropped, matching a stopped recognizer.
"""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from roundtable.capture.base import SpeechCapture, TranscriptEvent

logger = logging.getLogger(__name__)

_CLOSE = None


class ChannelSpeechCapture(SpeechCapture):
    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[TranscriptEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._listening = False
        self._closed = False

    async def start(self) -> None:
        self._listening = True

    async def stop(self) -> None:
        self._listening = False

    @property
    def is_listening(self) -> bool:
        return self._listening

    @property
    def is_supported(self) -> bool:
        return True

    def push(self, event: TranscriptEvent) -> bool:
        """Queue one event. Returns False when dropped (not listening, closed or queue full)."""
        if self._closed or not self._listening:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Capture queue full, dropping %s event", event.kind)
            return False
        return True

    def close(self) -> None:
        """End the event stream; events() returns after draining what is queued."""
        if self._closed:
            return
        self._closed = True
        self._listening = False
        try:
            self._queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            logger.warning("Capture queue full on close")

    async def events(self) -> AsyncIterator[TranscriptEvent]:
        while True:
            event = await self._queue.get()
            if event is _CLOSE:
                break
            yield event
