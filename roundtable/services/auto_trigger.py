"""
Background insight cadence.

- every AUTO_INSIGHTS_EVERY entries -> `insights` after AUTO_INSIGHTS_DELAY_SEC
- every AUTO_FOLLOWUP_EVERY entries -> `followup` after AUTO_FOLLOWUP_DELAY_SEC
- forward phase advance with >= AUTO_SYNTHESIS_MIN_ENTRIES entries -> `synthesis`
  after AUTO_SYNTHESIS_DELAY_SEC

One pending timer per type: a newer schedule replaces the older one. When the timer
fires the trigger is dropped if the latest insight (any type) is younger than
AUTO_TRIGGER_COOLDOWN_SEC, or if the session is no longer in discussion.
"""
from __future__ import annotations

import asyncio
import logging
import time

from roundtable.config import Settings, get_settings
from roundtable.models import Clock, SessionContext, TranscriptEntry, datetime_to_ms, now_ms
from roundtable.services.insight_orchestrator import InsightOrchestrator

logger = logging.getLogger(__name__)


class AutoTriggerPolicy:
    def __init__(
        self,
        context: SessionContext,
        orchestrator: InsightOrchestrator,
        settings: Settings | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._context = context
        self._orchestrator = orchestrator
        self._settings = settings or get_settings()
        self._clock = clock
        self._pending: dict[str, asyncio.TimerHandle] = {}

    def bind(self, context: SessionContext) -> None:
        self.cancel_all()
        self._context = context

    @property
    def pending(self) -> list[str]:
        return sorted(self._pending)

    def in_cooldown(self) -> bool:
        latest = None
        for insight in self._context.ai_insights:
            if insight.is_loading:
                continue
            if latest is None or insight.timestamp > latest:
                latest = insight.timestamp
        if latest is None:
            return False
        elapsed_ms = now_ms(self._clock) - datetime_to_ms(latest)
        return elapsed_ms < self._settings.AUTO_TRIGGER_COOLDOWN_SEC * 1000

    # --- Hooks ---

    def on_entry(self, entry: TranscriptEntry) -> None:
        """TranscriptStore append listener."""
        count = len(self._context.live_transcript)
        s = self._settings
        if s.AUTO_INSIGHTS_EVERY > 0 and count % s.AUTO_INSIGHTS_EVERY == 0:
            self.schedule("insights", s.AUTO_INSIGHTS_DELAY_SEC)
        if s.AUTO_FOLLOWUP_EVERY > 0 and count % s.AUTO_FOLLOWUP_EVERY == 0:
            self.schedule("followup", s.AUTO_FOLLOWUP_DELAY_SEC)

    def on_phase_advanced(self, previous: int, new: int) -> None:
        """SessionStateMachine forward-advance listener."""
        if len(self._context.live_transcript) >= self._settings.AUTO_SYNTHESIS_MIN_ENTRIES:
            self.schedule("synthesis", self._settings.AUTO_SYNTHESIS_DELAY_SEC)

    # --- Timers ---

    def schedule(self, insight_type: str, delay_sec: float) -> bool:
        """(Re)arm the timer for insight_type. False when there is no running loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; auto %s not scheduled", insight_type)
            return False
        previous = self._pending.pop(insight_type, None)
        if previous is not None:
            previous.cancel()
        self._pending[insight_type] = loop.call_later(max(0.0, delay_sec), self._fire, insight_type)
        logger.debug("Auto %s scheduled in %.1fs", insight_type, delay_sec)
        return True

    def _fire(self, insight_type: str) -> None:
        self._pending.pop(insight_type, None)
        if self._context.state != "discussion":
            logger.debug("Auto %s dropped: session is %s", insight_type, self._context.state)
            return
        if self.in_cooldown():
            logger.info("Auto %s suppressed: cooldown", insight_type)
            return
        req = self._orchestrator.request(insight_type)
        logger.info("Auto %s fired: request %s %s", insight_type, req.id, req.stage.value)

    def cancel_all(self) -> None:
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()
