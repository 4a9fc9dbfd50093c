"""Application configuration. Loads from env vars."""
from __future__ import annotations

import logging
import os

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """App settings. Override via environment variables."""

    # Session profile: who facilitates and what the roundtable is about
    FACILITATOR_NAME: str = ""
    FACILITATOR_ALIASES: str = ""  # comma-separated extra names the facilitator goes by
    FACILITATOR_ORGANIZATION: str = ""  # comma-separated, e.g. "Acme, Acme Corp"
    SESSION_TOPIC: str = "Strategic Roundtable"
    AGENDA_FILE: str = ""  # JSON agenda; empty = built-in default agenda

    # Speaker attribution: previous speaker is assumed to continue inside this window
    SPEAKER_CONTINUITY_WINDOW_SEC: float = 30.0

    # Insight endpoints. Primary returns strict JSON; fallback is the legacy free-form endpoint.
    ANALYZE_LIVE_URL: str = "http://localhost:8000/api/analyze-live"
    ANALYZE_FALLBACK_URL: str = "http://localhost:8000/api/analyze"
    ANALYZE_TIMEOUT_SEC: float = 45.0
    ANALYZE_CLIENT_ID: str = "live-session"

    # Insight validation
    INSIGHT_MIN_CONTENT_CHARS: int = 20
    INSIGHT_DEDUP_PREFIX_CHARS: int = 100
    INSIGHT_DEFAULT_CONFIDENCE: float = 0.85
    INSIGHT_LEGACY_CONFIDENCE: float = 0.8

    # Auto-trigger policy (entries between triggers; delay before firing; cooldown since last insight)
    AUTO_INSIGHTS_EVERY: int = 5
    AUTO_FOLLOWUP_EVERY: int = 8
    AUTO_SYNTHESIS_MIN_ENTRIES: int = 3
    AUTO_INSIGHTS_DELAY_SEC: float = 1.5
    AUTO_FOLLOWUP_DELAY_SEC: float = 3.0
    AUTO_SYNTHESIS_DELAY_SEC: float = 2.0
    AUTO_TRIGGER_COOLDOWN_SEC: float = 120.0

    # Snapshot persistence: one JSON file per session key
    SNAPSHOT_ENABLED: bool = True
    SNAPSHOT_DIR: str = "./sessions"
    SNAPSHOT_MAX_BYTES: int = 5 * 1024 * 1024
    SNAPSHOT_MAX_AGE_HOURS: float = 24.0
    SNAPSHOT_MAX_TRANSCRIPT_ENTRIES: int = 500
    SNAPSHOT_MAX_INSIGHTS: int = 100

    # Server side of /api/analyze-live and /api/analyze: Cloudflare Workers AI
    CLOUDFLARE_ACCOUNT_ID: str = ""
    CLOUDFLARE_API_TOKEN: str = ""
    ANALYZE_CF_MODEL: str = "@cf/meta/llama-3.1-8b-instruct"
    ANALYZE_MAX_TOKENS: int = 800
    ANALYZE_RATE_LIMIT_PER_HOUR: int = 50

    # Speaker identification and end-of-session summary (same model and rate limit as analysis)
    IDENTIFY_SPEAKERS_MAX_ENTRIES: int = 200  # most recent entries sent for identification
    SUMMARY_MAX_TOKENS: int = 1500

    # Logging: level (DEBUG, INFO, WARNING, ERROR); file path = also write log to file (empty = console only).
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"


def get_settings() -> Settings:
    return Settings()


def split_csv(value: str) -> list[str]:
    """'a, b,,c' -> ['a', 'b', 'c']."""
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def configure_logging(settings: Settings | None = None) -> None:
    """Console handler always; file handler when LOG_FILE is set."""
    settings = settings or get_settings()
    level = getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    root = logging.getLogger()
    root.setLevel(level)
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler) for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(fmt)
        root.addHandler(console)
    log_file = (settings.LOG_FILE or "").strip()
    if log_file:
        try:
            os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setFormatter(fmt)
            root.addHandler(file_handler)
        except OSError as e:
            logging.getLogger(__name__).warning("Could not open log file %s: %s", log_file, e)
