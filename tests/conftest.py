import pytest

from roundtable.config import Settings


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        ANALYZE_LIVE_URL="http://analysis.test/api/analyze-live",
        ANALYZE_FALLBACK_URL="http://analysis.test/api/analyze",
        SNAPSHOT_DIR=str(tmp_path / "sessions"),
        AUTO_INSIGHTS_DELAY_SEC=0.0,
        AUTO_FOLLOWUP_DELAY_SEC=0.0,
        AUTO_SYNTHESIS_DELAY_SEC=0.0,
    )
